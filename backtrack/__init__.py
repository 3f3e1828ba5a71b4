from .account import AccountDailyStats, AccountInfo, AccountSimulation, OrderReport, SkippedOrder
from .candles import (
    CandleFeeder,
    CandleSlice,
    CandleSource,
    InMemoryCandleSource,
    RateLimitedSource,
    RateLimiter,
    load_candle_files,
)
from .cornix import (
    calculate_weighted_average,
    get_default_stop_loss,
    get_flattened_cornix_config,
    get_new_stop_loss,
    get_order_amount,
    interpolate_entry_zone,
    map_price_targets,
    validate_order,
)
from .driver import BacktrackOutcome, backtrack, backtrack_by_day, get_backtrack_engine, get_sorted_unique_crosses
from .engine import Phase, TradeState, create_initial_state
from .exceptions import ApiError, BacktrackError, ConfigurationError, InvalidOrderError, MissingTradeDataError
from .models import (
    BackTrackingConfig,
    CornixConfiguration,
    Direction,
    DistributionStrategy,
    EventType,
    LogEvent,
    Order,
    TradeData,
    TradeResult,
    TrailingStop,
    TrailingStopType,
)
from .reporting import event_records, results_frame, summarize_results, write_backtrack_artifacts
from .runner import (
    DEFAULT_CORNIX_CONFIG,
    filter_orders_by_date,
    load_cornix_config,
    load_orders,
    run_account_mode,
    run_single_orders,
)

__all__ = [
    "AccountDailyStats",
    "AccountInfo",
    "AccountSimulation",
    "ApiError",
    "BackTrackingConfig",
    "BacktrackError",
    "BacktrackOutcome",
    "CandleFeeder",
    "CandleSlice",
    "CandleSource",
    "ConfigurationError",
    "CornixConfiguration",
    "DEFAULT_CORNIX_CONFIG",
    "Direction",
    "DistributionStrategy",
    "EventType",
    "InMemoryCandleSource",
    "InvalidOrderError",
    "LogEvent",
    "MissingTradeDataError",
    "Order",
    "OrderReport",
    "Phase",
    "RateLimitedSource",
    "RateLimiter",
    "SkippedOrder",
    "TradeData",
    "TradeResult",
    "TradeState",
    "TrailingStop",
    "TrailingStopType",
    "backtrack",
    "backtrack_by_day",
    "calculate_weighted_average",
    "create_initial_state",
    "event_records",
    "filter_orders_by_date",
    "get_backtrack_engine",
    "get_default_stop_loss",
    "get_flattened_cornix_config",
    "get_new_stop_loss",
    "get_order_amount",
    "get_sorted_unique_crosses",
    "interpolate_entry_zone",
    "load_candle_files",
    "load_cornix_config",
    "load_orders",
    "map_price_targets",
    "results_frame",
    "run_account_mode",
    "run_single_orders",
    "summarize_results",
    "validate_order",
    "write_backtrack_artifacts",
]
