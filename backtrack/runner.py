"""Input loading and the single-order / account run modes used by the CLI."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from core.market_metadata import floor_to_minute

from .account import AccountSimulation
from .candles import CandleSlice, CandleSource
from .cornix import get_flattened_cornix_config, get_order_amount
from .driver import BacktrackOutcome, backtrack, backtrack_by_day, get_sorted_unique_crosses
from .exceptions import ApiError, BacktrackError
from .models import (
    BackTrackingConfig,
    CornixConfiguration,
    DistributionStrategy,
    LogEvent,
    Order,
    TradeResult,
    TrailingStop,
    TrailingStopType,
)

logger = logging.getLogger(__name__)

DEFAULT_CORNIX_CONFIG = CornixConfiguration(
    amount=100.0,
    entries=DistributionStrategy.ONE_TARGET,
    tps=DistributionStrategy.EVENLY_DIVIDED,
    trailing_stop=TrailingStop(type=TrailingStopType.MOVING_TARGET, trigger=1),
    trailing_take_profit=0.02,
)


@dataclass(frozen=True)
class OrderRun:
    order: Order
    result: Optional[TradeResult] = None
    events: list[LogEvent] = field(default_factory=list)
    crosses: list[LogEvent] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SingleRunReport:
    runs: list[OrderRun] = field(default_factory=list)
    invalid_coins: set[str] = field(default_factory=set)

    @property
    def results(self) -> list[TradeResult]:
        return [run.result for run in self.runs if run.result is not None]

    @property
    def failures(self) -> list[OrderRun]:
        return [run for run in self.runs if run.error is not None]


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def load_json_records(paths: Iterable[str | Path]) -> list[dict[str, Any]]:
    """Read JSON objects from files, or from every ``*.json`` inside given directories."""
    records: list[dict[str, Any]] = []
    for raw_path in paths:
        path = Path(raw_path)
        if path.is_dir():
            files = sorted(path.glob("*.json"))
        elif path.is_file():
            files = [path]
        else:
            raise FileNotFoundError(f"Input file not found: {path}")
        for file_path in files:
            payload = _read_json(file_path)
            items = payload if isinstance(payload, list) else [payload]
            for item in items:
                if not isinstance(item, dict):
                    raise ValueError(f"Expected JSON objects in {file_path}, got {type(item).__name__}")
                records.append(item)
    return records


def load_orders(paths: Iterable[str | Path]) -> list[Order]:
    """Parse orders; records that fail to parse are logged and dropped."""
    orders: list[Order] = []
    for record in load_json_records(paths):
        # Records exported with their candles wrap the order.
        raw = record.get("order") if isinstance(record.get("order"), dict) else record
        try:
            orders.append(Order.from_dict(raw))
        except ValueError as exc:
            logger.warning("Skipping unreadable order %s: %s", raw.get("coin"), exc)
    return orders


def load_cornix_config(path: str | Path | None) -> CornixConfiguration:
    if path is None:
        return DEFAULT_CORNIX_CONFIG
    payload = _read_json(Path(path))
    return CornixConfiguration.from_dict(payload)


def filter_orders_by_date(
    orders: Sequence[Order],
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
) -> list[Order]:
    selected = []
    for order in orders:
        if from_date is not None and order.date < from_date:
            continue
        if to_date is not None and order.date >= to_date:
            continue
        selected.append(order)
    return selected


def _prepare_order(order: Order, config: CornixConfiguration, balance: float) -> tuple[Order, CornixConfiguration]:
    order_config = get_flattened_cornix_config(config, order.config) if order.config else config
    amount = get_order_amount(order, order_config, balance)
    return replace(order, amount=amount), order_config


async def run_single_orders(
    orders: Sequence[Order],
    config: CornixConfiguration,
    candles: CandleSlice | None = None,
    source: CandleSource | None = None,
    exchange: str | None = None,
    detailed_log: bool = False,
    max_days: int | None = None,
    initial_balance: float = 1000.0,
) -> SingleRunReport:
    """
    Backtrack every order on its own.

    With ``candles`` the same pre-loaded candle series is used for every order;
    otherwise days are requested from ``source`` until each trade closes.
    Failures are recorded per order and never stop the batch.
    """
    if candles is None and source is None:
        raise ValueError("Either candles or a candle source is required")

    backtrack_config = BackTrackingConfig(detailed_log=detailed_log)
    report = SingleRunReport()
    for count, order in enumerate(orders, start=1):
        try:
            prepared, order_config = _prepare_order(order, config, initial_balance)
            if candles is not None:
                window = candles.slice_by_time(start_time=floor_to_minute(prepared.timestamp))
                outcome: BacktrackOutcome = backtrack(order_config, prepared, window.iter_candles(), backtrack_config)
            else:
                outcome = await backtrack_by_day(
                    order_config,
                    prepared,
                    source,
                    exchange=exchange,
                    backtrack_config=backtrack_config,
                    max_days=max_days,
                )
        except ApiError as exc:
            if exc.is_invalid_symbol:
                report.invalid_coins.add(order.coin)
            logger.error("Order %s failed: %s", order.coin, exc)
            report.runs.append(OrderRun(order=order, error=str(exc)))
            continue
        except (BacktrackError, ValueError) as exc:
            logger.error("Order %s failed: %s", order.coin, exc)
            report.runs.append(OrderRun(order=order, error=str(exc)))
            continue
        except Exception as exc:
            logger.exception("Order %s failed unexpectedly", order.coin)
            report.runs.append(OrderRun(order=order, error=f"{type(exc).__name__}: {exc}"))
            continue

        crosses = get_sorted_unique_crosses(outcome.events) if detailed_log else []
        report.runs.append(
            OrderRun(
                order=outcome.state.order,
                result=outcome.result,
                events=outcome.state.events.visible(),
                crosses=crosses,
            )
        )
        logger.info(
            "[%s/%s] %s pnl=%.2f%% profit=%.4f closed=%s",
            count,
            len(orders),
            order.coin,
            outcome.result.pnl,
            outcome.result.profit,
            outcome.result.is_closed,
        )
    return report


async def run_account_mode(
    orders: Sequence[Order],
    config: CornixConfiguration,
    source: CandleSource,
    initial_balance: float = 1000.0,
    max_active_orders: int | None = None,
    end_time: int | None = None,
    exchange: str = "binance",
    detailed_log: bool = False,
) -> AccountSimulation:
    simulation = AccountSimulation(
        orders,
        config,
        source,
        initial_balance=initial_balance,
        max_active_orders=max_active_orders,
        end_time=end_time,
        exchange=exchange,
        backtrack_config=BackTrackingConfig(detailed_log=detailed_log),
    )
    await simulation.run()
    return simulation
