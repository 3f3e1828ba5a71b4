"""Core utilities shared by the backtracking engine and the CLI."""

from .logging_setup import setup_logging, teardown_logging
from .market_metadata import (
    DAY_MS,
    INTERVAL_ALIASES,
    MINUTE_MS,
    SUPPORTED_EXCHANGES,
    datetime_to_ms,
    floor_to_minute,
    interval_to_ms,
    ms_to_datetime,
    normalize_coin,
    normalize_exchange,
    normalize_interval,
    parse_utc_datetime,
    utc_day_start,
)

__all__ = [
    "setup_logging",
    "teardown_logging",
    "DAY_MS",
    "MINUTE_MS",
    "INTERVAL_ALIASES",
    "SUPPORTED_EXCHANGES",
    "datetime_to_ms",
    "ms_to_datetime",
    "parse_utc_datetime",
    "floor_to_minute",
    "utc_day_start",
    "interval_to_ms",
    "normalize_coin",
    "normalize_exchange",
    "normalize_interval",
]
