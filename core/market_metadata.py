"""Shared exchange metadata, symbol normalization and epoch-ms time helpers."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * MINUTE_MS

SUPPORTED_EXCHANGES: tuple[str, ...] = ("binance", "bybit")

# Exchange spellings found in signal exports mapped to the data-source name.
_EXCHANGE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"bybit", re.IGNORECASE), "bybit"),
    (re.compile(r"binance", re.IGNORECASE), "binance"),
)

# Canonical candle interval aliases used by the candle cache.
INTERVAL_ALIASES: dict[str, str] = {
    "1m": "1m",
    "m1": "1m",
    "3m": "3m",
    "5m": "5m",
    "m5": "5m",
    "15m": "15m",
    "m15": "15m",
    "30m": "30m",
    "m30": "30m",
    "1h": "1h",
    "h1": "1h",
    "4h": "4h",
    "h4": "4h",
    "1d": "1d",
    "d": "1d",
    "d1": "1d",
}

_INTERVAL_MS: dict[str, int] = {
    "1m": MINUTE_MS,
    "3m": 3 * MINUTE_MS,
    "5m": 5 * MINUTE_MS,
    "15m": 15 * MINUTE_MS,
    "30m": 30 * MINUTE_MS,
    "1h": 60 * MINUTE_MS,
    "4h": 4 * 60 * MINUTE_MS,
    "1d": DAY_MS,
}

_PAIR_RE = re.compile(r"^[A-Z0-9]{2,}$")
_PERP_SUFFIX_RE = re.compile(r"(\.P|PERP)$")
_EPOCH_UTC = datetime(1970, 1, 1, tzinfo=timezone.utc)


def normalize_coin(raw: str) -> str:
    """
    Normalize a signal coin name to the pair symbol used by the exchanges.

    Examples:
    - inj/usdt -> INJUSDT
    - SUSHIUSDT.P -> SUSHIUSDT
    - BTCUSDTPERP -> BTCUSDT
    """
    if not raw or not raw.strip():
        raise ValueError("Coin is required.")

    normalized = raw.strip().upper().replace(" ", "")
    normalized = _PERP_SUFFIX_RE.sub("", normalized)
    normalized = normalized.replace("/", "").replace("-", "").replace("_", "")

    if not _PAIR_RE.match(normalized):
        raise ValueError(f"Invalid coin format: {raw}")
    return normalized


def normalize_exchange(raw: str | None, default: str | None = None) -> str | None:
    """Map an exchange label such as 'Binance Futures' or 'ByBit' to a supported source name."""
    if raw is None or not str(raw).strip():
        return default
    for pattern, name in _EXCHANGE_PATTERNS:
        if pattern.search(str(raw)):
            return name
    return default


def normalize_interval(raw: str) -> str:
    """Normalize candle interval aliases to canonical form (1m/5m/15m/30m/1h/4h/1d)."""
    if not raw or not raw.strip():
        raise ValueError("Interval is required.")

    key = raw.strip().lower()
    if key in INTERVAL_ALIASES:
        return INTERVAL_ALIASES[key]

    raise ValueError(f"Unsupported interval: {raw}. Supported: {', '.join(sorted(_INTERVAL_MS))}.")


def interval_to_ms(interval: str) -> int:
    return _INTERVAL_MS[normalize_interval(interval)]


def datetime_to_ms(value: datetime) -> int:
    """Convert a datetime (naive values are treated as UTC) to epoch milliseconds."""
    dt_value = value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)
    delta = dt_value - _EPOCH_UTC
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


def ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def parse_utc_datetime(value: Any) -> datetime:
    """Parse ISO strings, epoch milliseconds or datetimes into an aware UTC datetime."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return ms_to_datetime(int(value))

    raw = str(value or "").strip()
    if not raw:
        raise ValueError("Date is required.")
    if raw.lstrip("-").isdigit():
        return ms_to_datetime(int(raw))

    try:
        dt_value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value}") from exc
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc)


def floor_to_minute(value_ms: int) -> int:
    return int(value_ms) - int(value_ms) % MINUTE_MS


def utc_day_start(value_ms: int) -> int:
    return int(value_ms) - int(value_ms) % DAY_MS
