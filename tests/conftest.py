import pytest

from backtrack.models import Order, TradeData
from core.market_metadata import MINUTE_MS, datetime_to_ms, parse_utc_datetime

DAY_START = "2023-01-01T00:00:00Z"


def to_ms(value) -> int:
    if isinstance(value, int):
        return value
    return datetime_to_ms(parse_utc_datetime(value))


def _candle(when, open_, high=None, low=None, close=None, volume=1.0) -> TradeData:
    start = to_ms(when)
    return TradeData(
        open_time=start,
        open=float(open_),
        high=float(open_ if high is None else high),
        low=float(open_ if low is None else low),
        close=float(open_ if close is None else close),
        volume=volume,
        close_time=start + MINUTE_MS - 1,
    )


@pytest.fixture
def ms():
    return to_ms


@pytest.fixture
def make_candle():
    return _candle


@pytest.fixture
def minute_candles():
    """Consecutive one-minute candles from ``start``; rows are (open, high, low[, close])."""

    def build(start, rows):
        base = to_ms(start)
        return [_candle(base + idx * MINUTE_MS, *row) for idx, row in enumerate(rows)]

    return build


@pytest.fixture
def make_order():
    def build(**fields) -> Order:
        payload = {
            "coin": "BTC/USDT",
            "date": DAY_START,
            "entries": [100.0],
            "tps": [110.0],
            "amount": 100,
            "leverage": 1,
        }
        payload.update(fields)
        return Order.from_dict(payload)

    return build
