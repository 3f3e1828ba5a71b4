import asyncio

from backtrack.candles import InMemoryCandleSource
from backtrack.driver import backtrack, backtrack_by_day, get_sorted_unique_crosses
from backtrack.engine import Phase
from backtrack.models import CornixConfiguration, EventType, LogEvent
from core.market_metadata import DAY_MS


def test_backtrack_stops_at_close(make_order, minute_candles):
    candles = minute_candles(
        "2023-01-01T00:00:00Z",
        [(100, 100, 100), (100, 110, 100), (100, 100, 50), (100, 100, 50)],
    )
    outcome = backtrack(CornixConfiguration(amount=100), make_order(sl=90), candles)

    assert outcome.state.phase is Phase.ALL_PROFITS_DONE
    assert outcome.state.current_candle == candles[1]
    assert outcome.result.pnl == 10.0
    assert [event.type for event in outcome.events] == [EventType.BUY, EventType.SELL, EventType.CLOSE]


def test_backtrack_by_day_requests_following_days(make_order, minute_candles, ms):
    order = make_order(date="2023-01-01T23:58:00Z")
    source = InMemoryCandleSource(
        {"BTCUSDT": minute_candles("2023-01-01T23:58:00Z", [(100, 100, 100), (101, 101, 101), (105, 110, 105)])}
    )
    outcome = asyncio.run(backtrack_by_day(CornixConfiguration(amount=100), order, source))

    assert outcome.result.is_closed
    day_start = ms("2023-01-01T00:00:00Z")
    assert [request[2] for request in source.requests] == [day_start, day_start + DAY_MS]
    assert {request[1] for request in source.requests} == {"binance"}


def test_backtrack_by_day_stops_on_empty_day(make_order, minute_candles):
    order = make_order(exchange="Bybit Futures")
    source = InMemoryCandleSource({"BTCUSDT": minute_candles("2023-01-01T00:00:00Z", [(100, 100, 100)])})
    outcome = asyncio.run(backtrack_by_day(CornixConfiguration(amount=100), order, source))

    assert not outcome.result.is_closed
    assert outcome.result.reached_entries == 1
    assert len(source.requests) == 2
    assert source.requests[0][1] == "bybit"


def test_backtrack_by_day_honours_max_days(make_order):
    source = InMemoryCandleSource()
    outcome = asyncio.run(backtrack_by_day(CornixConfiguration(amount=100), make_order(), source, max_days=0))
    assert source.requests == []
    assert outcome.state.phase is Phase.INITIAL


def test_sorted_unique_crosses_keeps_first_per_level():
    events = [
        LogEvent(type=EventType.BUY, timestamp=1),
        LogEvent(type=EventType.CROSS, timestamp=2, subtype="tp", id=1, direction="up"),
        LogEvent(type=EventType.CROSS, timestamp=1, subtype="entry", id=1, direction="down"),
        LogEvent(type=EventType.CROSS, timestamp=3, subtype="tp", id=1, direction="up", price=1.5),
    ]
    crosses = get_sorted_unique_crosses(events)
    assert [(event.subtype, event.timestamp) for event in crosses] == [("entry", 1), ("tp", 2)]
    assert crosses[1].price is None
