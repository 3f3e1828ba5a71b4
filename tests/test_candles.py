import asyncio
import json

import pytest

from backtrack.candles import (
    CandleFeeder,
    CandleSlice,
    InMemoryCandleSource,
    RateLimitedSource,
    RateLimiter,
    load_candle_files,
)
from backtrack.exceptions import ApiError
from core.market_metadata import MINUTE_MS

DAY = 1672531200000  # 2023-01-01T00:00:00Z


def _kline(open_time, price=1.0):
    return [open_time, str(price), str(price + 1), str(price - 0.5), str(price + 0.5), "10", open_time + MINUTE_MS - 1]


def test_candle_slice_sorts_and_dedupes(make_candle):
    rows = [
        make_candle(DAY + 2 * MINUTE_MS, 3),
        make_candle(DAY, 1),
        make_candle(DAY + MINUTE_MS, 2),
        make_candle(DAY + MINUTE_MS, 2),
    ]
    frame = CandleSlice.from_candles(rows, coin="BTCUSDT")

    assert frame.rows == 3
    assert frame.open_time.tolist() == [DAY, DAY + MINUTE_MS, DAY + 2 * MINUTE_MS]
    assert frame.slice_by_time(DAY + MINUTE_MS, DAY + 2 * MINUTE_MS).open.tolist() == [2.0]
    assert frame.candle_at(DAY + MINUTE_MS).open == 2.0
    assert frame.candle_at(DAY + 5 * MINUTE_MS) is None
    assert [candle.open for candle in frame.iter_candles()] == [1.0, 2.0, 3.0]
    assert list(frame.to_dataframe().columns) == ["time", "open", "high", "low", "close", "volume"]


def test_load_candle_files_reads_arrays_and_objects(tmp_path):
    folder = tmp_path / "candles"
    folder.mkdir()
    (folder / "b.json").write_text(json.dumps([_kline(DAY + MINUTE_MS, 2.0)]), encoding="utf-8")
    (folder / "a.json").write_text(
        json.dumps([{"openTime": DAY, "open": 1, "high": 2, "low": 0.5, "close": 1.5, "volume": 3}]),
        encoding="utf-8",
    )
    frame = load_candle_files([folder])

    assert frame.open_time.tolist() == [DAY, DAY + MINUTE_MS]
    assert frame.close_time.tolist() == [DAY + MINUTE_MS - 1, DAY + 2 * MINUTE_MS - 1]
    assert frame.high.tolist() == [2.0, 3.0]

    with pytest.raises(FileNotFoundError):
        load_candle_files([tmp_path / "missing.json"])

    broken = tmp_path / "broken.json"
    broken.write_text(json.dumps([[1, 2]]), encoding="utf-8")
    with pytest.raises(ValueError):
        load_candle_files([broken])


def _write_day(feeder, day, rows):
    path = feeder.day_path("BTCUSDT", "binance", "1m", day)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(rows), encoding="utf-8")
    return path


def test_candle_feeder_serves_complete_days_from_start_time(tmp_path):
    feeder = CandleFeeder(tmp_path)
    _write_day(feeder, DAY, [_kline(DAY + idx * MINUTE_MS) for idx in range(1441)])

    start = DAY + 600 * MINUTE_MS
    rows = asyncio.run(feeder.get_trade_data("btc/usdt", "Binance Futures", start))

    assert len(rows) == 841
    assert rows[0].open_time == start
    assert feeder.list_days("BTCUSDT", "binance") == [DAY]


def test_candle_feeder_ignores_incomplete_and_missing_days(tmp_path):
    feeder = CandleFeeder(tmp_path)
    _write_day(feeder, DAY, [_kline(DAY + idx * MINUTE_MS) for idx in range(10)])

    assert asyncio.run(feeder.get_trade_data("BTCUSDT", "binance", DAY)) == []
    assert asyncio.run(feeder.get_trade_data("ETHUSDT", "binance", DAY)) == []

    relaxed = CandleFeeder(tmp_path, require_complete_days=False)
    assert len(asyncio.run(relaxed.get_trade_data("BTCUSDT", "binance", DAY))) == 10


def test_candle_feeder_rejects_unknown_exchange(tmp_path):
    feeder = CandleFeeder(tmp_path)
    with pytest.raises(ApiError) as excinfo:
        asyncio.run(feeder.get_trade_data("BTCUSDT", "kraken", DAY))
    assert excinfo.value.status_code == 400
    assert excinfo.value.is_invalid_symbol


def test_in_memory_source_limits_to_one_day_and_raises_configured_errors(make_candle):
    source = InMemoryCandleSource(
        {"BTCUSDT": [make_candle(DAY + 1439 * MINUTE_MS, 1), make_candle(DAY + 1440 * MINUTE_MS, 2)]},
        errors={"ETHUSDT": ApiError("not found", status_code=404)},
    )
    rows = asyncio.run(source.get_trade_data("BTCUSDT", "binance", DAY))
    assert [row.open for row in rows] == [1.0]

    with pytest.raises(ApiError):
        asyncio.run(source.get_trade_data("ETH/USDT", "binance", DAY))


def test_rate_limiter_spaces_calls():
    times = iter([0.0, 0.25, 2.0])
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    limiter = RateLimiter(1.0, clock=lambda: next(times), sleep=fake_sleep)

    async def run():
        return [await limiter.acquire() for _ in range(3)]

    assert asyncio.run(run()) == [0.0, 0.75, 0.0]
    assert slept == [0.75]


def test_rate_limited_source_passes_through(make_candle):
    calls = []

    async def fake_sleep(seconds):
        calls.append(seconds)

    inner = InMemoryCandleSource({"BTCUSDT": [make_candle(DAY, 1)]})
    limiter = RateLimiter(0.5, clock=lambda: 0.0, sleep=fake_sleep)
    source = RateLimitedSource(inner, limiter)

    async def run():
        first = await source.get_trade_data("BTCUSDT", "binance", DAY)
        second = await source.get_trade_data("BTCUSDT", "binance", DAY)
        return first, second

    first, second = asyncio.run(run())
    assert first == second
    assert len(inner.requests) == 2
    assert calls == [0.5]
