"""Candle access: columnar candle container, on-disk day cache reader and rate limiting."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Iterator, Protocol, Sequence

import numpy as np
import pandas as pd

from core.market_metadata import (
    DAY_MS,
    interval_to_ms,
    normalize_coin,
    normalize_exchange,
    normalize_interval,
    utc_day_start,
)

from .exceptions import ApiError
from .models import TradeData

logger = logging.getLogger(__name__)

_DEFAULT_MAX_CACHED_DAYS = 512


class CandleSource(Protocol):
    """Anything that returns one UTC day of candles starting at ``start_time``."""

    async def get_trade_data(
        self,
        coin: str,
        exchange: str,
        start_time: int,
        interval: str = "1m",
    ) -> list[TradeData]:
        ...


@dataclass(frozen=True)
class CandleSlice:
    """Immutable columnar candle container. Times are epoch milliseconds."""

    coin: str
    interval: str
    open_time: np.ndarray
    close_time: np.ndarray
    open: np.ndarray
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray
    volume: np.ndarray

    @classmethod
    def from_candles(cls, candles: Iterable[TradeData], coin: str = "", interval: str = "1m") -> "CandleSlice":
        rows = list(candles)
        interval_ms = interval_to_ms(interval)
        frame = cls(
            coin=coin,
            interval=interval,
            open_time=np.asarray([row.open_time for row in rows], dtype=np.int64),
            close_time=np.asarray(
                [row.close_time if row.close_time is not None else row.open_time + interval_ms - 1 for row in rows],
                dtype=np.int64,
            ),
            open=np.asarray([row.open for row in rows], dtype=np.float64),
            high=np.asarray([row.high for row in rows], dtype=np.float64),
            low=np.asarray([row.low for row in rows], dtype=np.float64),
            close=np.asarray([row.close for row in rows], dtype=np.float64),
            volume=np.asarray([row.volume for row in rows], dtype=np.float64),
        )
        return _stable_sort_and_dedupe(frame)

    @property
    def rows(self) -> int:
        return int(self.open_time.size)

    def _take(self, selector: Any) -> "CandleSlice":
        return CandleSlice(
            coin=self.coin,
            interval=self.interval,
            open_time=self.open_time[selector],
            close_time=self.close_time[selector],
            open=self.open[selector],
            high=self.high[selector],
            low=self.low[selector],
            close=self.close[selector],
            volume=self.volume[selector],
        )

    def slice_by_index(self, start_idx: int, end_idx: int) -> "CandleSlice":
        start = max(0, int(start_idx))
        end = max(start, min(self.rows, int(end_idx)))
        return self._take(slice(start, end))

    def slice_by_time(self, start_time: int | None = None, end_time: int | None = None) -> "CandleSlice":
        """Candles with ``start_time <= open_time < end_time``."""
        left = 0 if start_time is None else int(np.searchsorted(self.open_time, int(start_time), side="left"))
        right = self.rows if end_time is None else int(np.searchsorted(self.open_time, int(end_time), side="left"))
        return self.slice_by_index(left, right)

    def candle_at_index(self, idx: int) -> TradeData:
        return TradeData(
            open_time=int(self.open_time[idx]),
            open=float(self.open[idx]),
            high=float(self.high[idx]),
            low=float(self.low[idx]),
            close=float(self.close[idx]),
            volume=float(self.volume[idx]),
            close_time=int(self.close_time[idx]),
        )

    def candle_at(self, open_time: int) -> TradeData | None:
        idx = int(np.searchsorted(self.open_time, int(open_time), side="left"))
        if idx >= self.rows or int(self.open_time[idx]) != int(open_time):
            return None
        return self.candle_at_index(idx)

    def iter_candles(self) -> Iterator[TradeData]:
        for idx in range(self.rows):
            yield self.candle_at_index(idx)

    def to_list(self) -> list[TradeData]:
        return list(self.iter_candles())

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "time": pd.to_datetime(self.open_time, unit="ms", utc=True),
                "open": self.open,
                "high": self.high,
                "low": self.low,
                "close": self.close,
                "volume": self.volume,
            }
        )


def _stable_sort_and_dedupe(frame: CandleSlice) -> CandleSlice:
    if frame.rows <= 1:
        return frame

    ordered = frame._take(np.argsort(frame.open_time, kind="mergesort"))
    keep_mask = np.ones(ordered.rows, dtype=bool)
    keep_mask[:-1] = ordered.open_time[:-1] != ordered.open_time[1:]
    if keep_mask.all():
        return ordered
    return ordered._take(keep_mask)


def parse_candle_rows(rows: Sequence[Any], source: Path | str = "<memory>") -> list[TradeData]:
    """Parse Binance kline arrays or candle objects."""
    if not isinstance(rows, list):
        raise ValueError(f"Candle file must contain a JSON array: {source}")
    try:
        return [TradeData.from_raw(row) for row in rows]
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid candle row in {source}: {exc}") from exc


def _read_json_rows(path: Path) -> list[TradeData]:
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return parse_candle_rows(payload, path)


def load_candle_files(paths: Iterable[str | Path], coin: str = "", interval: str = "1m") -> CandleSlice:
    """Read candle JSON files, or every ``*.json`` file inside given directories, into one sorted slice."""
    candles: list[TradeData] = []
    for raw_path in paths:
        path = Path(raw_path)
        if path.is_dir():
            files = sorted(path.glob("*.json"))
        elif path.is_file():
            files = [path]
        else:
            raise FileNotFoundError(f"Candle file not found: {path}")
        for file_path in files:
            rows = _read_json_rows(file_path)
            logger.debug("Loaded %s candles from %s", len(rows), file_path)
            candles.extend(rows)
    return CandleSlice.from_candles(candles, coin=coin, interval=interval)


class CandleFeeder:
    """
    Read one-day candle files from an existing cache directory.

    Layout: ``<root>/<exchange>/<interval>/<PAIR>/<PAIR>_<interval>_<dayStartMs>.json``.
    A missing file, or a day with fewer candles than a full day plus the next
    open, yields an empty list.
    """

    def __init__(
        self,
        cache_root: str | Path,
        require_complete_days: bool = True,
        max_cached_days: int = _DEFAULT_MAX_CACHED_DAYS,
    ):
        self.cache_root = Path(cache_root)
        self.require_complete_days = require_complete_days
        self.max_cached_days = max(1, int(max_cached_days))
        self._days: OrderedDict[tuple[str, str, str, int], CandleSlice] = OrderedDict()
        self._lock = threading.RLock()

    def day_path(self, coin: str, exchange: str, interval: str, day_start: int) -> Path:
        pair = normalize_coin(coin)
        tf = normalize_interval(interval)
        return self.cache_root / exchange / tf / pair / f"{pair}_{tf}_{int(day_start)}.json"

    def _expected_rows(self, interval: str) -> int:
        return DAY_MS // interval_to_ms(interval) + 1

    def _load_day(self, coin: str, exchange: str, interval: str, day_start: int) -> CandleSlice:
        key = (exchange, normalize_coin(coin), normalize_interval(interval), day_start)
        with self._lock:
            cached = self._days.get(key)
            if cached is not None:
                self._days.move_to_end(key)
                return cached

        path = self.day_path(coin, exchange, interval, day_start)
        if not path.is_file():
            logger.debug("No cached candles at %s", path)
            frame = CandleSlice.from_candles([], coin=key[1], interval=key[2])
        else:
            rows = _read_json_rows(path)
            if self.require_complete_days and len(rows) < self._expected_rows(interval):
                logger.warning("Incomplete candle day %s (%s rows), ignoring", path, len(rows))
                rows = []
            frame = CandleSlice.from_candles(rows, coin=key[1], interval=key[2])
            logger.debug("Loaded candles %s/%s day=%s rows=%s", key[1], key[2], day_start, frame.rows)

        with self._lock:
            self._days[key] = frame
            while len(self._days) > self.max_cached_days:
                self._days.popitem(last=False)
        return frame

    async def get_trade_data(
        self,
        coin: str,
        exchange: str,
        start_time: int,
        interval: str = "1m",
    ) -> list[TradeData]:
        exchange_name = normalize_exchange(exchange)
        if exchange_name is None:
            raise ApiError(f"Unsupported exchange: {exchange}", status_code=400)
        day_start = utc_day_start(start_time)
        frame = await asyncio.to_thread(self._load_day, coin, exchange_name, interval, day_start)
        return frame.slice_by_time(start_time=start_time).to_list()

    def list_days(self, coin: str, exchange: str, interval: str = "1m") -> list[int]:
        """Day-start timestamps available in the cache for one pair."""
        folder = self.day_path(coin, exchange, interval, 0).parent
        if not folder.is_dir():
            return []
        days: list[int] = []
        for file_path in folder.glob("*.json"):
            suffix = file_path.stem.rsplit("_", 1)[-1]
            if suffix.isdigit():
                days.append(int(suffix))
        return sorted(days)


class InMemoryCandleSource:
    """Serves pre-loaded candles per coin, one UTC day per request. Coins in ``errors`` raise instead."""

    def __init__(
        self,
        candles: dict[str, Iterable[TradeData]] | None = None,
        errors: dict[str, Exception] | None = None,
    ):
        self._frames: dict[str, CandleSlice] = {}
        self.errors = dict(errors or {})
        self.requests: list[tuple[str, str, int, str]] = []
        for coin, rows in (candles or {}).items():
            self.add(coin, rows)

    def add(self, coin: str, candles: Iterable[TradeData]) -> None:
        pair = normalize_coin(coin)
        existing = self._frames[pair].to_list() if pair in self._frames else []
        self._frames[pair] = CandleSlice.from_candles([*existing, *candles], coin=pair)

    async def get_trade_data(
        self,
        coin: str,
        exchange: str,
        start_time: int,
        interval: str = "1m",
    ) -> list[TradeData]:
        pair = normalize_coin(coin)
        self.requests.append((pair, exchange, int(start_time), interval))
        if pair in self.errors:
            raise self.errors[pair]
        frame = self._frames.get(pair)
        if frame is None:
            return []
        day_end = utc_day_start(start_time) + DAY_MS
        return frame.slice_by_time(start_time=start_time, end_time=day_end).to_list()


class RateLimiter:
    """Enforces a minimum interval between calls. Clock and sleep are injectable."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None
        self._lock: asyncio.Lock | None = None

    async def acquire(self) -> float:
        """Wait until the next call is allowed. Returns the number of seconds waited."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            now = self._clock()
            waited = 0.0
            if self._last_call is not None:
                waited = max(0.0, self._last_call + self.min_interval - now)
            if waited > 0:
                await self._sleep(waited)
            self._last_call = now + waited
            return waited


class RateLimitedSource:
    """Wraps a candle source so every request passes through a ``RateLimiter``."""

    def __init__(self, source: CandleSource, limiter: RateLimiter):
        self.source = source
        self.limiter = limiter

    async def get_trade_data(
        self,
        coin: str,
        exchange: str,
        start_time: int,
        interval: str = "1m",
    ) -> list[TradeData]:
        await self.limiter.acquire()
        return await self.source.get_trade_data(coin, exchange, start_time, interval)
