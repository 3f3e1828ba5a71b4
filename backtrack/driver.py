"""Single-order backtracking drivers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

from core.market_metadata import DAY_MS, normalize_exchange, utc_day_start

from .engine import TradeState, create_initial_state
from .models import (
    BackTrackingConfig,
    CornixConfiguration,
    EventLog,
    EventType,
    LogEvent,
    Order,
    TradeData,
    TradeResult,
)

if TYPE_CHECKING:
    from .candles import CandleSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BacktrackOutcome:
    events: list[LogEvent]
    result: TradeResult
    state: TradeState


def get_backtrack_engine(
    config: CornixConfiguration,
    order: Order,
    backtrack_config: BackTrackingConfig | None = None,
) -> tuple[TradeState, EventLog]:
    events = EventLog(f"backtrack.events.{order.coin}")
    state = create_initial_state(order, config, events=events, backtrack_config=backtrack_config)
    return state, events


def fold_candles(state: TradeState, candles: Iterable[TradeData]) -> TradeState:
    """Feed candles in order until the trade closes or the candles run out."""
    for candle in candles:
        state = state.update_state(candle)
        if state.is_closed:
            break
    return state


def backtrack(
    config: CornixConfiguration,
    order: Order,
    candles: Iterable[TradeData],
    backtrack_config: BackTrackingConfig | None = None,
) -> BacktrackOutcome:
    state, events = get_backtrack_engine(config, order, backtrack_config)
    state = fold_candles(state, candles)
    return BacktrackOutcome(events=events.events, result=state.info, state=state)


async def backtrack_by_day(
    config: CornixConfiguration,
    order: Order,
    source: "CandleSource",
    exchange: str | None = None,
    backtrack_config: BackTrackingConfig | None = None,
    max_days: int | None = None,
    interval: str = "1m",
) -> BacktrackOutcome:
    """
    Request one UTC day of candles at a time and keep folding.

    Stops when the trade closes, when a day returns no candles, or after
    ``max_days`` days have been requested.
    """
    state, events = get_backtrack_engine(config, order, backtrack_config)
    exchange_name = normalize_exchange(exchange or order.exchange, default="binance")
    day_start = utc_day_start(order.timestamp)
    days = 0

    while not state.is_closed:
        if max_days is not None and days >= max_days:
            logger.info("Stopping %s after %s days without close", order.coin, days)
            break
        candles = await source.get_trade_data(order.coin, exchange_name, day_start, interval)
        days += 1
        if not candles:
            logger.info("No trade data for %s on %s from %s, stopping", order.coin, exchange_name, day_start)
            break
        state = fold_candles(state, candles)
        day_start += DAY_MS

    return BacktrackOutcome(events=events.events, result=state.info, state=state)


def get_sorted_unique_crosses(events: Iterable[LogEvent]) -> list[LogEvent]:
    """First cross per (subtype, id, direction), ordered by time."""
    first: dict[tuple[str | None, int | None, str | None], LogEvent] = {}
    for event in events:
        if event.type is not EventType.CROSS:
            continue
        key = (event.subtype, event.id, event.direction)
        if key not in first:
            first[key] = event
    return sorted(first.values(), key=lambda event: event.timestamp)
