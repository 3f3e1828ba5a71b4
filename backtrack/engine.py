"""Single-order trade lifecycle state machine.

A ``TradeState`` is an immutable value: every transition builds a new state
with ``dataclasses.replace``. The shared ``EventLog`` is the only mutable
member and receives the audit trail of fills, trailing updates and closes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from core.market_metadata import MINUTE_MS

from .cornix import (
    MIN_TRAILING_PCT,
    get_default_stop_loss,
    get_new_stop_loss,
    infer_direction,
    interpolate_entry_zone,
    map_price_targets,
    sum_pct,
)
from .exceptions import ConfigurationError
from .models import (
    BackTrackingConfig,
    CornixConfiguration,
    DetailedEntry,
    Direction,
    EntryType,
    EventLog,
    EventType,
    LogEvent,
    Order,
    PriceTargetWithPrice,
    TradeData,
    TradeResult,
    TrailingStop,
)

logger = logging.getLogger(__name__)

ENTRY_PCT_TOLERANCE = 1e-9
TP_PCT_TOLERANCE = 0.1


class Phase(str, Enum):
    INITIAL = "initial"
    ENTRY_REACHED = "entry reached"
    TAKE_PROFIT_REACHED = "take profit reached"
    ALL_PROFITS_DONE = "all profits done"
    STOP_LOSS_REACHED = "stop loss reached"
    STOP_LOSS_AFTER_TAKE_PROFIT = "stop loss after take profit"
    CANCELLED = "cancelled"
    TAKE_PROFIT_BEFORE_ENTRY = "take profit before entry"


TERMINAL_PHASES = frozenset(
    {
        Phase.ALL_PROFITS_DONE,
        Phase.STOP_LOSS_REACHED,
        Phase.STOP_LOSS_AFTER_TAKE_PROFIT,
        Phase.CANCELLED,
        Phase.TAKE_PROFIT_BEFORE_ENTRY,
    }
)
_ENTRY_PHASES = frozenset({Phase.INITIAL, Phase.ENTRY_REACHED})
_POSITION_PHASES = frozenset({Phase.ENTRY_REACHED, Phase.TAKE_PROFIT_REACHED})


@dataclass(frozen=True)
class TrailingState:
    """Scratch values for trailing take-profit and stop-loss timeout."""

    active: bool = False
    reference_price: float = 0.0
    stop_price: float = 0.0
    highest_reached_tp: PriceTargetWithPrice | None = None
    sl_breach_started: int | None = None


@dataclass(frozen=True)
class InternalState:
    order: Order
    config: CornixConfiguration
    direction: Direction
    leverage: float
    allocated_amount: float
    trade_open_time: int
    remaining_entries: tuple[PriceTargetWithPrice, ...]
    remaining_tps: tuple[PriceTargetWithPrice, ...]
    current_sl: float | None
    trade_close_time: int | None = None
    entries: tuple[DetailedEntry, ...] = ()
    take_profits: tuple[DetailedEntry, ...] = ()
    sl: DetailedEntry | None = None
    cancel_fill: DetailedEntry | None = None
    cancelled: bool = False
    detailed_log: bool = False


@dataclass(frozen=True)
class TradeState:
    phase: Phase
    internal: InternalState
    events: EventLog = field(compare=False, repr=False)
    trailing: TrailingState = field(default_factory=TrailingState)
    current_candle: Optional[TradeData] = None
    previous_candle: Optional[TradeData] = None

    # -- identity -----------------------------------------------------------

    @property
    def order(self) -> Order:
        return self.internal.order

    @property
    def config(self) -> CornixConfiguration:
        return self.internal.config

    @property
    def direction(self) -> Direction:
        return self.internal.direction

    @property
    def leverage(self) -> float:
        return self.internal.leverage

    @property
    def is_open(self) -> bool:
        return bool(self.internal.entries)

    @property
    def is_closed(self) -> bool:
        return self.internal.trade_close_time is not None

    @property
    def is_fully_open(self) -> bool:
        return not self.internal.remaining_entries

    # -- derived quantities ---------------------------------------------------

    @property
    def allocated_amount(self) -> float:
        return self.internal.allocated_amount

    @property
    def allocated_amount_with_lev(self) -> float:
        return self.internal.allocated_amount * self.leverage

    @property
    def spent_amount_with_lev(self) -> float:
        return sum(entry.total for entry in self.internal.entries)

    @property
    def spent_amount(self) -> float:
        return self.spent_amount_with_lev / self.leverage

    @property
    def remaining_amount(self) -> float:
        return self.allocated_amount - self.spent_amount

    @property
    def bought_coins(self) -> float:
        return sum(entry.coins for entry in self.internal.entries)

    def _exits(self) -> list[DetailedEntry]:
        exits = list(self.internal.take_profits)
        if self.internal.sl is not None:
            exits.append(self.internal.sl)
        if self.internal.cancel_fill is not None:
            exits.append(self.internal.cancel_fill)
        return exits

    @property
    def sold_coins(self) -> float:
        return sum(item.coins for item in self._exits())

    @property
    def remaining_coins(self) -> float:
        return self.bought_coins - self.sold_coins

    @property
    def sale_value_with_lev(self) -> float:
        return sum(item.total for item in self._exits())

    @property
    def sale_value(self) -> float:
        return self.sale_value_with_lev / self.leverage

    @property
    def sold_pct(self) -> float:
        bought = self.bought_coins
        return self.sold_coins / bought if bought else 0.0

    @property
    def average_entry_price(self) -> float:
        bought = self.bought_coins
        return self.spent_amount_with_lev / bought if bought else 0.0

    @property
    def average_sale_price(self) -> float:
        sold = self.sold_coins
        return self.sale_value_with_lev / sold if sold else 0.0

    @property
    def remaining_coins_current_value(self) -> float:
        price = self.current_candle.open if self.current_candle is not None else 0.0
        return self.remaining_coins * price

    @property
    def realized_profit(self) -> float:
        gain = self.sale_value_with_lev - self.spent_amount_with_lev * self.sold_pct
        return gain * self.direction.sign

    @property
    def unrealized_profit(self) -> float:
        if not self.bought_coins:
            return 0.0
        gain = self.remaining_coins_current_value - self.spent_amount_with_lev * (1 - self.sold_pct)
        return gain * self.direction.sign

    @property
    def profit(self) -> float:
        return self.realized_profit + self.unrealized_profit

    @property
    def pnl(self) -> float:
        spent = self.spent_amount
        if not spent:
            return 0.0
        return 100 * self.profit / spent

    @property
    def info(self) -> TradeResult:
        internal = self.internal
        pnl = self.pnl
        return TradeResult(
            coin=internal.order.coin,
            direction=internal.direction,
            reached_entries=len(internal.entries),
            reached_tps=internal.take_profits[-1].entry if internal.take_profits else 0,
            reached_all_entries=not internal.remaining_entries,
            reached_all_tps=not internal.remaining_tps,
            open_time=internal.trade_open_time,
            close_time=internal.trade_close_time,
            is_closed=self.is_closed,
            is_cancelled=internal.cancelled,
            is_profitable=pnl > 0,
            pnl=pnl,
            profit=self.profit,
            hit_sl=internal.sl is not None,
            average_entry_price=self.average_entry_price,
            average_sale_price=self.average_sale_price,
            allocated_amount=self.allocated_amount,
            spent_amount=self.spent_amount,
            sold_amount=self.sale_value,
            realized_profit=self.realized_profit,
            unrealized_profit=self.unrealized_profit,
            bought_coins=self.bought_coins,
        )

    # -- transitions ------------------------------------------------------------

    def update_state(self, candle: TradeData) -> "TradeState":
        """
        Fold one candle into the trade.

        The candle is re-applied while it produces fills, so one call returns
        the stable state for that candle. Candles not newer than the last seen
        one are ignored and a closed trade returns itself.
        """
        if self.is_closed:
            self.events.verbose(
                LogEvent(type=EventType.INFO, timestamp=candle.open_time, text="Trade is closed")
            )
            return self
        if self.current_candle is not None and candle.open_time <= self.current_candle.open_time:
            return self

        state = replace(self, current_candle=candle, previous_candle=self.current_candle)
        if candle.open_time < self.internal.trade_open_time:
            self.events.verbose(
                LogEvent(
                    type=EventType.INFO,
                    timestamp=candle.open_time,
                    text="Time before trade open",
                    order_time=self.internal.trade_open_time,
                    candle_time=candle.open_time,
                )
            )
            return state

        if self.internal.detailed_log:
            state._log_crosses(candle)

        while True:
            next_state, filled = state._apply(candle)
            if not filled or next_state.is_closed:
                return next_state
            state = next_state

    def _apply(self, candle: TradeData) -> tuple["TradeState", bool]:
        if self._has_lifecycle_event_before(candle):
            return self._cancel(candle), True
        if self._matches_entry(candle):
            return self._hit_entry(candle), True
        if self._matches_take_profit(candle):
            return self._hit_take_profit(candle)
        return self._check_stop_loss(candle)

    # entries

    def _entry_threshold(self) -> float:
        price = self.internal.remaining_entries[0].price
        grace = self.config.first_entry_grace_pct
        if grace and self.phase is Phase.INITIAL:
            return price * (1 + self.direction.sign * grace / 100)
        return price

    def _matches_entry(self, candle: TradeData) -> bool:
        if self.phase not in _ENTRY_PHASES or not self.internal.remaining_entries:
            return False
        threshold = self._entry_threshold()
        if self.direction is Direction.LONG:
            return candle.low <= threshold
        return candle.high >= threshold

    def _hit_entry(self, candle: TradeData) -> "TradeState":
        target = self.internal.remaining_entries[0]
        price = self._entry_threshold()
        spent = self.allocated_amount * target.percentage / 100
        spent_with_lev = spent * self.leverage
        coins = spent_with_lev / price

        self.events.log(
            LogEvent(
                type=EventType.BUY,
                timestamp=candle.open_time,
                price=price,
                spent=spent,
                spent_with_leverage=spent_with_lev,
                bought=coins,
                id=target.id,
            )
        )
        fill = DetailedEntry(entry=target.id, price=price, coins=coins, total=spent_with_lev, date=candle.open_time)
        internal = replace(
            self.internal,
            entries=self.internal.entries + (fill,),
            remaining_entries=self.internal.remaining_entries[1:],
        )
        return replace(self, phase=Phase.ENTRY_REACHED, internal=internal)

    # take-profits

    def _tp_crossed(self, candle: TradeData, target: PriceTargetWithPrice) -> bool:
        if self.direction is Direction.LONG:
            return candle.high >= target.price
        return candle.low <= target.price

    def _matches_take_profit(self, candle: TradeData) -> bool:
        if self.phase is Phase.INITIAL:
            if not self.config.close_trade_on_tp_sl_before_entry:
                return False
        elif self.phase not in _POSITION_PHASES:
            return False
        if self.trailing.active:
            return True
        return bool(self.internal.remaining_tps) and self._tp_crossed(candle, self.internal.remaining_tps[0])

    def _hit_take_profit(self, candle: TradeData) -> tuple["TradeState", bool]:
        if self.phase is Phase.INITIAL:
            internal = replace(self.internal, cancelled=True)
            return replace(self, internal=internal)._close(candle, Phase.TAKE_PROFIT_BEFORE_ENTRY), True
        if self.config.trailing_take_profit is None:
            return self._hit_tp_without_trailing(candle), True
        if not self.trailing.active:
            return self._activate_trailing(candle), False
        if self._should_trailing_stop(candle):
            return self._hit_tp_with_trailing(candle), True
        if self._should_trailing_update(candle):
            return self._update_trailing(candle), False
        return self, False

    def effective_trailing_pct(self) -> float:
        if self.config.trailing_take_profit is None:
            return 0.0
        return max(MIN_TRAILING_PCT, self.config.trailing_take_profit / self.leverage)

    def _favourable_price(self, candle: TradeData) -> float:
        return candle.high if self.direction is Direction.LONG else candle.low

    def _adverse_price(self, candle: TradeData) -> float:
        return candle.low if self.direction is Direction.LONG else candle.high

    def _trailing_stop_for(self, reference: float) -> float:
        return reference * (1 - self.direction.sign * self.effective_trailing_pct())

    def _highest_tp_reached_by(self, reference: float) -> PriceTargetWithPrice | None:
        reached = None
        for target in self.internal.remaining_tps:
            if (target.price - reference) * self.direction.sign <= 0:
                reached = target
        return reached

    def _activate_trailing(self, candle: TradeData) -> "TradeState":
        reference = self._favourable_price(candle)
        stop_price = self._trailing_stop_for(reference)
        highest = self._highest_tp_reached_by(reference) or self.internal.remaining_tps[0]
        self.events.log(
            LogEvent(
                type=EventType.TRAILING_ACTIVATED,
                timestamp=candle.open_time,
                price=reference,
                trailing_stop_price=stop_price,
                id=highest.id,
            )
        )
        trailing = replace(
            self.trailing,
            active=True,
            reference_price=reference,
            stop_price=stop_price,
            highest_reached_tp=highest,
        )
        return replace(self, trailing=trailing)

    def _should_trailing_stop(self, candle: TradeData) -> bool:
        return (self._adverse_price(candle) - self.trailing.stop_price) * self.direction.sign <= 0

    def _should_trailing_update(self, candle: TradeData) -> bool:
        return (self._favourable_price(candle) - self.trailing.reference_price) * self.direction.sign > 0

    def _update_trailing(self, candle: TradeData) -> "TradeState":
        reference = self._favourable_price(candle)
        stop_price = self._trailing_stop_for(reference)
        highest = self._highest_tp_reached_by(reference) or self.trailing.highest_reached_tp
        self.events.log(
            LogEvent(
                type=EventType.TRAILING_PRICE_UPDATED,
                timestamp=candle.open_time,
                price=reference,
                previous_price=self.trailing.reference_price,
                trailing_stop_price=stop_price,
            )
        )
        trailing = replace(self.trailing, reference_price=reference, stop_price=stop_price, highest_reached_tp=highest)
        return replace(self, trailing=trailing)

    def _hit_tp_with_trailing(self, candle: TradeData) -> "TradeState":
        highest = self.trailing.highest_reached_tp or self.internal.remaining_tps[0]
        merged = [target for target in self.internal.remaining_tps if target.id <= highest.id]
        pct = sum_pct(merged)
        coins = self.bought_coins * pct / 100
        total = coins * highest.price

        self.events.log(
            LogEvent(
                type=EventType.SELL_WITH_TRAILING,
                timestamp=candle.open_time,
                price=highest.price,
                total=total,
                sold=coins,
                id=highest.id,
                trailing_stop_price=self.trailing.stop_price,
            )
        )
        fills = tuple(
            DetailedEntry(
                entry=target.id, price=target.price, coins=0.0, total=0.0, date=candle.open_time, state="merged"
            )
            for target in merged
            if target.id < highest.id
        )
        fills += (
            DetailedEntry(
                entry=highest.id, price=highest.price, coins=coins, total=total, date=candle.open_time, state="trailing"
            ),
        )
        return self._after_take_profit(candle, fills, highest.id)

    def _hit_tp_without_trailing(self, candle: TradeData) -> "TradeState":
        target = self.internal.remaining_tps[0]
        coins = self.bought_coins * target.percentage / 100
        total = coins * target.price

        self.events.log(
            LogEvent(
                type=EventType.SELL,
                timestamp=candle.open_time,
                price=target.price,
                total=total,
                sold=coins,
                id=target.id,
            )
        )
        fill = DetailedEntry(entry=target.id, price=target.price, coins=coins, total=total, date=candle.open_time)
        return self._after_take_profit(candle, (fill,), target.id)

    def _after_take_profit(self, candle: TradeData, fills: tuple[DetailedEntry, ...], reached_id: int) -> "TradeState":
        remaining = tuple(target for target in self.internal.remaining_tps if target.id > reached_id)
        new_sl = get_new_stop_loss(
            self.config,
            reached_id,
            self.internal.current_sl,
            self.average_entry_price,
            self.order.tps,
        )
        if new_sl != self.internal.current_sl:
            self.events.log(
                LogEvent(
                    type=EventType.SL_MOVED,
                    timestamp=candle.open_time,
                    price=new_sl,
                    previous_price=self.internal.current_sl,
                    id=reached_id,
                )
            )
        internal = replace(
            self.internal,
            take_profits=self.internal.take_profits + fills,
            remaining_tps=remaining,
            current_sl=new_sl,
        )
        state = replace(self, phase=Phase.TAKE_PROFIT_REACHED, internal=internal, trailing=TrailingState())
        if not remaining:
            return state._close(candle, Phase.ALL_PROFITS_DONE)
        return state

    # stop-loss

    def _sl_crossed(self, candle: TradeData) -> bool:
        current_sl = self.internal.current_sl
        if current_sl is None or self.phase not in _POSITION_PHASES:
            return False
        if self.direction is Direction.LONG:
            return candle.low <= current_sl
        return candle.high >= current_sl

    def _check_stop_loss(self, candle: TradeData) -> tuple["TradeState", bool]:
        if not self._sl_crossed(candle):
            if self.trailing.sl_breach_started is not None:
                return replace(self, trailing=replace(self.trailing, sl_breach_started=None)), False
            return self, False

        timeout = self.config.sl.stop_timeout_minutes
        if timeout:
            started = self.trailing.sl_breach_started
            if started is None:
                return replace(self, trailing=replace(self.trailing, sl_breach_started=candle.open_time)), False
            if candle.open_time - started < timeout * MINUTE_MS:
                return self, False
        return self._hit_stop_loss(candle), True

    def _hit_stop_loss(self, candle: TradeData) -> "TradeState":
        price = float(self.internal.current_sl)
        coins = self.remaining_coins
        total = coins * price
        self.events.log(LogEvent(type=EventType.SL, timestamp=candle.open_time, price=price, total=total, sold=coins))

        internal = replace(
            self.internal,
            sl=DetailedEntry(entry=-1, price=price, coins=coins, total=total, date=candle.open_time),
        )
        phase = Phase.STOP_LOSS_AFTER_TAKE_PROFIT if self.internal.take_profits else Phase.STOP_LOSS_REACHED
        return replace(self, internal=internal)._close(candle, phase)

    # cancellation

    def _has_lifecycle_event_before(self, candle: TradeData) -> bool:
        return any(event.timestamp < candle.open_time for event in self.order.events)

    def _cancel(self, candle: TradeData) -> "TradeState":
        price = candle.open
        coins = self.remaining_coins
        total = coins * price
        self.events.log(
            LogEvent(type=EventType.CANCELLED, timestamp=candle.open_time, price=price, total=total, sold=coins)
        )
        cancel_fill = None
        if coins:
            cancel_fill = DetailedEntry(
                entry=-1, price=price, coins=coins, total=total, date=candle.open_time, state="cancelled"
            )
        internal = replace(self.internal, cancel_fill=cancel_fill, cancelled=True)
        return replace(self, internal=internal)._close(candle, Phase.CANCELLED)

    def _close(self, candle: TradeData, phase: Phase) -> "TradeState":
        self.events.log(LogEvent(type=EventType.CLOSE, timestamp=candle.open_time, text=phase.value))
        internal = replace(self.internal, trade_close_time=candle.open_time)
        return replace(self, phase=phase, internal=internal)

    # detailed log

    def _log_crosses(self, candle: TradeData) -> None:
        if not (self.is_open or self._matches_entry(candle)):
            return

        levels: list[tuple[str, int | None, float]] = [
            ("entry", idx + 1, price) for idx, price in enumerate(self.order.entries)
        ]
        if self.is_open:
            levels.append(("averageEntry", None, self.average_entry_price))
        levels.extend(("tp", idx + 1, price) for idx, price in enumerate(self.order.tps))
        if self.order.sl is not None:
            levels.append(("sl", None, self.order.sl))

        for subtype, level_id, price in levels:
            for direction in ("up", "down"):
                if _crossed_price(candle, price, direction):
                    self.events.log(
                        LogEvent(
                            type=EventType.CROSS,
                            timestamp=candle.open_time,
                            direction=direction,
                            subtype=subtype,
                            id=level_id,
                            price=price,
                            trade_data=candle,
                        )
                    )


def _crossed_price(candle: TradeData, price: float, direction: str) -> bool:
    if direction == "down":
        return candle.low <= price < candle.open
    return candle.open < price <= candle.high


def _resolve_entry_prices(order: Order, config: CornixConfiguration, direction: Direction) -> list[float]:
    if config.entry_type is EntryType.ZONE:
        zone = order.entry_zone
        if zone is None and len(order.entries) >= 2:
            zone = (order.entries[0], order.entries[-1])
        if zone is not None:
            return interpolate_entry_zone(zone, config.entry_zone_targets, direction)
    return list(order.entries)


def _resolve_allocated_amount(order: Order, config: CornixConfiguration) -> float:
    amount = order.amount if order.amount is not None else config.amount
    if isinstance(amount, str):
        raise ConfigurationError(
            f"Amount {amount} is relative to an account balance, resolve it before backtracking {order.coin}"
        )
    return float(amount)


def create_initial_state(
    order: Order,
    config: CornixConfiguration,
    events: EventLog | None = None,
    backtrack_config: BackTrackingConfig | None = None,
) -> TradeState:
    """Build the initial state, raising ``ConfigurationError`` for invalid target percentages."""
    backtrack_config = backtrack_config or BackTrackingConfig()
    events = events if events is not None else EventLog()

    raw_entries = list(order.entries) or list(order.entry_zone or ())
    direction = order.direction or infer_direction(raw_entries, order.tps)
    entries = map_price_targets(_resolve_entry_prices(order, config, direction), config.entries)
    tps = map_price_targets(order.tps, config.tps)
    if not entries or not tps:
        raise ConfigurationError(f"Order {order.coin} needs at least one entry and one take-profit")
    if abs(sum_pct(entries) - 100.0) > ENTRY_PCT_TOLERANCE:
        raise ConfigurationError(f"entries percentage must add to 100%, got {sum_pct(entries):.4f}")
    if abs(sum_pct(tps) - 100.0) > TP_PCT_TOLERANCE:
        raise ConfigurationError(f"TPs percentage must add to 100%, got {sum_pct(tps):.4f}")

    leverage = float(order.leverage or 1.0)
    if config.max_leverage is not None:
        leverage = min(leverage, float(config.max_leverage))
    if backtrack_config.detailed_log:
        config = replace(config, trailing_stop=TrailingStop())

    current_sl = order.sl
    if current_sl is None:
        current_sl = get_default_stop_loss(config, entries, direction, leverage)

    internal = InternalState(
        order=replace(order, direction=direction),
        config=config,
        direction=direction,
        leverage=leverage,
        allocated_amount=_resolve_allocated_amount(order, config),
        trade_open_time=order.timestamp,
        remaining_entries=tuple(entries),
        remaining_tps=tuple(tps),
        current_sl=current_sl,
        detailed_log=backtrack_config.detailed_log,
    )
    logger.debug(
        "Initial state %s %s entries=%s tps=%s sl=%s leverage=%s",
        order.coin,
        direction.value,
        [target.price for target in entries],
        [target.price for target in tps],
        current_sl,
        leverage,
    )
    return TradeState(phase=Phase.INITIAL, internal=internal, events=events)
