"""Account-mode simulation: many orders sharing one capital pool on a one-minute clock."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from core.market_metadata import DAY_MS, MINUTE_MS, floor_to_minute, normalize_coin, normalize_exchange, utc_day_start

from .candles import CandleSource
from .cornix import get_flattened_cornix_config, get_order_amount, order_validation_errors
from .driver import get_backtrack_engine, get_sorted_unique_crosses
from .engine import TradeState
from .exceptions import ApiError, ConfigurationError, MissingTradeDataError
from .models import (
    BackTrackingConfig,
    CornixConfiguration,
    EventLog,
    EventType,
    LogEvent,
    Order,
    TradeData,
    TradeResult,
    iso_utc,
)

logger = logging.getLogger(__name__)

SKIP_MAX_ACTIVE_ORDERS = "max active orders limit reached"
SKIP_INSUFFICIENT_BALANCE = "insufficient balance"
SKIP_INVALID_ORDER = "invalid order"
SKIP_INVALID_CONFIGURATION = "invalid configuration"


def _lowest(current: float | None, value: float) -> float:
    return value if current is None else min(current, value)


def _highest(current: float | None, value: float) -> float:
    return value if current is None else max(current, value)


@dataclass
class ActiveOrder:
    """One admitted order. ``reserved`` is the part of its allocation still held in orders."""

    order: Order
    state: TradeState
    events: EventLog
    config: CornixConfiguration
    exchange: str
    reserved: float
    accounted_realized: float = 0.0
    entries_released: bool = False
    last_pnl: float = 0.0


@dataclass(frozen=True)
class SkippedOrder:
    order: Order
    reason: str
    time: int


@dataclass(frozen=True)
class AccountDailyStats:
    day: int
    account_balance: float
    balance_in_orders: float
    realized_profit_per_day: float
    unrealized_profit_per_day: float
    realized_pnl_per_day: float
    unrealized_pnl_per_day: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "day": iso_utc(self.day),
            "account_balance": self.account_balance,
            "balance_in_orders": self.balance_in_orders,
            "realized_profit_per_day": self.realized_profit_per_day,
            "unrealized_profit_per_day": self.unrealized_profit_per_day,
            "realized_pnl_per_day": self.realized_pnl_per_day,
            "unrealized_pnl_per_day": self.unrealized_pnl_per_day,
        }


@dataclass(frozen=True)
class AccountInfo:
    initial_balance: float
    available_balance: float
    balance_in_orders: float
    count_active_orders: int
    count_finished_orders: int
    count_skipped_orders: int
    open_orders_profit: float
    open_orders_unrealized_profit: float
    open_orders_realized_profit: float
    closed_orders_profit: float
    largest_account_drawdown_pct: float | None
    largest_account_gain_pct: float | None
    largest_order_drawdown_pct: float | None
    largest_order_gain_pct: float | None
    invalid_coins: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "initial_balance": self.initial_balance,
            "available_balance": self.available_balance,
            "balance_in_orders": self.balance_in_orders,
            "count_active_orders": self.count_active_orders,
            "count_finished_orders": self.count_finished_orders,
            "count_skipped_orders": self.count_skipped_orders,
            "open_orders_profit": self.open_orders_profit,
            "open_orders_unrealized_profit": self.open_orders_unrealized_profit,
            "open_orders_realized_profit": self.open_orders_realized_profit,
            "closed_orders_profit": self.closed_orders_profit,
            "largest_account_drawdown_pct": self.largest_account_drawdown_pct,
            "largest_account_gain_pct": self.largest_account_gain_pct,
            "largest_order_drawdown_pct": self.largest_order_drawdown_pct,
            "largest_order_gain_pct": self.largest_order_gain_pct,
            "invalid_coins": list(self.invalid_coins),
        }


@dataclass
class AccountState:
    start_time: int
    end_time: int
    current_time: int
    initial_balance: float
    available_balance: float
    config: CornixConfiguration
    max_active_orders: int | None
    remaining_orders: list[Order] = field(default_factory=list)
    active_orders: list[ActiveOrder] = field(default_factory=list)
    finished_orders: list[ActiveOrder] = field(default_factory=list)
    skipped_orders: list[SkippedOrder] = field(default_factory=list)
    balance_in_orders: float = 0.0
    open_orders_profit: float = 0.0
    open_orders_unrealized_profit: float = 0.0
    open_orders_realized_profit: float = 0.0
    closed_orders_profit: float = 0.0
    # None until an order has spent capital on a stepped tick
    largest_account_drawdown_pct: float | None = None
    largest_account_gain_pct: float | None = None
    largest_order_drawdown_pct: float | None = None
    largest_order_gain_pct: float | None = None
    invalid_coins: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class OrderReport:
    order: Order
    info: TradeResult
    events: list[LogEvent]
    sorted_unique_crosses: list[LogEvent]
    state: TradeState = field(repr=False)

    @property
    def trade_data(self) -> list[TradeData]:
        return [event.trade_data for event in self.sorted_unique_crosses if event.trade_data is not None]


@dataclass
class _DayAccumulator:
    day: int
    start_equity: float
    realized_profit: float = 0.0


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class AccountSimulation:
    """
    Simulate one capital pool running many orders on a one-minute clock.

    Each tick admits due orders, steps every active order with its candle for
    that minute, moves sold capital and realized profit back to the available
    balance, retires closed orders and rolls up daily statistics at UTC
    midnight.
    """

    def __init__(
        self,
        orders: Iterable[Order],
        config: CornixConfiguration,
        source: CandleSource,
        initial_balance: float = 1000.0,
        max_active_orders: int | None = None,
        end_time: int | None = None,
        exchange: str = "binance",
        backtrack_config: BackTrackingConfig | None = None,
        interval: str = "1m",
    ):
        remaining = sorted(orders, key=lambda item: item.timestamp)
        end = floor_to_minute(end_time if end_time is not None else _wall_clock_ms())
        start = floor_to_minute(remaining[0].timestamp) if remaining else end

        limit = max_active_orders if max_active_orders is not None else config.max_active_orders
        if limit is not None and limit < 0:
            limit = None

        self.source = source
        self.exchange = normalize_exchange(exchange, default="binance")
        self.backtrack_config = backtrack_config or BackTrackingConfig()
        self.interval = interval
        self.events = EventLog("backtrack.account")
        self.daily_stats: list[AccountDailyStats] = []
        self.state = AccountState(
            start_time=start,
            end_time=end,
            current_time=start,
            initial_balance=float(initial_balance),
            available_balance=float(initial_balance),
            config=config,
            max_active_orders=limit,
            remaining_orders=remaining,
        )
        # (exchange, coin) -> open_time -> candle, written once per key for the run.
        self._trade_data: dict[tuple[str, str], dict[int, TradeData]] = {}
        self._day_loads: dict[tuple[str, str, int], asyncio.Future] = {}
        self._day = _DayAccumulator(day=utc_day_start(start), start_equity=float(initial_balance))

        self.events.log(
            LogEvent(type=EventType.INFO, timestamp=start, amount=float(initial_balance), text="initial balance")
        )

    # -- main loop --------------------------------------------------------------

    async def run(self) -> AccountState:
        state = self.state
        logger.info(
            "Account simulation: %s orders, balance=%.2f, max_active=%s, %s -> %s",
            len(state.remaining_orders),
            state.initial_balance,
            state.max_active_orders,
            iso_utc(state.start_time),
            iso_utc(state.end_time),
        )
        while state.current_time < state.end_time:
            if state.current_time != state.start_time and state.current_time % DAY_MS == 0:
                self._roll_day(state.current_time)

            try:
                self._admit_orders()
                await self._step_active_orders()
            finally:
                state.current_time += MINUTE_MS

            if not state.active_orders and not state.remaining_orders:
                break

        self._append_daily_stats()
        logger.info(
            "Account simulation done: finished=%s active=%s skipped=%s available=%.2f closed_profit=%.2f",
            len(state.finished_orders),
            len(state.active_orders),
            len(state.skipped_orders),
            state.available_balance,
            state.closed_orders_profit,
        )
        return state

    # -- admission --------------------------------------------------------------

    def _admit_orders(self) -> None:
        state = self.state
        while state.remaining_orders and state.remaining_orders[0].timestamp - state.current_time <= MINUTE_MS:
            order = state.remaining_orders.pop(0)
            try:
                self._activate_order(order)
            except Exception:
                logger.exception("Failed to admit order %s %s", order.coin, iso_utc(order.date))
                self._skip(order, SKIP_INVALID_ORDER)

    def _skip(self, order: Order, reason: str) -> None:
        self.state.skipped_orders.append(SkippedOrder(order=order, reason=reason, time=self.state.current_time))
        self.events.log(
            LogEvent(type=EventType.ORDER_SKIPPED, timestamp=self.state.current_time, coin=order.coin, reason=reason)
        )
        logger.info("Skipping order %s %s: %s", order.coin, iso_utc(order.date), reason)

    def _activate_order(self, order: Order) -> None:
        state = self.state
        if state.max_active_orders is not None and len(state.active_orders) >= state.max_active_orders:
            self._skip(order, SKIP_MAX_ACTIVE_ORDERS)
            return

        errors = order_validation_errors(order)
        if errors:
            logger.debug("Order %s rejected: %s", order.coin, "; ".join(errors))
            self._skip(order, SKIP_INVALID_ORDER)
            return

        balance_before = state.available_balance
        try:
            amount = get_order_amount(order, state.config, balance_before)
        except ValueError:
            self._skip(order, SKIP_INVALID_ORDER)
            return
        if amount <= 0 or amount > balance_before:
            self._skip(order, SKIP_INSUFFICIENT_BALANCE)
            return

        try:
            config = get_flattened_cornix_config(state.config, order.config, {"amount": amount})
            engine, events = get_backtrack_engine(config, replace(order, amount=amount), self.backtrack_config)
        except ConfigurationError as exc:
            logger.warning("Order %s has an invalid configuration: %s", order.coin, exc)
            self._skip(order, SKIP_INVALID_CONFIGURATION)
            return

        state.available_balance -= amount
        state.balance_in_orders += amount
        state.active_orders.append(
            ActiveOrder(
                order=engine.order,
                state=engine,
                events=events,
                config=config,
                exchange=normalize_exchange(order.exchange, default=self.exchange),
                reserved=amount,
            )
        )
        self.events.log(
            LogEvent(
                type=EventType.OPEN_ORDER,
                timestamp=state.current_time,
                coin=order.coin,
                amount=amount,
                balance_before=balance_before,
                balance_after=state.available_balance,
            )
        )
        logger.debug("Opened order %s amount=%.2f available=%.2f", order.coin, amount, state.available_balance)

    # -- stepping ---------------------------------------------------------------

    async def _step_active_orders(self) -> None:
        state = self.state
        active = list(state.active_orders)
        if not active:
            return

        candles = await asyncio.gather(
            *(self._load_trade_data(item.order.coin, item.exchange, state.current_time) for item in active),
            return_exceptions=True,
        )

        for item, candle in zip(active, candles):
            if isinstance(candle, MissingTradeDataError):
                logger.debug("%s", candle)
                continue
            if isinstance(candle, Exception):
                logger.error(
                    "Failed to load trade data for %s at %s",
                    item.order.coin,
                    iso_utc(state.current_time),
                    exc_info=candle,
                )
                continue
            if isinstance(candle, BaseException):
                raise candle
            try:
                self._step_order(item, candle)
            except Exception:
                logger.exception("Failed to process order %s at %s", item.order.coin, iso_utc(state.current_time))

        profit = sum(item.state.profit for item in active)
        spent = sum(item.state.spent_amount for item in active)
        if spent:
            account_pnl = 100 * profit / spent
            state.largest_account_drawdown_pct = _lowest(state.largest_account_drawdown_pct, account_pnl)
            state.largest_account_gain_pct = _highest(state.largest_account_gain_pct, account_pnl)

        state.balance_in_orders = sum(item.reserved for item in state.active_orders)
        state.open_orders_unrealized_profit = sum(item.state.unrealized_profit for item in state.active_orders)
        state.open_orders_profit = state.open_orders_realized_profit + state.open_orders_unrealized_profit

    def _step_order(self, item: ActiveOrder, candle: TradeData) -> None:
        state = self.state
        before = item.state
        after = before.update_state(candle)
        item.state = after

        if after.sale_value_with_lev > before.sale_value_with_lev:
            self._reconcile(item, before, after)

        item.last_pnl = after.pnl
        if after.spent_amount:
            state.largest_order_drawdown_pct = _lowest(state.largest_order_drawdown_pct, item.last_pnl)
            state.largest_order_gain_pct = _highest(state.largest_order_gain_pct, item.last_pnl)

        if after.is_closed:
            self._close_order(item)

    def _reconcile(self, item: ActiveOrder, before: TradeState, after: TradeState) -> None:
        state = self.state
        balance_before = state.available_balance

        if not item.entries_released and after.internal.take_profits and after.internal.remaining_entries:
            released = max(0.0, min(item.reserved, after.remaining_amount))
            state.available_balance += released
            item.reserved -= released
            item.entries_released = True
            self.events.log(
                LogEvent(
                    type=EventType.ENTRIES_RELEASED,
                    timestamp=state.current_time,
                    coin=item.order.coin,
                    amount=released,
                )
            )

        capital = min(item.reserved, (after.sold_pct - before.sold_pct) * after.spent_amount)
        realized_delta = after.realized_profit - item.accounted_realized
        state.available_balance += capital + realized_delta
        item.reserved -= capital
        item.accounted_realized = after.realized_profit
        state.open_orders_realized_profit += realized_delta
        self._day.realized_profit += realized_delta

        self.events.log(
            LogEvent(
                type=EventType.BALANCE_UPDATED,
                timestamp=state.current_time,
                coin=item.order.coin,
                balance_before=balance_before,
                balance_after=state.available_balance,
            )
        )

    def _close_order(self, item: ActiveOrder) -> None:
        state = self.state
        profit = item.state.profit
        adjustment = profit - item.accounted_realized

        state.available_balance += item.reserved + adjustment
        item.reserved = 0.0
        state.open_orders_realized_profit -= item.accounted_realized
        state.closed_orders_profit += profit
        self._day.realized_profit += adjustment

        state.active_orders.remove(item)
        state.finished_orders.append(item)
        self.events.log(
            LogEvent(
                type=EventType.ORDER_CLOSED,
                timestamp=state.current_time,
                coin=item.order.coin,
                amount=profit,
                text=item.state.phase.value,
            )
        )
        logger.info(
            "Order %s closed (%s) profit=%.4f pnl=%.2f%%",
            item.order.coin,
            item.state.phase.value,
            profit,
            item.state.pnl,
        )

    # -- trade data -------------------------------------------------------------

    async def _load_trade_data(self, coin: str, exchange: str, minute: int) -> TradeData:
        pair = normalize_coin(coin)
        if pair in self.state.invalid_coins:
            raise MissingTradeDataError(pair, minute)
        coin_data = self._trade_data.setdefault((exchange, pair), {})
        candle = coin_data.get(minute)
        if candle is not None:
            return candle

        key = (exchange, pair, utc_day_start(minute))
        load = self._day_loads.get(key)
        if load is None:
            load = asyncio.ensure_future(self._fetch_day(pair, exchange, minute, coin_data))
            self._day_loads[key] = load
        await load
        candle = coin_data.get(minute)
        if candle is None:
            raise MissingTradeDataError(pair, minute)
        return candle

    async def _fetch_day(self, pair: str, exchange: str, start_time: int, coin_data: dict[int, TradeData]) -> None:
        try:
            rows = await self.source.get_trade_data(pair, exchange, start_time, self.interval)
        except ApiError as exc:
            if exc.is_invalid_symbol:
                logger.warning("Coin %s is not available on %s (%s), ignoring it", pair, exchange, exc.status_code)
                self.state.invalid_coins.add(pair)
            else:
                logger.error("Failed to load trade data for %s on %s: %s", pair, exchange, exc)
            return
        except (OSError, ValueError) as exc:
            logger.error("Failed to read trade data for %s on %s: %s", pair, exchange, exc)
            return
        except Exception:
            # The day stays empty; other coins keep running.
            logger.exception("Trade data source failed for %s on %s", pair, exchange)
            return
        for row in rows:
            coin_data.setdefault(row.open_time, row)

    # -- daily stats ------------------------------------------------------------

    def _equity(self) -> float:
        return self.state.available_balance + self.state.balance_in_orders

    def _append_daily_stats(self) -> None:
        state = self.state
        day = self._day
        base = day.start_equity
        self.daily_stats.append(
            AccountDailyStats(
                day=day.day,
                account_balance=state.available_balance,
                balance_in_orders=state.balance_in_orders,
                realized_profit_per_day=day.realized_profit,
                unrealized_profit_per_day=state.open_orders_unrealized_profit,
                realized_pnl_per_day=100 * day.realized_profit / base if base else 0.0,
                unrealized_pnl_per_day=100 * state.open_orders_unrealized_profit / base if base else 0.0,
            )
        )

    def _roll_day(self, midnight: int) -> None:
        self._append_daily_stats()
        stats = self.daily_stats[-1]
        logger.info(
            "Day %s: realized=%.4f (%.2f%%) unrealized=%.4f balance=%.2f in_orders=%.2f",
            iso_utc(stats.day),
            stats.realized_profit_per_day,
            stats.realized_pnl_per_day,
            stats.unrealized_profit_per_day,
            stats.account_balance,
            stats.balance_in_orders,
        )
        self._day = _DayAccumulator(day=midnight, start_equity=self._equity())

    # -- results ----------------------------------------------------------------

    @property
    def info(self) -> AccountInfo:
        state = self.state
        return AccountInfo(
            initial_balance=state.initial_balance,
            available_balance=state.available_balance,
            balance_in_orders=state.balance_in_orders,
            count_active_orders=len(state.active_orders),
            count_finished_orders=len(state.finished_orders),
            count_skipped_orders=len(state.skipped_orders),
            open_orders_profit=state.open_orders_profit,
            open_orders_unrealized_profit=state.open_orders_unrealized_profit,
            open_orders_realized_profit=state.open_orders_realized_profit,
            closed_orders_profit=state.closed_orders_profit,
            largest_account_drawdown_pct=state.largest_account_drawdown_pct,
            largest_account_gain_pct=state.largest_account_gain_pct,
            largest_order_drawdown_pct=state.largest_order_drawdown_pct,
            largest_order_gain_pct=state.largest_order_gain_pct,
            invalid_coins=tuple(sorted(state.invalid_coins)),
        )

    def get_orders_report(self) -> list[OrderReport]:
        reports: list[OrderReport] = []
        for item in [*self.state.finished_orders, *self.state.active_orders]:
            crosses = get_sorted_unique_crosses(item.events) if self.backtrack_config.detailed_log else []
            reports.append(
                OrderReport(
                    order=item.order,
                    info=item.state.info,
                    events=item.events.visible(),
                    sorted_unique_crosses=crosses,
                    state=item.state,
                )
            )
        return reports
