"""Data models for orders, Cornix configuration, candles and trade events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional, Union

from core.market_metadata import datetime_to_ms, ms_to_datetime, normalize_coin, parse_utc_datetime

from .exceptions import ConfigurationError, InvalidOrderError

_EMPTY = (None, "", "None")


def iso_utc(value: Any) -> Optional[str]:
    """Serialize datetime-like values to ISO8601 UTC string when possible."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        value = ms_to_datetime(value)
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat().replace("+00:00", "Z")
        except TypeError:
            return str(value)
    return str(value)


def _optional_float(value: Any) -> float | None:
    if value in _EMPTY:
        return None
    return float(value)


def _pick(payload: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return default


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def from_value(cls, value: Any) -> "Direction":
        if isinstance(value, Direction):
            return value
        side = str(value or "").strip().upper()
        if side in {"LONG", "BUY"}:
            return cls.LONG
        if side in {"SHORT", "SELL"}:
            return cls.SHORT
        raise ValueError(f"Unsupported direction: {value}")

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1


class DistributionStrategy(str, Enum):
    ONE_TARGET = "One Target"
    TWO_TARGETS = "Two Targets"
    THREE_TARGETS = "Three Targets"
    EVENLY_DIVIDED = "Evenly Divided"
    FIFTY_ON_FIRST_TARGET = "Fifty On First Target"
    DECREASING_EXPONENTIAL = "Decreasing Exponential"
    INCREASING_EXPONENTIAL = "Increasing Exponential"
    SKIP_FIRST = "Skip First"

    @classmethod
    def from_value(cls, value: Any) -> "DistributionStrategy":
        if isinstance(value, DistributionStrategy):
            return value
        wanted = " ".join(str(value or "").split()).lower()
        for member in cls:
            if member.value.lower() == wanted:
                return member
        raise ConfigurationError(f"Unsupported distribution strategy: {value}")


@dataclass(frozen=True)
class PriceTarget:
    percentage: float

    @classmethod
    def from_raw(cls, value: Any) -> "PriceTarget":
        if isinstance(value, PriceTarget):
            return value
        if isinstance(value, dict):
            return cls(percentage=float(value.get("percentage", 0.0)))
        return cls(percentage=float(value))


@dataclass(frozen=True)
class PriceTargetWithPrice:
    id: int
    percentage: float
    price: float


Strategy = Union[DistributionStrategy, tuple[PriceTarget, ...]]


def parse_strategy(value: Any) -> Strategy:
    """Accept a named strategy or a list of ``{"percentage": x}`` targets."""
    if isinstance(value, DistributionStrategy):
        return value
    if isinstance(value, str):
        return DistributionStrategy.from_value(value)
    if isinstance(value, (list, tuple)):
        return tuple(PriceTarget.from_raw(item) for item in value)
    raise ConfigurationError(f"Strategy must be a name or a list of price targets, got {value!r}")


def strategy_to_raw(strategy: Strategy) -> Any:
    if isinstance(strategy, DistributionStrategy):
        return strategy.value
    return [{"percentage": target.percentage} for target in strategy]


class TrailingStopType(str, Enum):
    WITHOUT = "without"
    MOVING_TARGET = "moving-target"
    MOVING_2_TARGET = "moving-2-target"
    BREAKEVEN = "breakeven"
    PERCENT_BELOW_HIGHEST = "percent-below-highest"
    PERCENT_BELOW_TRIGGERS = "percent-below-triggers"

    @classmethod
    def from_value(cls, value: Any) -> "TrailingStopType":
        try:
            return cls(str(value or "without").strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"Unsupported trailing stop type: {value}") from exc


@dataclass(frozen=True)
class TrailingStop:
    """Stop-loss migration policy. ``trigger`` is a 1-based TP index, ``trigger_pct`` a percentage."""

    type: TrailingStopType = TrailingStopType.WITHOUT
    trigger: int | None = None
    trigger_pct: float | None = None

    @classmethod
    def from_raw(cls, value: Any | None) -> "TrailingStop":
        if value in _EMPTY:
            return cls()
        if isinstance(value, TrailingStop):
            return value
        if isinstance(value, str):
            return cls(type=TrailingStopType.from_value(value))
        if not isinstance(value, dict):
            raise ConfigurationError("trailingStop must be a mapping with a type and optional trigger")
        trigger = value.get("trigger")
        return cls(
            type=TrailingStopType.from_value(value.get("type")),
            trigger=None if trigger in _EMPTY else int(trigger),
            trigger_pct=_optional_float(_pick(value, "triggerPct", "trigger_pct")),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        if self.trigger is not None:
            data["trigger"] = self.trigger
        if self.trigger_pct is not None:
            data["triggerPct"] = self.trigger_pct
        return data


@dataclass(frozen=True)
class StopLossConfig:
    """``default_stop_loss_pct`` is a percentage (5 means 5%) below/above the weighted entry."""

    default_stop_loss_pct: float | None = None
    automatic_leverage_adjustment: bool = False
    stop_timeout_minutes: int | None = None

    @classmethod
    def from_raw(cls, value: Any | None) -> "StopLossConfig":
        if value in _EMPTY:
            return cls()
        if isinstance(value, StopLossConfig):
            return value
        if not isinstance(value, dict):
            raise ConfigurationError("sl must be a mapping")
        timeout = _pick(value, "stopTimeoutMinutes", "stop_timeout_minutes")
        return cls(
            default_stop_loss_pct=_optional_float(_pick(value, "defaultStopLossPct", "default_stop_loss_pct")),
            automatic_leverage_adjustment=bool(
                _pick(value, "automaticLeverageAdjustment", "automatic_leverage_adjustment", default=False)
            ),
            stop_timeout_minutes=None if timeout in _EMPTY else int(timeout),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"automaticLeverageAdjustment": self.automatic_leverage_adjustment}
        if self.default_stop_loss_pct is not None:
            data["defaultStopLossPct"] = self.default_stop_loss_pct
        if self.stop_timeout_minutes is not None:
            data["stopTimeoutMinutes"] = self.stop_timeout_minutes
        return data


class EntryType(str, Enum):
    TARGET = "target"
    ZONE = "zone"

    @classmethod
    def from_value(cls, value: Any) -> "EntryType":
        try:
            return cls(str(value or "target").strip().lower())
        except ValueError as exc:
            raise ConfigurationError(f"Unsupported entryType: {value}") from exc


def _parse_amount(value: Any) -> float | str:
    if isinstance(value, str) and value.strip().endswith("%"):
        pct = float(value.strip()[:-1])
        return f"{pct:g}%"
    return float(value)


def _parse_trailing_take_profit(value: Any) -> float | None:
    if value in _EMPTY or (isinstance(value, str) and value.strip().lower() == "without"):
        return None
    return float(value)


@dataclass(frozen=True)
class CornixConfiguration:
    """Strategy and risk rules applied to an order. Parsed from the camelCase JSON shape."""

    amount: float | str = 100.0
    entries: Strategy = DistributionStrategy.ONE_TARGET
    tps: Strategy = DistributionStrategy.EVENLY_DIVIDED
    entry_type: EntryType = EntryType.TARGET
    entry_zone_targets: int = 4
    trailing_stop: TrailingStop = field(default_factory=TrailingStop)
    # Fraction of price (0.01 = 1%); None means no trailing take-profit.
    trailing_take_profit: float | None = None
    max_leverage: float | None = None
    max_active_orders: int | None = None
    close_trade_on_tp_sl_before_entry: bool = True
    first_entry_grace_pct: float | None = None
    sl: StopLossConfig = field(default_factory=StopLossConfig)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CornixConfiguration":
        if not isinstance(payload, dict):
            raise ConfigurationError("Cornix configuration must be a JSON object")
        defaults = cls()
        max_leverage = _pick(payload, "maxLeverage", "max_leverage")
        max_active = _pick(payload, "maxActiveOrders", "max_active_orders")
        try:
            return cls(
                amount=_parse_amount(payload.get("amount", defaults.amount)),
                entries=parse_strategy(payload.get("entries", defaults.entries)),
                tps=parse_strategy(payload.get("tps", defaults.tps)),
                entry_type=EntryType.from_value(_pick(payload, "entryType", "entry_type")),
                entry_zone_targets=int(
                    _pick(payload, "entryZoneTargets", "entry_zone_targets", default=defaults.entry_zone_targets)
                ),
                trailing_stop=TrailingStop.from_raw(_pick(payload, "trailingStop", "trailing_stop")),
                trailing_take_profit=_parse_trailing_take_profit(
                    _pick(payload, "trailingTakeProfit", "trailing_take_profit")
                ),
                max_leverage=_optional_float(max_leverage),
                max_active_orders=None if max_active in _EMPTY else int(max_active),
                close_trade_on_tp_sl_before_entry=bool(
                    _pick(payload, "closeTradeOnTpSlBeforeEntry", "close_trade_on_tp_sl_before_entry", default=True)
                ),
                first_entry_grace_pct=_optional_float(_pick(payload, "firstEntryGracePct", "first_entry_grace_pct")),
                sl=StopLossConfig.from_raw(payload.get("sl")),
            )
        except (TypeError, ValueError) as exc:
            if isinstance(exc, ConfigurationError):
                raise
            raise ConfigurationError(f"Invalid Cornix configuration: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "amount": self.amount,
            "entries": strategy_to_raw(self.entries),
            "tps": strategy_to_raw(self.tps),
            "entryType": self.entry_type.value,
            "entryZoneTargets": self.entry_zone_targets,
            "trailingStop": self.trailing_stop.to_dict(),
            "trailingTakeProfit": "without" if self.trailing_take_profit is None else self.trailing_take_profit,
            "closeTradeOnTpSlBeforeEntry": self.close_trade_on_tp_sl_before_entry,
            "sl": self.sl.to_dict(),
        }
        if self.max_leverage is not None:
            data["maxLeverage"] = self.max_leverage
        if self.max_active_orders is not None:
            data["maxActiveOrders"] = self.max_active_orders
        if self.first_entry_grace_pct is not None:
            data["firstEntryGracePct"] = self.first_entry_grace_pct
        return data


class OrderEventType(str, Enum):
    CANCELLED = "cancelled"
    CLOSE = "close"
    OPPOSITE = "opposite"

    @classmethod
    def from_value(cls, value: Any) -> "OrderEventType":
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unsupported order event type: {value}") from exc


@dataclass(frozen=True)
class OrderEvent:
    """Externally raised lifecycle event that forces the trade to close."""

    type: OrderEventType
    date: datetime

    @classmethod
    def from_raw(cls, value: Any) -> "OrderEvent":
        if isinstance(value, OrderEvent):
            return value
        if not isinstance(value, dict):
            raise ValueError("Order events must be mappings with type and date")
        return cls(
            type=OrderEventType.from_value(value.get("type")),
            date=parse_utc_datetime(_pick(value, "date", "timestamp")),
        )

    @property
    def timestamp(self) -> int:
        return datetime_to_ms(self.date)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "date": iso_utc(self.date)}


def _price_tuple(value: Any, name: str) -> tuple[float, ...]:
    if value in _EMPTY:
        return ()
    if not isinstance(value, (list, tuple)):
        raise InvalidOrderError(f"Order {name} must be a list of prices")
    return tuple(float(item) for item in value)


@dataclass(frozen=True)
class Order:
    """Immutable trade signal as exported from a signal channel."""

    coin: str
    date: datetime
    entries: tuple[float, ...]
    tps: tuple[float, ...]
    sl: float | None = None
    amount: float | str | None = None
    leverage: float = 1.0
    exchange: str | None = None
    direction: Direction | None = None
    entry_zone: tuple[float, float] | None = None
    events: tuple[OrderEvent, ...] = ()
    config: dict[str, Any] | None = field(default=None, compare=False)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Order":
        if not isinstance(payload, dict):
            raise InvalidOrderError("Order must be a JSON object")
        raw_date = _pick(payload, "date", "timestamp")
        if raw_date in _EMPTY:
            raise InvalidOrderError(f"Order for {payload.get('coin')} has no date")
        try:
            direction = payload.get("direction")
            zone = _pick(payload, "entryZone", "entry_zone")
            amount = payload.get("amount")
            leverage = payload.get("leverage")
            return cls(
                coin=normalize_coin(str(payload.get("coin") or "")),
                date=parse_utc_datetime(raw_date),
                entries=_price_tuple(payload.get("entries"), "entries"),
                tps=_price_tuple(payload.get("tps"), "tps"),
                sl=_optional_float(payload.get("sl")),
                amount=None if amount in _EMPTY else _parse_amount(amount),
                leverage=1.0 if leverage in _EMPTY else float(leverage),
                exchange=payload.get("exchange") or None,
                direction=None if direction in _EMPTY else Direction.from_value(direction),
                entry_zone=None if zone in _EMPTY else tuple(float(item) for item in zone)[:2],
                events=tuple(OrderEvent.from_raw(item) for item in (payload.get("events") or [])),
                config=dict(payload["config"]) if isinstance(payload.get("config"), dict) else None,
            )
        except InvalidOrderError:
            raise
        except (TypeError, ValueError) as exc:
            raise InvalidOrderError(f"Invalid order {payload.get('coin')}: {exc}") from exc

    @property
    def timestamp(self) -> int:
        return datetime_to_ms(self.date)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "coin": self.coin,
            "date": iso_utc(self.date),
            "entries": list(self.entries),
            "tps": list(self.tps),
            "sl": self.sl,
            "leverage": self.leverage,
        }
        if self.amount is not None:
            data["amount"] = self.amount
        if self.exchange is not None:
            data["exchange"] = self.exchange
        if self.direction is not None:
            data["direction"] = self.direction.value
        if self.entry_zone is not None:
            data["entryZone"] = list(self.entry_zone)
        if self.events:
            data["events"] = [event.to_dict() for event in self.events]
        if self.config:
            data["config"] = dict(self.config)
        return data


@dataclass(frozen=True)
class TradeData:
    """One candle with epoch-millisecond open/close times."""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    close_time: int | None = None
    quote_asset_volume: float = 0.0
    number_of_trades: int = 0
    taker_buy_base_asset_volume: float = 0.0
    taker_buy_quote_asset_volume: float = 0.0

    @classmethod
    def from_binance_array(cls, row: Iterable[Any]) -> "TradeData":
        """Build from a Binance kline array ``[openTime, open, high, low, close, volume, closeTime, ...]``."""
        values = list(row)
        if len(values) < 6:
            raise ValueError(f"Kline row must have at least 6 values, got {len(values)}")
        extra = values + [None] * (11 - len(values))
        return cls(
            open_time=int(values[0]),
            open=float(values[1]),
            high=float(values[2]),
            low=float(values[3]),
            close=float(values[4]),
            volume=float(values[5]),
            close_time=None if extra[6] in _EMPTY else int(extra[6]),
            quote_asset_volume=0.0 if extra[7] in _EMPTY else float(extra[7]),
            number_of_trades=0 if extra[8] in _EMPTY else int(extra[8]),
            taker_buy_base_asset_volume=0.0 if extra[9] in _EMPTY else float(extra[9]),
            taker_buy_quote_asset_volume=0.0 if extra[10] in _EMPTY else float(extra[10]),
        )

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TradeData":
        open_time = _pick(payload, "openTime", "open_time")
        if open_time in _EMPTY:
            raise ValueError("Candle is missing openTime")
        close_time = _pick(payload, "closeTime", "close_time")
        return cls(
            open_time=int(open_time),
            open=float(payload["open"]),
            high=float(payload["high"]),
            low=float(payload["low"]),
            close=float(payload["close"]),
            volume=float(payload.get("volume") or 0.0),
            close_time=None if close_time in _EMPTY else int(close_time),
            quote_asset_volume=float(_pick(payload, "quoteAssetVolume", "quote_asset_volume", default=0.0) or 0.0),
            number_of_trades=int(_pick(payload, "numberOfTrades", "number_of_trades", default=0) or 0),
            taker_buy_base_asset_volume=float(
                _pick(payload, "takerBuyBaseAssetVolume", "taker_buy_base_asset_volume", default=0.0) or 0.0
            ),
            taker_buy_quote_asset_volume=float(
                _pick(payload, "takerBuyQuoteAssetVolume", "taker_buy_quote_asset_volume", default=0.0) or 0.0
            ),
        )

    @classmethod
    def from_raw(cls, value: Any) -> "TradeData":
        if isinstance(value, TradeData):
            return value
        if isinstance(value, dict):
            return cls.from_dict(value)
        if isinstance(value, (list, tuple)):
            return cls.from_binance_array(value)
        raise ValueError(f"Unsupported candle payload: {value!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "openTime": self.open_time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "closeTime": self.close_time,
        }


@dataclass(frozen=True)
class DetailedEntry:
    """Fill record. ``total`` is the quote value with leverage (price * coins)."""

    entry: int
    price: float
    coins: float
    total: float
    date: int
    state: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "entry": self.entry,
            "price": self.price,
            "coins": self.coins,
            "total": self.total,
            "date": iso_utc(self.date),
        }
        if self.state:
            data["state"] = self.state
        return data


class EventType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    SELL_WITH_TRAILING = "sell with trailing"
    SL = "sl"
    CANCELLED = "cancelled"
    TRAILING_ACTIVATED = "trailing activated"
    TRAILING_PRICE_UPDATED = "trailing price updated"
    SL_MOVED = "sl moved"
    CROSS = "cross"
    CLOSE = "close"
    INFO = "info"
    OPEN_ORDER = "open order"
    ORDER_SKIPPED = "order skipped"
    ENTRIES_RELEASED = "entries released"
    BALANCE_UPDATED = "balance updated"
    ORDER_CLOSED = "order closed"


class LogLevel(str, Enum):
    INFO = "info"
    VERBOSE = "verbose"


# Wire names for LogEvent payload fields.
_EVENT_FIELD_NAMES: dict[str, str] = {
    "price": "price",
    "spent": "spent",
    "spent_with_leverage": "spentWithLeverage",
    "bought": "bought",
    "sold": "sold",
    "total": "total",
    "direction": "direction",
    "subtype": "subtype",
    "id": "id",
    "text": "text",
    "trailing_stop_price": "trailingStopPrice",
    "previous_price": "previousPrice",
    "order_time": "orderTime",
    "candle_time": "candleTime",
    "coin": "coin",
    "amount": "amount",
    "balance_before": "balanceBefore",
    "balance_after": "balanceAfter",
    "reason": "reason",
}


@dataclass(frozen=True)
class LogEvent:
    """One audit event. Only the fields relevant to ``type`` are populated."""

    type: EventType
    timestamp: int
    level: LogLevel = LogLevel.INFO
    price: float | None = None
    spent: float | None = None
    spent_with_leverage: float | None = None
    bought: float | None = None
    sold: float | None = None
    total: float | None = None
    direction: str | None = None
    subtype: str | None = None
    id: int | None = None
    text: str | None = None
    trailing_stop_price: float | None = None
    previous_price: float | None = None
    order_time: int | None = None
    candle_time: int | None = None
    coin: str | None = None
    amount: float | None = None
    balance_before: float | None = None
    balance_after: float | None = None
    reason: str | None = None
    trade_data: TradeData | None = field(default=None, compare=False)

    def to_dict(self, include_trade_data: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value, "timestamp": self.timestamp}
        if self.level is not LogLevel.INFO:
            data["level"] = self.level.value
        for attr, wire_name in _EVENT_FIELD_NAMES.items():
            value = getattr(self, attr)
            if value is not None:
                data[wire_name] = value
        if include_trade_data and self.trade_data is not None:
            data["tradeData"] = self.trade_data.to_dict()
        return data


class EventLog:
    """Append-only event sink. Every event is mirrored to ``logging`` at DEBUG."""

    def __init__(self, name: str = "backtrack.events"):
        self.events: list[LogEvent] = []
        self._logger = logging.getLogger(name)

    def log(self, event: LogEvent) -> None:
        self.events.append(event)
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug("%s", event.to_dict())

    def verbose(self, event: LogEvent) -> None:
        if event.level is not LogLevel.VERBOSE:
            event = replace(event, level=LogLevel.VERBOSE)
        self.log(event)

    def visible(self) -> list[LogEvent]:
        """Events without verbose records and price crosses."""
        return [
            event
            for event in self.events
            if event.level is not LogLevel.VERBOSE and event.type is not EventType.CROSS
        ]

    def of_type(self, event_type: EventType) -> list[LogEvent]:
        return [event for event in self.events if event.type is event_type]

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self):
        return iter(self.events)


@dataclass(frozen=True)
class TradeResult:
    """Snapshot of one order's outcome."""

    coin: str
    direction: Direction
    reached_entries: int
    reached_tps: int
    reached_all_entries: bool
    reached_all_tps: bool
    open_time: int
    close_time: int | None
    is_closed: bool
    is_cancelled: bool
    is_profitable: bool
    pnl: float
    profit: float
    hit_sl: bool
    average_entry_price: float
    average_sale_price: float
    allocated_amount: float
    spent_amount: float
    sold_amount: float
    realized_profit: float
    unrealized_profit: float
    bought_coins: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "coin": self.coin,
            "direction": self.direction.value,
            "reached_entries": self.reached_entries,
            "reached_tps": self.reached_tps,
            "reached_all_entries": self.reached_all_entries,
            "reached_all_tps": self.reached_all_tps,
            "open_time_utc": iso_utc(self.open_time),
            "close_time_utc": iso_utc(self.close_time),
            "is_closed": self.is_closed,
            "is_cancelled": self.is_cancelled,
            "is_profitable": self.is_profitable,
            "pnl": self.pnl,
            "profit": self.profit,
            "hit_sl": self.hit_sl,
            "average_entry_price": self.average_entry_price,
            "average_sale_price": self.average_sale_price,
            "allocated_amount": self.allocated_amount,
            "spent_amount": self.spent_amount,
            "sold_amount": self.sold_amount,
            "realized_profit": self.realized_profit,
            "unrealized_profit": self.unrealized_profit,
            "bought_coins": self.bought_coins,
        }


@dataclass(frozen=True)
class BackTrackingConfig:
    detailed_log: bool = False
