"""Price-target allocation and Cornix configuration helpers."""

from __future__ import annotations

import copy
import logging
from typing import Any, Iterable, Sequence

from .exceptions import ConfigurationError
from .models import (
    CornixConfiguration,
    Direction,
    DistributionStrategy,
    Order,
    PriceTargetWithPrice,
    Strategy,
    TrailingStopType,
)

logger = logging.getLogger(__name__)

# Smallest trailing distance Cornix accepts after leverage adjustment.
MIN_TRAILING_PCT = 0.2 / 100


def _evenly(prices: Sequence[float], pct: float) -> list[PriceTargetWithPrice]:
    return [PriceTargetWithPrice(id=idx + 1, percentage=pct, price=float(price)) for idx, price in enumerate(prices)]


def map_price_targets(prices: Sequence[float], strategy: Strategy) -> list[PriceTargetWithPrice]:
    """
    Resolve raw order prices into percentage-weighted targets.

    Ids are 1-based in order of occurrence. Explicit target lists pair
    positionally and are truncated to the shorter of the two lists.
    """
    prices = [float(price) for price in prices]
    if not prices:
        return []

    if strategy is DistributionStrategy.ONE_TARGET or len(prices) == 1:
        return [PriceTargetWithPrice(id=1, percentage=100.0, price=prices[0])]

    if not isinstance(strategy, DistributionStrategy):
        return [
            PriceTargetWithPrice(id=idx + 1, percentage=float(target.percentage), price=price)
            for idx, (price, target) in enumerate(zip(prices, strategy))
        ]

    count = len(prices)
    if strategy is DistributionStrategy.TWO_TARGETS:
        return _evenly(prices[:2], 50.0)
    if strategy is DistributionStrategy.THREE_TARGETS:
        return _evenly(prices[:3], 33.33)
    if strategy in (DistributionStrategy.DECREASING_EXPONENTIAL, DistributionStrategy.INCREASING_EXPONENTIAL):
        top = 100.0 / ((2**count - 1) / (2**count / 2))
        weights = [top / 2**idx for idx in range(count)]
        if strategy is DistributionStrategy.INCREASING_EXPONENTIAL:
            weights.reverse()
        return [
            PriceTargetWithPrice(id=idx + 1, percentage=weight, price=price)
            for idx, (price, weight) in enumerate(zip(prices, weights))
        ]
    if strategy is DistributionStrategy.EVENLY_DIVIDED:
        return _evenly(prices, 100.0 / count)
    if strategy is DistributionStrategy.FIFTY_ON_FIRST_TARGET:
        rest = 50.0 / (count - 1)
        return [
            PriceTargetWithPrice(id=idx + 1, percentage=50.0 if idx == 0 else rest, price=price)
            for idx, price in enumerate(prices)
        ]
    if strategy is DistributionStrategy.SKIP_FIRST:
        rest = 100.0 / (count - 1)
        return [
            PriceTargetWithPrice(id=idx + 1, percentage=0.0 if idx == 0 else rest, price=price)
            for idx, price in enumerate(prices)
        ]

    raise ConfigurationError(f"Unsupported distribution strategy: {strategy}")


def interpolate_entry_zone(zone: Sequence[float], count: int, direction: Direction) -> list[float]:
    """
    Spread ``count`` entry prices linearly across a two-point zone, boundaries included.

    LONG zones start at the upper boundary and walk down, SHORT zones start at
    the lower boundary and walk up, so the first entry is the one filled first.
    """
    if len(zone) < 2:
        raise ConfigurationError("Entry zone needs two boundary prices")
    lower, upper = sorted((float(zone[0]), float(zone[1])))
    start, end = (upper, lower) if direction is Direction.LONG else (lower, upper)

    count = max(1, int(count))
    if count == 1:
        return [start]
    step = (end - start) / (count - 1)
    prices = [start + step * idx for idx in range(count - 1)]
    prices.append(end)
    return prices


def sum_pct(targets: Iterable[PriceTargetWithPrice]) -> float:
    return sum(target.percentage for target in targets)


def calculate_weighted_average(targets: Sequence[PriceTargetWithPrice]) -> float:
    total_pct = sum_pct(targets)
    if total_pct == 0:
        return 0.0
    return sum(target.price * target.percentage for target in targets) / total_pct


def make_automatic_leverage_adjustment(pct: float, leverage: float, is_trailing: bool) -> float:
    adjusted = pct / leverage
    if is_trailing:
        return max(MIN_TRAILING_PCT, adjusted)
    return adjusted


def infer_direction(entries: Sequence[float], tps: Sequence[float]) -> Direction:
    """A first TP above the first entry means LONG."""
    if not entries or not tps:
        raise ConfigurationError("Cannot infer direction without entries and take-profits")
    return Direction.LONG if tps[0] > entries[0] else Direction.SHORT


def get_default_stop_loss(
    config: CornixConfiguration,
    entries: Sequence[PriceTargetWithPrice],
    direction: Direction,
    leverage: float,
) -> float | None:
    """Derive a stop-loss from ``sl.default_stop_loss_pct`` around the weighted average entry."""
    pct = config.sl.default_stop_loss_pct
    if pct is None or not entries:
        return None
    fraction = pct / 100
    if config.sl.automatic_leverage_adjustment:
        fraction = make_automatic_leverage_adjustment(fraction, leverage, is_trailing=False)
    average = calculate_weighted_average(entries)
    return average * (1 - direction.sign * fraction)


def get_new_stop_loss(
    config: CornixConfiguration,
    reached_tp: int,
    current_sl: float | None,
    average_entry_price: float,
    tps: Sequence[float],
) -> float | None:
    """
    Stop-loss after TP ``reached_tp`` (1-based) filled.

    moving-target with trigger T moves to the average entry when TP T is reached
    and to the price of TP (reached - T) afterwards. breakeven with an index
    trigger moves to the average entry once TP T is reached.
    """
    trailing_stop = config.trailing_stop
    stop_type = trailing_stop.type
    if stop_type is TrailingStopType.WITHOUT:
        return current_sl

    if stop_type is TrailingStopType.MOVING_TARGET:
        trigger = trailing_stop.trigger or 1
        if reached_tp < trigger:
            return current_sl
        if reached_tp == trigger:
            return average_entry_price
        return float(tps[reached_tp - trigger - 1])

    if stop_type is TrailingStopType.BREAKEVEN and trailing_stop.trigger is not None:
        if reached_tp >= trailing_stop.trigger:
            return average_entry_price
        return current_sl

    logger.warning(
        "Stop-loss migration %s (trigger=%s, trigger_pct=%s) is not supported, keeping sl=%s",
        stop_type.value,
        trailing_stop.trigger,
        trailing_stop.trigger_pct,
        current_sl,
    )
    return current_sl


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def get_flattened_cornix_config(*layers: CornixConfiguration | dict[str, Any] | None) -> CornixConfiguration:
    """Deep-merge configuration layers, later layers winning, into one configuration."""
    merged: dict[str, Any] = {}
    for layer in layers:
        if layer is None:
            continue
        raw = layer.to_dict() if isinstance(layer, CornixConfiguration) else layer
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Configuration layer must be a mapping, got {type(layer).__name__}")
        merged = _deep_merge(merged, raw)
    return CornixConfiguration.from_dict(merged)


def get_order_amount(order: Order, config: CornixConfiguration, available_balance: float) -> float:
    """Quote amount to allocate: the order's or config's fixed amount, or ``"N%"`` of available balance."""
    amount = order.amount if order.amount is not None else config.amount
    if isinstance(amount, str):
        raw = amount.strip()
        if not raw.endswith("%"):
            return float(raw)
        return available_balance * float(raw[:-1]) / 100
    return float(amount)


def _strictly(values: Sequence[float], descending: bool) -> bool:
    pairs = zip(values, values[1:])
    if descending:
        return all(a > b for a, b in pairs)
    return all(a < b for a, b in pairs)


def order_validation_errors(order: Order) -> list[str]:
    """Return human-readable reasons why the order's prices are inconsistent; empty when valid."""
    errors: list[str] = []
    entries = list(order.entries)
    if not entries and order.entry_zone:
        entries = sorted(order.entry_zone, reverse=True)
    if not entries:
        errors.append("order has no entries")
    if not order.tps:
        errors.append("order has no take-profits")
    if errors:
        return errors
    if order.leverage <= 0:
        errors.append("leverage must be positive")

    direction = order.direction or infer_direction(entries, order.tps)
    is_long = direction is Direction.LONG
    if order.entry_zone is None and not _strictly(entries, descending=is_long):
        errors.append(f"{direction.value} entries must be strictly {'descending' if is_long else 'ascending'}")
    if not _strictly(order.tps, descending=not is_long):
        errors.append(f"{direction.value} take-profits must be strictly {'ascending' if is_long else 'descending'}")
    first_entry = max(entries) if is_long else min(entries)
    if is_long and not order.tps[0] > first_entry:
        errors.append("LONG first take-profit must be above the first entry")
    if not is_long and not order.tps[0] < first_entry:
        errors.append("SHORT first take-profit must be below the first entry")
    if order.sl is not None:
        last_entry = min(entries) if is_long else max(entries)
        if is_long and not order.sl < last_entry:
            errors.append("LONG stop-loss must be below the last entry")
        if not is_long and not order.sl > last_entry:
            errors.append("SHORT stop-loss must be above the last entry")
    return errors


def validate_order(order: Order) -> bool:
    errors = order_validation_errors(order)
    if errors:
        logger.debug("Order %s %s rejected: %s", order.coin, order.date, "; ".join(errors))
    return not errors
