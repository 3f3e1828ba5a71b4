import logging

import pytest

from backtrack.cornix import (
    calculate_weighted_average,
    get_default_stop_loss,
    get_flattened_cornix_config,
    get_new_stop_loss,
    get_order_amount,
    interpolate_entry_zone,
    map_price_targets,
    order_validation_errors,
    validate_order,
)
from backtrack.exceptions import ConfigurationError
from backtrack.models import (
    CornixConfiguration,
    Direction,
    DistributionStrategy,
    PriceTarget,
    PriceTargetWithPrice,
    StopLossConfig,
    TrailingStop,
    TrailingStopType,
)


def _percentages(targets):
    return [target.percentage for target in targets]


def test_evenly_divided_assigns_equal_shares_with_one_based_ids():
    targets = map_price_targets([1, 2, 3, 4], DistributionStrategy.EVENLY_DIVIDED)
    assert [target.id for target in targets] == [1, 2, 3, 4]
    assert _percentages(targets) == [25.0, 25.0, 25.0, 25.0]
    assert [target.price for target in targets] == [1.0, 2.0, 3.0, 4.0]


def test_single_price_always_takes_everything():
    assert map_price_targets([5], DistributionStrategy.SKIP_FIRST) == [PriceTargetWithPrice(1, 100.0, 5.0)]
    targets = map_price_targets([5, 6, 7], DistributionStrategy.ONE_TARGET)
    assert targets == [PriceTargetWithPrice(1, 100.0, 5.0)]


def test_empty_prices_give_no_targets():
    assert map_price_targets([], DistributionStrategy.EVENLY_DIVIDED) == []


def test_two_and_three_targets_truncate_prices():
    assert _percentages(map_price_targets([1, 2, 3], DistributionStrategy.TWO_TARGETS)) == [50.0, 50.0]
    three = map_price_targets([1, 2, 3, 4], DistributionStrategy.THREE_TARGETS)
    assert [target.price for target in three] == [1.0, 2.0, 3.0]
    assert _percentages(three) == [33.33, 33.33, 33.33]


def test_exponential_strategies_halve_each_step():
    decreasing = _percentages(map_price_targets([1, 2, 3], DistributionStrategy.DECREASING_EXPONENTIAL))
    assert decreasing == pytest.approx([400 / 7, 200 / 7, 100 / 7])
    assert sum(decreasing) == pytest.approx(100.0)

    increasing = _percentages(map_price_targets([1, 2, 3], DistributionStrategy.INCREASING_EXPONENTIAL))
    assert increasing == pytest.approx([100 / 7, 200 / 7, 400 / 7])


def test_fifty_on_first_and_skip_first():
    assert _percentages(map_price_targets([1, 2, 3], DistributionStrategy.FIFTY_ON_FIRST_TARGET)) == [50.0, 25.0, 25.0]
    assert _percentages(map_price_targets([1, 2, 3], DistributionStrategy.SKIP_FIRST)) == [0.0, 50.0, 50.0]


def test_explicit_targets_pair_positionally_and_truncate():
    strategy = (PriceTarget(60.0), PriceTarget(40.0))
    targets = map_price_targets([10, 20, 30], strategy)
    assert targets == [PriceTargetWithPrice(1, 60.0, 10.0), PriceTargetWithPrice(2, 40.0, 20.0)]


def test_entry_zone_interpolation_depends_on_direction():
    assert interpolate_entry_zone([90, 100], 3, Direction.LONG) == [100.0, 95.0, 90.0]
    assert interpolate_entry_zone([100, 90], 3, Direction.SHORT) == [90.0, 95.0, 100.0]
    assert interpolate_entry_zone([90, 100], 1, Direction.SHORT) == [90.0]
    with pytest.raises(ConfigurationError):
        interpolate_entry_zone([90], 3, Direction.LONG)


def test_weighted_average():
    targets = [PriceTargetWithPrice(1, 50.0, 100.0), PriceTargetWithPrice(2, 50.0, 90.0)]
    assert calculate_weighted_average(targets) == pytest.approx(95.0)
    assert calculate_weighted_average([]) == 0.0


def test_default_stop_loss_around_average_entry():
    entries = [PriceTargetWithPrice(1, 100.0, 100.0)]
    config = CornixConfiguration(sl=StopLossConfig(default_stop_loss_pct=5))
    assert get_default_stop_loss(config, entries, Direction.LONG, 1) == pytest.approx(95.0)
    assert get_default_stop_loss(config, entries, Direction.SHORT, 1) == pytest.approx(105.0)

    adjusted = CornixConfiguration(sl=StopLossConfig(default_stop_loss_pct=5, automatic_leverage_adjustment=True))
    assert get_default_stop_loss(adjusted, entries, Direction.LONG, 10) == pytest.approx(99.5)

    assert get_default_stop_loss(CornixConfiguration(), entries, Direction.LONG, 1) is None


@pytest.mark.parametrize(
    "trigger, reached, expected",
    [
        (1, 1, 100.0),
        (1, 2, 110.0),
        (1, 3, 120.0),
        (2, 1, 90.0),
        (2, 2, 100.0),
        (2, 3, 110.0),
    ],
)
def test_moving_target_stop_loss(trigger, reached, expected):
    config = CornixConfiguration(trailing_stop=TrailingStop(TrailingStopType.MOVING_TARGET, trigger=trigger))
    assert get_new_stop_loss(config, reached, 90.0, 100.0, [110.0, 120.0, 130.0]) == expected


def test_breakeven_and_without():
    breakeven = CornixConfiguration(trailing_stop=TrailingStop(TrailingStopType.BREAKEVEN, trigger=2))
    assert get_new_stop_loss(breakeven, 1, 90.0, 100.0, [110.0, 120.0]) == 90.0
    assert get_new_stop_loss(breakeven, 2, 90.0, 100.0, [110.0, 120.0]) == 100.0
    assert get_new_stop_loss(CornixConfiguration(), 2, 90.0, 100.0, [110.0, 120.0]) == 90.0


def test_unsupported_migration_keeps_stop_and_warns(caplog):
    config = CornixConfiguration(trailing_stop=TrailingStop(TrailingStopType.PERCENT_BELOW_HIGHEST, trigger_pct=2))
    with caplog.at_level(logging.WARNING, logger="backtrack.cornix"):
        assert get_new_stop_loss(config, 1, 90.0, 100.0, [110.0]) == 90.0
    assert "not supported" in caplog.text


def test_flattened_config_deep_merges_layers():
    base = CornixConfiguration(amount=50.0, sl=StopLossConfig(automatic_leverage_adjustment=True))
    merged = get_flattened_cornix_config(base, {"tps": "Two Targets", "sl": {"defaultStopLossPct": 3}})
    assert merged.amount == 50.0
    assert merged.tps is DistributionStrategy.TWO_TARGETS
    assert merged.sl.default_stop_loss_pct == 3.0
    assert merged.sl.automatic_leverage_adjustment is True


def test_unknown_strategy_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        CornixConfiguration.from_dict({"tps": "Most Of It"})
    with pytest.raises(ValueError):
        get_flattened_cornix_config({"entries": "nope"})


def test_config_accepts_percent_amount_and_without_trailing():
    config = CornixConfiguration.from_dict({"amount": "10%", "trailingTakeProfit": "without"})
    assert config.amount == "10%"
    assert config.trailing_take_profit is None
    assert config.to_dict()["trailingTakeProfit"] == "without"


def test_order_amount(make_order):
    config = CornixConfiguration(amount="10%")
    assert get_order_amount(make_order(amount=None), config, 500.0) == pytest.approx(50.0)
    assert get_order_amount(make_order(amount=20), config, 500.0) == 20.0
    assert get_order_amount(make_order(amount="50%"), CornixConfiguration(), 300.0) == pytest.approx(150.0)


def test_order_validation(make_order):
    assert validate_order(make_order(entries=[100, 95], tps=[110, 120], sl=90))
    assert validate_order(make_order(entries=[100, 105], tps=[90, 80], sl=110))

    errors = order_validation_errors(make_order(entries=[95, 100], tps=[110]))
    assert errors == ["LONG entries must be strictly descending"]

    errors = order_validation_errors(make_order(entries=[100], tps=[110], sl=101))
    assert errors == ["LONG stop-loss must be below the last entry"]

    errors = order_validation_errors(make_order(entries=[100], tps=[90], direction="LONG"))
    assert "LONG first take-profit must be above the first entry" in errors

    assert not validate_order(make_order(tps=[]))
