import asyncio

import pytest

from backtrack.account import (
    SKIP_INSUFFICIENT_BALANCE,
    SKIP_INVALID_ORDER,
    SKIP_MAX_ACTIVE_ORDERS,
    AccountSimulation,
)
from backtrack.candles import InMemoryCandleSource
from backtrack.exceptions import ApiError
from backtrack.models import CornixConfiguration, DistributionStrategy, EventType
from core.market_metadata import DAY_MS, MINUTE_MS

START = "2023-01-01T00:00:00Z"


def _simulate(orders, candles, ms, config=None, end_minutes=60, **kwargs):
    source = kwargs.pop("source", None) or InMemoryCandleSource(candles)
    simulation = AccountSimulation(
        orders,
        config or CornixConfiguration(amount=100),
        source,
        end_time=ms(START) + end_minutes * MINUTE_MS,
        **kwargs,
    )
    asyncio.run(simulation.run())
    return simulation


def _assert_balanced(state):
    assert state.available_balance + state.balance_in_orders == pytest.approx(
        state.initial_balance + state.closed_orders_profit + state.open_orders_realized_profit
    )


def test_single_order_round_trip(make_order, minute_candles, ms):
    candles = {"BTCUSDT": minute_candles(START, [(100, 100, 100), (100, 110, 100)])}
    simulation = _simulate([make_order()], candles, ms)
    state = simulation.state

    assert state.available_balance == pytest.approx(1010.0)
    assert state.balance_in_orders == 0.0
    assert state.closed_orders_profit == pytest.approx(10.0)
    assert state.open_orders_realized_profit == pytest.approx(0.0)
    assert len(state.finished_orders) == 1
    assert state.current_time == ms(START) + 2 * MINUTE_MS
    _assert_balanced(state)

    info = simulation.info
    assert info.count_finished_orders == 1
    assert info.largest_order_gain_pct == pytest.approx(10.0)
    assert info.largest_account_drawdown_pct == 0.0

    [report] = simulation.get_orders_report()
    assert report.info.pnl == pytest.approx(10.0)
    assert [event.type for event in report.events] == [EventType.BUY, EventType.SELL, EventType.CLOSE]


def test_first_target_releases_unfilled_entries(make_order, minute_candles, ms):
    config = CornixConfiguration(amount=100, entries=DistributionStrategy.EVENLY_DIVIDED)
    order = make_order(entries=[100, 90], tps=[110, 120])
    candles = {
        "BTCUSDT": minute_candles(START, [(100, 100, 100), (100, 110, 100), (110, 120, 110)]),
    }
    source = InMemoryCandleSource(candles)
    simulation = AccountSimulation([order], config, source, end_time=ms(START) + 2 * MINUTE_MS)
    asyncio.run(simulation.run())
    state = simulation.state

    # After the first target: 50 released, 25 capital and 2.5 profit returned.
    assert state.available_balance == pytest.approx(977.5)
    assert state.balance_in_orders == pytest.approx(25.0)
    assert state.open_orders_realized_profit == pytest.approx(2.5)
    assert [event.amount for event in simulation.events.of_type(EventType.ENTRIES_RELEASED)] == [50.0]
    _assert_balanced(state)

    finished = _simulate([order], candles, ms, config=config)
    assert finished.state.available_balance == pytest.approx(1007.5)
    assert finished.state.closed_orders_profit == pytest.approx(7.5)
    _assert_balanced(finished.state)


def test_admission_skips(make_order, minute_candles, ms):
    orders = [
        make_order(),
        make_order(coin="ETHUSDT"),
        make_order(coin="SOLUSDT", date="2023-01-01T00:01:00Z", amount=5000),
        make_order(coin="XRPUSDT", date="2023-01-01T00:01:00Z", entries=[100], tps=[90], direction="LONG"),
    ]
    candles = {"BTCUSDT": minute_candles(START, [(100, 100, 100), (100, 100, 100), (100, 110, 100)])}
    simulation = _simulate(orders, candles, ms, max_active_orders=1)

    reasons = {item.order.coin: item.reason for item in simulation.state.skipped_orders}
    assert reasons == {
        "ETHUSDT": SKIP_MAX_ACTIVE_ORDERS,
        "SOLUSDT": SKIP_MAX_ACTIVE_ORDERS,
        "XRPUSDT": SKIP_MAX_ACTIVE_ORDERS,
    }

    unlimited = _simulate(orders[2:], candles, ms, max_active_orders=-1)
    reasons = {item.order.coin: item.reason for item in unlimited.state.skipped_orders}
    assert reasons == {"SOLUSDT": SKIP_INSUFFICIENT_BALANCE, "XRPUSDT": SKIP_INVALID_ORDER}
    assert unlimited.info.count_skipped_orders == 2
    assert unlimited.state.active_orders == []


def test_percent_amount_uses_available_balance(make_order, minute_candles, ms):
    config = CornixConfiguration(amount="10%")
    candles = {"BTCUSDT": minute_candles(START, [(100, 100, 100)])}
    simulation = _simulate([make_order(amount=None)], candles, ms, config=config, end_minutes=1)

    [opened] = simulation.events.of_type(EventType.OPEN_ORDER)
    assert opened.amount == pytest.approx(100.0)
    assert simulation.state.active_orders[0].state.allocated_amount == pytest.approx(100.0)


def test_invalid_coin_is_recorded_and_not_fetched_again(make_order, ms):
    source = InMemoryCandleSource(errors={"BADUSDT": ApiError("unknown symbol", status_code=400)})
    simulation = _simulate([make_order(coin="BADUSDT")], {}, ms, end_minutes=5, source=source)

    assert simulation.info.invalid_coins == ("BADUSDT",)
    assert len(source.requests) == 1
    assert simulation.info.count_active_orders == 1
    assert simulation.state.current_time == ms(START) + 5 * MINUTE_MS
    # Never filled, so there is no pnl to report.
    assert simulation.info.largest_order_gain_pct is None
    assert simulation.info.largest_account_drawdown_pct is None


def test_failing_source_for_one_coin_does_not_stop_others(make_order, minute_candles, ms):
    source = InMemoryCandleSource(
        {"BTCUSDT": minute_candles(START, [(100, 100, 100), (100, 110, 100)])},
        errors={"BADUSDT": RuntimeError("connection reset")},
    )
    orders = [make_order(), make_order(coin="BADUSDT")]
    simulation = _simulate(orders, {}, ms, end_minutes=5, source=source)
    state = simulation.state

    assert [item.order.coin for item in state.finished_orders] == ["BTCUSDT"]
    assert [item.order.coin for item in state.active_orders] == ["BADUSDT"]
    assert state.current_time == ms(START) + 5 * MINUTE_MS
    assert state.available_balance == pytest.approx(910.0)
    assert state.balance_in_orders == pytest.approx(100.0)
    assert state.invalid_coins == set()
    assert [request[0] for request in source.requests].count("BADUSDT") == 1
    _assert_balanced(state)


def test_two_orders_on_different_coins_reconcile(make_order, minute_candles, ms):
    candles = {
        "BTCUSDT": minute_candles(START, [(100, 100, 100), (100, 110, 100)]),
        "ETHUSDT": minute_candles("2023-01-01T00:03:00Z", [(100, 100, 100), (90, 90, 80)]),
    }
    orders = [
        make_order(),
        make_order(coin="ETHUSDT", date="2023-01-01T00:03:00Z", sl=85),
    ]
    simulation = _simulate(orders, candles, ms)
    state = simulation.state

    assert len(state.finished_orders) == 2
    assert [item.state.profit for item in state.finished_orders] == [pytest.approx(10.0), pytest.approx(-15.0)]
    assert state.closed_orders_profit == pytest.approx(-5.0)
    assert state.available_balance == pytest.approx(995.0)
    assert state.balance_in_orders == 0.0
    assert state.available_balance + state.balance_in_orders == pytest.approx(
        state.initial_balance + state.closed_orders_profit
    )
    _assert_balanced(state)

    info = simulation.info
    assert info.largest_order_gain_pct == pytest.approx(10.0)
    assert info.largest_order_drawdown_pct == pytest.approx(-15.0)
    assert info.largest_account_drawdown_pct == pytest.approx(-15.0)


def test_daily_stats_roll_at_midnight(make_order, minute_candles, ms):
    order = make_order(date="2023-01-01T23:59:00Z")
    candles = {"BTCUSDT": minute_candles("2023-01-01T23:59:00Z", [(100, 100, 100), (100, 100, 100), (100, 110, 100)])}
    simulation = AccountSimulation(
        [order],
        CornixConfiguration(amount=100),
        InMemoryCandleSource(candles),
        end_time=ms(START) + 2 * DAY_MS,
    )
    asyncio.run(simulation.run())

    first, second = simulation.daily_stats
    assert first.day == ms(START)
    assert first.account_balance == pytest.approx(900.0)
    assert first.balance_in_orders == pytest.approx(100.0)
    assert first.realized_profit_per_day == 0.0
    assert second.day == ms(START) + DAY_MS
    assert second.realized_profit_per_day == pytest.approx(10.0)
    assert second.realized_pnl_per_day == pytest.approx(1.0)
    assert second.to_dict()["day"] == "2023-01-02T00:00:00Z"
