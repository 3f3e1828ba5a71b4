import json

import pandas as pd
import pytest

from backtrack.models import Direction, EventType, LogEvent, TradeResult
from backtrack.reporting import (
    TRADE_COLUMNS,
    event_records,
    results_frame,
    summarize_results,
    write_backtrack_artifacts,
)

OPEN_TIME = 1672531200000


def _result(coin="BTCUSDT", pnl=10.0, profit=10.0, hit_sl=False, reached_tps=1, **fields):
    values = dict(
        coin=coin,
        direction=Direction.LONG,
        reached_entries=1,
        reached_tps=reached_tps,
        reached_all_entries=True,
        reached_all_tps=True,
        open_time=OPEN_TIME,
        close_time=OPEN_TIME + 60_000,
        is_closed=True,
        is_cancelled=False,
        is_profitable=pnl > 0,
        pnl=pnl,
        profit=profit,
        hit_sl=hit_sl,
        average_entry_price=100.0,
        average_sale_price=110.0,
        allocated_amount=100.0,
        spent_amount=100.0,
        sold_amount=110.0,
        realized_profit=profit,
        unrealized_profit=0.0,
        bought_coins=1.0,
    )
    values.update(fields)
    return TradeResult(**values)


def test_results_frame_columns():
    frame = results_frame([_result(), _result(coin="ETHUSDT")])
    assert list(frame.columns) == list(TRADE_COLUMNS)
    assert frame["coin"].tolist() == ["BTCUSDT", "ETHUSDT"]
    assert frame.loc[0, "open_time_utc"] == "2023-01-01T00:00:00Z"


def test_summary_counts_stop_loss_only_when_unprofitable():
    results = [
        _result(pnl=10.0, profit=10.0, reached_tps=2),
        _result(pnl=-5.0, profit=-5.0, hit_sl=True, reached_tps=0),
        _result(pnl=20.0, profit=20.0, hit_sl=True, reached_tps=1),
        _result(pnl=float("nan"), profit=0.0, reached_tps=0, is_closed=False),
    ]
    summary = summarize_results(results)

    assert summary["count_orders"] == 4
    assert summary["count_profitable"] == 2
    assert summary["count_sl"] == 1
    assert summary["count_closed"] == 3
    assert summary["total_pnl"] == pytest.approx(25.0)
    assert summary["average_pnl"] == pytest.approx(6.25)
    assert summary["positive_pnl"] == pytest.approx(30.0)
    assert summary["negative_pnl"] == pytest.approx(-5.0)
    assert summary["total_reached_tps"] == 3
    assert summary["average_reached_tps"] == pytest.approx(0.75)
    assert summary["pct_sl"] == pytest.approx(0.25)
    assert summary["profit_factor"] == pytest.approx(6.0)
    assert summary["max_drawdown_profit"] == pytest.approx(-5.0)


def test_empty_summary():
    summary = summarize_results([])
    assert summary["count_orders"] == 0
    assert summary["profit_factor"] is None


def test_event_records_add_order_context():
    events = [LogEvent(type=EventType.BUY, timestamp=OPEN_TIME, price=100.0, spent_with_leverage=100.0)]
    [record] = event_records("BTCUSDT", OPEN_TIME, events)
    assert record == {
        "coin": "BTCUSDT",
        "order_time_utc": "2023-01-01T00:00:00Z",
        "type": "buy",
        "timestamp": OPEN_TIME,
        "price": 100.0,
        "spentWithLeverage": 100.0,
        "time_utc": "2023-01-01T00:00:00Z",
    }


def test_write_artifacts(tmp_path):
    results = [_result(), _result(coin="ETHUSDT", pnl=-4.0, profit=-4.0, hit_sl=True)]
    events = event_records("BTCUSDT", OPEN_TIME, [LogEvent(type=EventType.CLOSE, timestamp=OPEN_TIME, text="done")])
    artifacts = write_backtrack_artifacts(
        tmp_path / "report",
        results,
        events=events,
        skipped_orders=[{"coin": "XRPUSDT", "date": "2023-01-01T00:00:00Z", "reason": "invalid order"}],
        run_config={"exchange": "binance"},
    )
    paths = artifacts["paths"]

    trades = pd.read_csv(paths["trades_csv"])
    assert trades["coin"].tolist() == ["BTCUSDT", "ETHUSDT"]

    with open(paths["events_jsonl"], encoding="utf-8") as handle:
        lines = [json.loads(line) for line in handle]
    assert lines[0]["text"] == "done"

    summary = json.loads(open(paths["summary_json"], encoding="utf-8").read())
    assert summary["orders"]["count_sl"] == 1
    assert summary["orders"]["profit_factor"] == pytest.approx(2.5)
    assert summary["run_config"] == {"exchange": "binance"}
    assert "account" not in summary

    report = open(paths["report_md"], encoding="utf-8").read()
    assert report.startswith("# Backtracking Report")
    assert "XRPUSDT" in report
