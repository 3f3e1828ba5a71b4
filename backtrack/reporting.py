"""Result tables, summary statistics and artifact export for backtracking runs."""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import pandas as pd

from .models import LogEvent, TradeResult, iso_utc

TRADE_COLUMNS: tuple[str, ...] = (
    "coin",
    "direction",
    "open_time_utc",
    "close_time_utc",
    "reached_entries",
    "reached_tps",
    "reached_all_entries",
    "reached_all_tps",
    "is_closed",
    "is_cancelled",
    "is_profitable",
    "hit_sl",
    "pnl",
    "profit",
    "average_entry_price",
    "average_sale_price",
    "allocated_amount",
    "spent_amount",
    "sold_amount",
    "realized_profit",
    "unrealized_profit",
    "bought_coins",
)


def _json_default(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return value.isoformat().replace("+00:00", "Z")
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "isoformat"):
        try:
            return value.isoformat()
        except TypeError:
            return str(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def _safe_float(value: Any) -> Optional[float]:
    try:
        if pd.isna(value):
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _profit_factor(series: pd.Series) -> Optional[float]:
    if series.empty:
        return None
    wins = float(series[series > 0].sum())
    losses = float(series[series < 0].sum())
    if losses == 0:
        return None if wins == 0 else float("inf")
    return float(wins / abs(losses))


def _max_drawdown(series: pd.Series) -> float:
    if series.empty:
        return 0.0
    equity = series.fillna(0.0).astype(float).cumsum()
    return float((equity - equity.cummax()).min())


def results_frame(results: Iterable[TradeResult]) -> pd.DataFrame:
    """One row per order result, in the given order."""
    rows = [result.to_dict() for result in results]
    return pd.DataFrame(rows, columns=list(TRADE_COLUMNS))


def summarize_results(results: Iterable[TradeResult]) -> dict[str, Any]:
    """
    Aggregate order results.

    A stop-loss counts only when the order also ended unprofitable. NaN pnl
    values are treated as zero.
    """
    df = results_frame(results)
    count = int(len(df))
    if count == 0:
        return {
            "count_orders": 0,
            "count_profitable": 0,
            "count_sl": 0,
            "count_closed": 0,
            "count_cancelled": 0,
            "total_pnl": 0.0,
            "average_pnl": 0.0,
            "positive_pnl": 0.0,
            "negative_pnl": 0.0,
            "total_profit": 0.0,
            "total_reached_tps": 0,
            "average_reached_tps": 0.0,
            "pct_sl": 0.0,
            "profit_factor": None,
            "max_drawdown_profit": 0.0,
        }

    pnl = pd.to_numeric(df["pnl"], errors="coerce").fillna(0.0)
    profit = pd.to_numeric(df["profit"], errors="coerce").fillna(0.0)
    profitable = df["is_profitable"].astype(bool)
    count_sl = int((df["hit_sl"].astype(bool) & ~profitable).sum())
    total_reached_tps = int(df["reached_tps"].sum())

    return {
        "count_orders": count,
        "count_profitable": int(profitable.sum()),
        "count_sl": count_sl,
        "count_closed": int(df["is_closed"].astype(bool).sum()),
        "count_cancelled": int(df["is_cancelled"].astype(bool).sum()),
        "total_pnl": float(pnl.sum()),
        "average_pnl": float(pnl.mean()),
        "positive_pnl": float(pnl[profitable].sum()),
        "negative_pnl": float(pnl[~profitable].sum()),
        "total_profit": float(profit.sum()),
        "total_reached_tps": total_reached_tps,
        "average_reached_tps": total_reached_tps / count,
        "pct_sl": count_sl / count,
        "profit_factor": _profit_factor(profit),
        "max_drawdown_profit": _max_drawdown(profit),
    }


def daily_stats_frame(daily_stats: Iterable[Any]) -> pd.DataFrame:
    rows = [item.to_dict() for item in daily_stats]
    frame = pd.DataFrame(rows)
    if not frame.empty:
        frame["day"] = pd.to_datetime(frame["day"], utc=True)
    return frame


def event_records(coin: str, order_time: Any, events: Iterable[LogEvent]) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    for event in events:
        record = {"coin": coin, "order_time_utc": iso_utc(order_time), **event.to_dict()}
        record["time_utc"] = iso_utc(event.timestamp)
        records.append(record)
    return records


def _finite(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _md_table(rows: list[dict[str, Any]], columns: list[str]) -> str:
    if not rows:
        return "_No rows_\n"
    header = "| " + " | ".join(columns) + " |"
    sep = "| " + " | ".join(["---"] * len(columns)) + " |"
    body: list[str] = []
    for row in rows:
        values: list[str] = []
        for col in columns:
            value = row.get(col)
            if isinstance(value, float):
                values.append(f"{value:.6g}")
            elif value is None:
                values.append("")
            else:
                values.append(str(value))
        body.append("| " + " | ".join(values) + " |")
    return "\n".join([header, sep, *body]) + "\n"


def _write_markdown_report(report_path: Path, summary: dict[str, Any]) -> None:
    orders = summary.get("orders", {})
    sections = ["# Backtracking Report", "", "## Orders", ""]
    sections.append(
        _md_table([{"metric": key, "value": value} for key, value in orders.items()], ["metric", "value"]).rstrip()
    )
    account = summary.get("account")
    if account:
        sections.extend(["", "## Account", ""])
        sections.append(
            _md_table(
                [{"metric": key, "value": value} for key, value in account.items() if key != "invalid_coins"],
                ["metric", "value"],
            ).rstrip()
        )
    skipped = summary.get("skipped_orders") or []
    if skipped:
        sections.extend(["", "## Skipped Orders", ""])
        sections.append(_md_table(skipped, ["coin", "date", "reason"]).rstrip())
    sections.append("")
    report_path.write_text("\n".join(sections), encoding="utf-8")


def write_backtrack_artifacts(
    report_dir: str | Path,
    results: Sequence[TradeResult],
    events: Sequence[dict[str, Any]] = (),
    daily_stats: Sequence[Any] = (),
    account_info: Any | None = None,
    skipped_orders: Sequence[dict[str, Any]] = (),
    run_config: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Write trades.csv, events.jsonl, daily_stats.csv, summary.json and report.md."""
    out_dir = Path(report_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    summary: dict[str, Any] = {
        "run_config": run_config or {},
        "orders": {key: _finite(value) for key, value in summarize_results(results).items()},
    }
    if account_info is not None:
        summary["account"] = account_info.to_dict()
    if skipped_orders:
        summary["skipped_orders"] = list(skipped_orders)

    trades_path = out_dir / "trades.csv"
    events_path = out_dir / "events.jsonl"
    daily_path = out_dir / "daily_stats.csv"
    summary_path = out_dir / "summary.json"
    report_path = out_dir / "report.md"

    results_frame(results).to_csv(trades_path, index=False)
    with events_path.open("w", encoding="utf-8") as handle:
        for record in events:
            handle.write(json.dumps(record, default=_json_default) + "\n")
    daily = daily_stats_frame(daily_stats)
    if not daily.empty:
        daily["day"] = daily["day"].dt.strftime("%Y-%m-%d")
    daily.to_csv(daily_path, index=False)
    summary_path.write_text(json.dumps(summary, indent=2, default=_json_default), encoding="utf-8")
    _write_markdown_report(report_path, summary)

    return {
        "summary": summary,
        "paths": {
            "report_dir": str(out_dir),
            "trades_csv": str(trades_path),
            "events_jsonl": str(events_path),
            "daily_stats_csv": str(daily_path),
            "summary_json": str(summary_path),
            "report_md": str(report_path),
        },
    }
