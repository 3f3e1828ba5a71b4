"""CLI for backtracking Cornix orders against historical candles."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

_HERE = Path(__file__).parent
if str(_HERE) not in sys.path:
    sys.path.insert(0, str(_HERE))

from backtrack import (  # noqa: E402
    DEFAULT_CORNIX_CONFIG,
    BacktrackError,
    CandleFeeder,
    InMemoryCandleSource,
    RateLimitedSource,
    RateLimiter,
    event_records,
    filter_orders_by_date,
    load_candle_files,
    load_cornix_config,
    load_orders,
    run_account_mode,
    run_single_orders,
    write_backtrack_artifacts,
)
from backtrack.models import iso_utc  # noqa: E402
from core.logging_setup import setup_logging  # noqa: E402
from core.market_metadata import datetime_to_ms, normalize_exchange, parse_utc_datetime  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backtrack Cornix orders against historical candles")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("backtrack", help="Backtrack orders from JSON files or directories")
    run_parser.add_argument("orders", nargs="+", help="Order JSON files or directories of them")
    run_parser.add_argument("--cornix-config", help="Cornix configuration JSON (defaults are used when omitted)")
    run_parser.add_argument("--candles-files", nargs="+", metavar="PATH", help="Candle JSON files or directories")
    run_parser.add_argument("--cache-path", help="Root of the per-day candle cache")
    run_parser.add_argument("--exchange", default="binance", help="Exchange used when an order names none")
    run_parser.add_argument("--account-mode", action="store_true", help="Run all orders against one account")
    run_parser.add_argument("--account-initial-balance", type=float, default=1000.0, help="Starting balance")
    run_parser.add_argument(
        "--max-active-orders",
        type=int,
        help="Concurrent order limit in account mode (-1 for unlimited)",
    )
    run_parser.add_argument("--detailed-log", action="store_true", help="Record price crosses and verbose events")
    run_parser.add_argument("--from-date", help="Only orders at or after this UTC date")
    run_parser.add_argument("--to-date", help="Only orders before this UTC date; also ends the account run")
    run_parser.add_argument("--max-days", type=int, help="Stop single-order runs after this many days")
    run_parser.add_argument("--report-dir", default="reports/backtrack_run", help="Output directory")
    run_parser.add_argument(
        "--min-request-interval",
        type=float,
        default=0.0,
        help="Minimum seconds between candle requests",
    )

    subparsers.add_parser("defaults", help="Print the default Cornix configuration")

    return parser.parse_args(argv)


def _missing_paths(paths: list[str]) -> list[str]:
    return [path for path in paths if not Path(path).exists()]


def _build_source(args: argparse.Namespace, orders):
    if args.cache_path:
        source = CandleFeeder(args.cache_path)
    else:
        candles = load_candle_files(args.candles_files)
        source = InMemoryCandleSource({order.coin: candles.iter_candles() for order in orders})
    if args.min_request_interval > 0:
        source = RateLimitedSource(source, RateLimiter(args.min_request_interval))
    return source


def _run_backtrack(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)

    missing = _missing_paths([*args.orders, *(args.candles_files or [])])
    if args.cornix_config and not Path(args.cornix_config).exists():
        missing.append(args.cornix_config)
    if args.cache_path and not Path(args.cache_path).is_dir():
        missing.append(args.cache_path)
    if missing:
        logger.error("input path does not exist: %s", ", ".join(missing))
        return 2
    if not args.candles_files and not args.cache_path:
        logger.error("either --candles-files or --cache-path is required")
        return 2
    if normalize_exchange(args.exchange) is None:
        logger.error("unsupported exchange: %s", args.exchange)
        return 2

    try:
        config = load_cornix_config(args.cornix_config)
        from_date = parse_utc_datetime(args.from_date) if args.from_date else None
        to_date = parse_utc_datetime(args.to_date) if args.to_date else None
        orders = filter_orders_by_date(load_orders(args.orders), from_date, to_date)
        logger.info("Loaded %s orders", len(orders))
        run_config = {
            "orders": list(args.orders),
            "exchange": args.exchange,
            "account_mode": args.account_mode,
            "detailed_log": args.detailed_log,
            "from_date": iso_utc(from_date),
            "to_date": iso_utc(to_date),
            "cornix_config": config.to_dict(),
        }

        if args.account_mode:
            source = _build_source(args, orders)
            simulation = asyncio.run(
                run_account_mode(
                    orders,
                    config,
                    source,
                    initial_balance=args.account_initial_balance,
                    max_active_orders=args.max_active_orders,
                    end_time=datetime_to_ms(to_date) if to_date else None,
                    exchange=args.exchange,
                    detailed_log=args.detailed_log,
                )
            )
            reports = simulation.get_orders_report()
            events = [
                record
                for report in reports
                for record in event_records(report.order.coin, report.order.date, report.events)
            ]
            skipped = [
                {"coin": item.order.coin, "date": iso_utc(item.order.date), "reason": item.reason}
                for item in simulation.state.skipped_orders
            ]
            artifacts = write_backtrack_artifacts(
                args.report_dir,
                [report.info for report in reports],
                events=events,
                daily_stats=simulation.daily_stats,
                account_info=simulation.info,
                skipped_orders=skipped,
                run_config=run_config,
            )
        else:
            candles = load_candle_files(args.candles_files) if args.candles_files else None
            source = None
            if candles is None:
                source = _build_source(args, orders)
            report = asyncio.run(
                run_single_orders(
                    orders,
                    config,
                    candles=candles,
                    source=source,
                    exchange=args.exchange,
                    detailed_log=args.detailed_log,
                    max_days=args.max_days,
                    initial_balance=args.account_initial_balance,
                )
            )
            events = [
                record
                for run in report.runs
                if run.result is not None
                for record in event_records(run.order.coin, run.order.date, [*run.events, *run.crosses])
            ]
            failed = [
                {"coin": run.order.coin, "date": iso_utc(run.order.date), "reason": run.error}
                for run in report.failures
            ]
            run_config["invalid_coins"] = sorted(report.invalid_coins)
            artifacts = write_backtrack_artifacts(
                args.report_dir,
                report.results,
                events=events,
                skipped_orders=failed,
                run_config=run_config,
            )
    except (BacktrackError, OSError, ValueError) as exc:
        logger.error(str(exc))
        return 3

    summary = artifacts["summary"]["orders"]
    logger.info("Report dir: %s", artifacts["paths"]["report_dir"])
    logger.info("Orders: %s", summary.get("count_orders"))
    logger.info("Profitable: %s", summary.get("count_profitable"))
    logger.info("Total pnl: %.2f%%", summary.get("total_pnl") or 0.0)
    if "account" in artifacts["summary"]:
        account = artifacts["summary"]["account"]
        logger.info("Available balance: %.2f", account["available_balance"])
        logger.info("Balance in orders: %.2f", account["balance_in_orders"])
    return 0


def _run_defaults(args: argparse.Namespace) -> int:
    print(json.dumps(DEFAULT_CORNIX_CONFIG.to_dict(), indent=2))
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.command == "backtrack":
        return _run_backtrack(args)
    if args.command == "defaults":
        return _run_defaults(args)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    setup_logging(log_level=args.log_level)
    raise SystemExit(_run(args))


if __name__ == "__main__":
    main()
