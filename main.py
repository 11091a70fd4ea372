"""Process entry point: runs the periodic budget jobs or a single pass."""

from __future__ import annotations

import argparse
import logging
import time
from typing import Optional, Sequence

from config import get_settings
from engine import BudgetEngine
from periods import month_of
from scheduler import SchedulerManager

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def serve(engine: BudgetEngine, poll_secs: float = 60.0) -> None:
    manager = SchedulerManager(engine)
    manager.start()
    try:
        while True:
            time.sleep(poll_secs)
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    finally:
        manager.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Budget ledger reconciliation engine.")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the daily and hourly jobs until interrupted")
    sub.add_parser("run-once", help="Process every user once and exit")

    reconcile = sub.add_parser("reconcile", help="Reconcile one user's aggregates")
    reconcile.add_argument("--user", type=int, required=True)

    advance = sub.add_parser("advance", help="Post and advance due obligations")
    advance.add_argument("--user", type=int, required=True)

    forecast = sub.add_parser("forecast", help="Regenerate an obligation forecast")
    forecast.add_argument("--source", type=int, required=True)
    forecast.add_argument("--horizon", type=int, default=None)

    materialize = sub.add_parser("materialize", help="Post a forecast month to the ledger")
    materialize.add_argument("--source", type=int, required=True)
    materialize.add_argument("--month", required=True, help="YYYY-MM")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    engine = BudgetEngine.from_settings(settings)

    command = args.command or "serve"
    if command == "serve":
        serve(engine)
    elif command == "run-once":
        SchedulerManager(engine).run_once("cli")
    elif command == "reconcile":
        report = engine.reconcile(args.user)
        print(
            f"created={report.created} updated={report.updated} "
            f"missing={len(report.missing)} errors={len(report.errors)}"
        )
        return 0 if report.ok else 1
    elif command == "advance":
        report = engine.advance_due(args.user)
        print(
            f"advanced={report.advanced} posted={report.posted} "
            f"errors={len(report.errors)}"
        )
        return 0 if report.ok else 1
    elif command == "forecast":
        horizon = (
            settings.default_forecast_horizon if args.horizon is None else args.horizon
        )
        rows = engine.generate_forecast(args.source, horizon)
        for row in rows:
            print(f"{row.month:%Y-%m} {row.amount}")
    elif command == "materialize":
        entry = engine.materialize_forecast(args.source, month_of(args.month))
        print(f"posted entry_id={entry.id}" if entry else "nothing posted")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
