#!/usr/bin/env python3
"""
StepGuard -- credential lifecycle maintenance from the command line.

The API process already runs the expiry sweeper in the background. This CLI
is for deployments that prefer an external scheduler (cron, systemd timer)
or want to purge once by hand.

Usage:
  python main.py sweep --once
  python main.py sweep
  python main.py sweep --interval 300

Environment variables:
  DATABASE_URL            SQLAlchemy URL of the auth database.
  SWEEP_INTERVAL_SECONDS  Default pause between passes (default: 60).
"""

import argparse
import asyncio
import logging
import sys

from auth.store import AuthStore
from auth.sweeper import ExpirySweeper
from core.clock import SystemClock
from core.config import get_settings

logger = logging.getLogger("stepguard.cli")


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be a positive number of seconds")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stepguard",
        description="Maintenance commands for the StepGuard auth database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sweep --once
  python main.py sweep --interval 300
  DATABASE_URL=sqlite:////var/lib/stepguard/auth.db python main.py sweep
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sweep = sub.add_parser("sweep", help="Clear expired step-up and reset challenges")
    sweep.add_argument(
        "--once",
        action="store_true",
        help="Run a single pass and exit instead of looping",
    )
    sweep.add_argument(
        "--interval",
        type=_positive_int,
        default=None,
        metavar="SECONDS",
        help="Seconds between passes (default: SWEEP_INTERVAL_SECONDS)",
    )
    return parser


def run_sweep(once: bool, interval: int | None) -> int:
    settings = get_settings()
    store = AuthStore(settings.database_url)
    sweeper = ExpirySweeper(
        store,
        SystemClock(),
        interval_seconds=interval or settings.sweep_interval_seconds,
        logger=logging.getLogger("stepguard.sweeper"),
    )
    try:
        if once:
            report = sweeper.sweep_once()
            print(f"Cleared {report.step_up_cleared} step-up and deleted {report.reset_deleted} reset challenges.")
            return 0
        logger.info("Sweeping every %d seconds (Ctrl+C to stop)", sweeper.interval_seconds)
        try:
            asyncio.run(sweeper.run())
        except KeyboardInterrupt:
            logger.info("Sweeper stopped")
        return 0
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "sweep":
        return run_sweep(args.once, args.interval)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
