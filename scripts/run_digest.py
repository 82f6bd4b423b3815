#!/usr/bin/env python3
"""
Run the daily sales digest: fetch the day's orders, group them by sales rep
and send one summary per rep.

Configuration comes from get_active_config (``--config``, else the
DIGEST_CONFIG environment variable, else the packaged default set).

Usage:
    python3 scripts/run_digest.py [--config PATH] [--day YYYY-MM-DD] [--dry-run]
    python3 scripts/run_digest.py --serve [--config PATH]

Examples:
    # Run today's digest once
    python3 scripts/run_digest.py --config digest.yaml

    # Re-run (or resume) a given day, logging messages instead of sending
    python3 scripts/run_digest.py --day 2024-03-01 --dry-run

    # Poll the configured schedule until interrupted
    python3 scripts/run_digest.py --serve

Exit codes:
    0  run finished (DONE or IDLE)
    1  run failed, or configuration / database error
    2  run abandoned on timeout (re-run to resume)
"""

from __future__ import annotations

import argparse
import sys
from datetime import date
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the daily sales digest: fetch -> map -> group -> reduce -> dispatch.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Configuration file (default: $DIGEST_CONFIG or the packaged default).",
    )
    parser.add_argument(
        "--day",
        type=lambda s: date.fromisoformat(s),
        default=None,
        help="Run day (YYYY-MM-DD). Default: today.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log notifications instead of sending them.",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Run the in-process scheduler until interrupted.",
    )
    parser.add_argument(
        "--db-url",
        default=None,
        help="Run-state database URL (default: database_url from the config).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO).",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()

    # Lazy imports so we fail fast on args first
    from digest_config import get_active_config
    from digest_kernel.exceptions import ConfigError, DigestKernelError
    from digest_kernel.logging_config import configure_logging

    from digest_batch.domain.types import RunStatus
    from digest_batch.orchestrator import DigestOrchestrator

    configure_logging(level=args.log_level)

    try:
        config = get_active_config(args.config)
    except ConfigError as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1

    if args.db_url:
        from dataclasses import replace

        config = replace(config, database_url=args.db_url)

    try:
        orchestrator = DigestOrchestrator.from_config(config, dry_run=args.dry_run)
    except (DigestKernelError, ValueError) as e:
        print(f"ERROR: Setup failed: {e}", file=sys.stderr)
        return 1

    if args.serve:
        scheduler = orchestrator.create_scheduler()
        scheduler.start()
        print(f"Scheduler running ({config.schedule.job_name}); Ctrl-C to stop.")
        try:
            scheduler.wait()
        except KeyboardInterrupt:
            print("Stopping...")
        finally:
            scheduler.stop()
        return 0

    result = orchestrator.create_coordinator().run(args.day)

    print(f"Run {result.run_id}: {result.status.value}" + (" (resumed)" if result.resumed else ""))
    print(f"  Fetched: {result.fetched}, Facts: {result.facts}, Groups: {result.groups}")
    print(f"  Dispatched: {result.dispatched}, Skipped: {result.skipped}")
    failures = result.extraction_failures + result.dispatch_failures
    for failure in failures[:10]:
        print(f"  [{failure.stage.value}] {failure.unit_key}: {failure.kind.value} {failure.message}")
    if len(failures) > 10:
        print(f"  ... and {len(failures) - 10} more failures.")
    if result.error_summary:
        print(f"  {result.error_summary}")

    if result.status in (RunStatus.DONE, RunStatus.IDLE):
        return 0
    if result.status == RunStatus.ABANDONED:
        return 2
    return 1


if __name__ == "__main__":
    sys.exit(main())
