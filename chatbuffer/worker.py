"""Command line entry point for the polling worker.

Usage::

    python -m chatbuffer.worker once          # one polling pass, then exit
    python -m chatbuffer.worker run           # poll until interrupted
    python -m chatbuffer.worker purge --days 30
    python -m chatbuffer.worker init-db       # create missing tables
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from datetime import datetime, timedelta, timezone

from .app_logging import init_logging
from .buffering import store
from .buffering.types import summarize
from .config import get_settings
from .models.session import create_schema, get_engine, session_scope
from .pipeline import get_pipeline

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chat buffer polling worker")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("once", help="Run one polling pass and print a summary")

    run = sub.add_parser("run", help="Poll at a fixed interval until stopped")
    run.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between passes (default POLL_INTERVAL_SECONDS)",
    )

    purge = sub.add_parser("purge", help="Delete old completed buffers")
    purge.add_argument(
        "--days",
        type=int,
        default=None,
        help="Retention in days (default RETENTION_DAYS)",
    )

    sub.add_parser("init-db", help="Create missing tables")
    return parser


def _run_once() -> int:
    pipeline = get_pipeline()
    outcomes = pipeline.poller.poll_due_jobs()
    retried = pipeline.poller.retry_transcriptions()
    summary = summarize(outcomes)
    print(
        json.dumps(
            {
                "processed": summary.processed,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "transcriptions_retried": len(retried),
            }
        )
    )
    return 1 if summary.failed else 0


def _run_forever(interval: float | None) -> int:
    stop = threading.Event()

    def _stop(signum, _frame) -> None:  # pragma: no cover - signal handler
        logger.info("Received signal %s, stopping", signum)
        stop.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    get_pipeline().poller.run_forever(interval, stop)
    return 0


def _purge(days: int | None) -> int:
    settings = get_settings()
    retention = days if days is not None else settings.retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention)
    with session_scope(settings.database_url) as session:
        removed = store.purge_completed_buffers(session, cutoff)
    print(json.dumps({"purged": removed, "cutoff": cutoff.isoformat()}))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse CLI arguments and execute the requested command."""

    args = _build_parser().parse_args(argv)
    pipeline_logger = init_logging()
    pipeline_logger.debug("Worker command %s", args.command)

    if args.command == "once":
        return _run_once()
    if args.command == "run":
        return _run_forever(args.interval)
    if args.command == "purge":
        return _purge(args.days)
    if args.command == "init-db":
        create_schema(get_engine(get_settings().database_url))
        return 0
    return 2  # pragma: no cover - argparse rejects unknown commands


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
