"""
Maintenance commands.

    settle init-db                    create tables
    settle reconcile [--forever]      replay unpaid successful transactions
    settle purge-idempotency          drop expired idempotency records
    settle requeue-stale [--seconds N]  return stuck outbox entries to the queue
    settle dead-letters               list dead-lettered notifications

Configuration comes from SETTLE_* variables (see settle.config).
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from collections.abc import Sequence
from datetime import timedelta

import structlog

from kungfu import Ok, Error

from settle._logging import configure_logging
from settle.app import Settle, build
from settle.config import ConfigError, Settings
from settle.outbox import OutboxWorker


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="settle", description=__doc__.splitlines()[1])
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="create tables")

    reconcile = commands.add_parser("reconcile", help="run the batch reconciliation job")
    reconcile.add_argument("--forever", action="store_true", help="keep running on the configured interval")

    commands.add_parser("purge-idempotency", help="delete expired idempotency records")

    requeue = commands.add_parser("requeue-stale", help="requeue outbox entries stuck in processing")
    requeue.add_argument("--seconds", type=float, default=None, help="age threshold (default: policy)")

    commands.add_parser("dead-letters", help="list dead-lettered notifications")
    return parser


async def _reconcile(app: Settle, forever: bool) -> int:
    if not forever:
        report = await app.job.run_once()
        print(
            f"scanned={report.scanned} reconciled={report.reconciled} "
            f"already_processed={report.already_processed} orphaned={report.orphaned} "
            f"mismatched={report.mismatched} busy={report.busy} failed={report.failed}"
        )
        return 0

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await app.job.run_forever(stop)
    return 0


async def _purge(app: Settle) -> int:
    match await app.idempotency.purge_expired():
        case Ok(count):
            print(f"purged={count}")
            return 0
        case Error(err):
            print(f"purge failed: {err.message}", file=sys.stderr)
            return 1


async def _requeue(app: Settle, seconds: float | None) -> int:
    # Requeueing needs no senders
    worker = OutboxWorker(
        app.session_factory,
        {},
        _NoSuppression(),
        app.limiter,
        app.settings.outbox_policy(),
        app.clock,
    )
    count = await worker.requeue_stale(timedelta(seconds=seconds) if seconds is not None else None)
    print(f"requeued={count}")
    return 0


async def _dead_letters(app: Settle) -> int:
    for entry in await app.outbox.dead_letters():
        print(
            f"{entry.moved_at.isoformat()}  {entry.original_entry_id}  {entry.event_type}  "
            f"{entry.recipient}  attempts={entry.total_attempts}  {entry.final_error}"
        )
    return 0


class _NoSuppression:
    async def is_suppressed(self, recipient: str) -> bool:
        return False


async def run(args: argparse.Namespace, settings: Settings) -> int:
    app = await build(settings)
    try:
        match args.command:
            case "init-db":
                print("tables ready")
                return 0
            case "reconcile":
                return await _reconcile(app, args.forever)
            case "purge-idempotency":
                return await _purge(app)
            case "requeue-stale":
                return await _requeue(app, args.seconds)
            case "dead-letters":
                return await _dead_letters(app)
            case other:
                raise ValueError(f"Unknown command: {other}")
    finally:
        await app.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(settings.log_level, json=settings.log_json)
    structlog.get_logger().bind(component="cli").debug("command_started", command=args.command)
    return asyncio.run(run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
