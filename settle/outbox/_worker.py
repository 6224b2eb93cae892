"""
Outbox worker — claims due entries and delivers them through channel senders.

    claim:    UPDATE outbox_entries SET status = 'processing'
               WHERE id = :id AND status = 'queued'      -- one winner per entry
    deliver:  suppressed?   → failed (no retry)
              rate limited? → failed (no retry)
              send (bounded timeout)
                ok          → sent
                failure     → retry_count + 1
                                < max_retries → queued, scheduled_at + backoff
                                ≥ max_retries → dead_lettered + dead letter row

Several workers can drain the same table side by side.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, cast

import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError

from combinators import batch, lift as L
from kungfu import Ok, Error

from settle._types import Clock, system_clock
from settle.db import DeadLetterRow, OutboxEntryRow, SessionFactory
from settle.outbox._channels import ChannelSender, SuppressionList
from settle.outbox._policy import OutboxPolicy
from settle.outbox._ratelimit import RateLimiter
from settle.outbox._types import (
    Channel,
    Delivery,
    DrainReport,
    EntryStatus,
    OutboxEntry,
    OutboxError,
    OutboxErrorKind,
    SendFailed,
    SendOk,
)


class OutboxWorker:
    def __init__(
        self,
        session_factory: SessionFactory,
        senders: Mapping[Channel, ChannelSender],
        suppression: SuppressionList,
        limiter: RateLimiter,
        policy: OutboxPolicy = OutboxPolicy(),
        clock: Clock = system_clock,
        worker_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._senders = dict(senders)
        self._suppression = suppression
        self._limiter = limiter
        self._policy = policy
        self._clock = clock
        self._worker_id = worker_id or f"outbox-{uuid.uuid4().hex[:8]}"
        self._logger = structlog.get_logger().bind(component="outbox_worker", worker_id=self._worker_id)

    # ═══════════════════════════════════════════════════════════════════════════
    # claim
    # ═══════════════════════════════════════════════════════════════════════════

    async def claim(self, limit: int | None = None) -> list[OutboxEntry]:
        """Due queued entries, highest priority first, then oldest schedule."""
        now = self._clock()
        limit = limit or self._policy.batch_size

        async with self._session_factory() as session:
            candidates = (await session.execute(
                select(OutboxEntryRow.id)
                .where(
                    OutboxEntryRow.status == EntryStatus.QUEUED.value,
                    OutboxEntryRow.scheduled_at <= now,
                )
                .order_by(OutboxEntryRow.priority_rank.desc(), OutboxEntryRow.scheduled_at.asc())
                .limit(limit)
            )).scalars().all()

            claimed: list[str] = []
            for entry_id in candidates:
                won = cast(CursorResult[Any], await session.execute(
                    update(OutboxEntryRow)
                    .where(
                        OutboxEntryRow.id == entry_id,
                        OutboxEntryRow.status == EntryStatus.QUEUED.value,
                    )
                    .values(status=EntryStatus.PROCESSING.value, updated_at=now)
                ))
                if won.rowcount:
                    claimed.append(entry_id)
            await session.commit()

            if not claimed:
                return []
            rows = (await session.execute(
                select(OutboxEntryRow)
                .where(OutboxEntryRow.id.in_(claimed))
                .execution_options(populate_existing=True)
            )).scalars().all()

        by_id = {row.id: OutboxEntry.from_row(row) for row in rows}
        return [by_id[entry_id] for entry_id in claimed if entry_id in by_id]

    # ═══════════════════════════════════════════════════════════════════════════
    # deliver
    # ═══════════════════════════════════════════════════════════════════════════

    async def deliver(self, entry: OutboxEntry) -> Delivery:
        """Deliver one claimed entry and persist the outcome."""
        log = self._logger.bind(entry_id=entry.id, event_type=entry.event_type)

        if await self._suppression.is_suppressed(entry.recipient):
            log.info("outbox_recipient_suppressed")
            return await self._reject(entry, OutboxError(
                OutboxErrorKind.RECIPIENT_SUPPRESSED,
                f"{entry.recipient} is on the suppression list",
                entry.id,
            ))

        match await self._limiter.check(entry.recipient):
            case Error(OutboxError(kind=OutboxErrorKind.RATE_LIMITED) as err):
                return await self._reject(entry, err)
            case Error(err):
                return await self._retry(entry, err.message)
            case Ok(_):
                pass

        sender = self._senders.get(entry.channel)
        if sender is None:
            return await self._reject(entry, OutboxError(
                OutboxErrorKind.SEND_FAILED,
                f"No sender configured for {entry.channel.value}",
                entry.id,
            ))

        timeout = self._policy.send_timeout.total_seconds()

        async def send() -> SendOk | SendFailed:
            async with asyncio.timeout(timeout):
                return await sender.send(entry.recipient, entry.template_key, entry.variables)

        result = await L.catching_async(
            send,
            on_error=lambda e: (
                f"send timed out after {timeout:g}s"
                if isinstance(e, TimeoutError)
                else f"{type(e).__name__}: {e}"
            ),
        )

        match result:
            case Ok(SendOk(provider_message_id=message_id)):
                await self._limiter.record_outcome(entry.recipient, delivered=True)
                return await self._mark_sent(entry, message_id)
            case Ok(SendFailed(reason=reason)):
                await self._limiter.record_outcome(entry.recipient, delivered=False)
                return await self._retry(entry, reason)
            case Error(reason):
                await self._limiter.record_outcome(entry.recipient, delivered=False)
                return await self._retry(entry, reason)
            case _:
                return await self._retry(entry, f"unexpected send result: {result!r}")

    async def _mark_sent(self, entry: OutboxEntry, message_id: str) -> Delivery:
        now = self._clock()
        updated = await self._finish(
            entry,
            status=EntryStatus.SENT.value,
            provider_message_id=message_id,
            sent_at=now,
            error_message=None,
            updated_at=now,
        )
        if not updated:
            return Delivery.LOST
        self._logger.info("outbox_sent", entry_id=entry.id, provider_message_id=message_id)
        return Delivery.SENT

    async def _reject(self, entry: OutboxEntry, err: OutboxError) -> Delivery:
        """Terminal by policy: failed, no retry, no dead letter."""
        updated = await self._finish(
            entry,
            status=EntryStatus.FAILED.value,
            error_message=f"{err.kind.name}: {err.message}",
            updated_at=self._clock(),
        )
        if not updated:
            return Delivery.LOST
        self._logger.warning("outbox_rejected", entry_id=entry.id, reason=err.kind.name)
        return Delivery.REJECTED

    async def _retry(self, entry: OutboxEntry, reason: str) -> Delivery:
        now = self._clock()
        attempts = entry.retry_count + 1

        if attempts >= self._policy.max_retries:
            return await self._dead_letter(entry, reason, attempts)

        delay = self._policy.backoff(attempts)
        updated = await self._finish(
            entry,
            status=EntryStatus.QUEUED.value,
            retry_count=attempts,
            scheduled_at=now + delay,
            error_message=reason,
            updated_at=now,
        )
        if not updated:
            return Delivery.LOST
        self._logger.info(
            "outbox_retry_scheduled",
            entry_id=entry.id,
            retry_count=attempts,
            delay_seconds=delay.total_seconds(),
            reason=reason,
        )
        return Delivery.RETRY

    async def _dead_letter(self, entry: OutboxEntry, reason: str, attempts: int) -> Delivery:
        now = self._clock()
        final_error = f"{OutboxErrorKind.RETRIES_EXHAUSTED.name}: {reason}"
        try:
            async with self._session_factory() as session:
                moved = cast(CursorResult[Any], await session.execute(
                    update(OutboxEntryRow)
                    .where(
                        OutboxEntryRow.id == entry.id,
                        OutboxEntryRow.status == EntryStatus.PROCESSING.value,
                    )
                    .values(
                        status=EntryStatus.DEAD_LETTERED.value,
                        retry_count=attempts,
                        error_message=final_error,
                        updated_at=now,
                    )
                ))
                if not moved.rowcount:
                    return Delivery.LOST
                session.add(DeadLetterRow(
                    original_entry_id=entry.id,
                    recipient=entry.recipient,
                    event_type=entry.event_type,
                    final_error=final_error,
                    total_attempts=attempts,
                    moved_at=now,
                ))
                await session.commit()
        except SQLAlchemyError as e:
            self._logger.error("outbox_dead_letter_failed", entry_id=entry.id, error=str(e))
            return Delivery.LOST

        self._logger.error(
            "outbox_dead_lettered",
            entry_id=entry.id,
            total_attempts=attempts,
            final_error=final_error,
        )
        return Delivery.DEAD_LETTERED

    async def _finish(self, entry: OutboxEntry, **values: Any) -> bool:
        """Apply the outcome only if we still own the entry."""
        try:
            async with self._session_factory() as session:
                updated = cast(CursorResult[Any], await session.execute(
                    update(OutboxEntryRow)
                    .where(
                        OutboxEntryRow.id == entry.id,
                        OutboxEntryRow.status == EntryStatus.PROCESSING.value,
                    )
                    .values(**values)
                ))
                await session.commit()
        except SQLAlchemyError as e:
            self._logger.error("outbox_update_failed", entry_id=entry.id, error=str(e))
            return False

        if not updated.rowcount:
            self._logger.warning("outbox_entry_lost", entry_id=entry.id)
            return False
        return True

    # ═══════════════════════════════════════════════════════════════════════════
    # drain / requeue / loop
    # ═══════════════════════════════════════════════════════════════════════════

    async def drain(self) -> DrainReport:
        """Claim one batch and deliver it, `policy.concurrency` at a time."""
        report = DrainReport()
        try:
            entries = await self.claim()
        except SQLAlchemyError as e:
            self._logger.error("outbox_claim_failed", error=str(e))
            return report

        report.claimed = len(entries)
        if not entries:
            return report

        def handler(entry: OutboxEntry) -> Any:
            return L.catching_async(
                lambda: self.deliver(entry),
                on_error=lambda e: OutboxError(OutboxErrorKind.SEND_FAILED, str(e), entry.id),
            )

        match await batch(entries, handler=handler, concurrency=self._policy.concurrency):
            case Ok(outcomes):
                for delivery in outcomes:
                    report.outcomes[delivery] = report.count(delivery) + 1
            case Error(err):
                # Entries left in processing are picked up by requeue_stale
                self._logger.error("outbox_drain_aborted", error=str(err))

        self._logger.info(
            "outbox_drained",
            claimed=report.claimed,
            **{d.value: n for d, n in report.outcomes.items()},
        )
        return report

    async def requeue_stale(self, older_than: timedelta | None = None) -> int:
        """Return entries stuck in processing (crashed worker) to the queue."""
        now = self._clock()
        cutoff = now - (older_than or self._policy.stale_after)
        async with self._session_factory() as session:
            requeued = cast(CursorResult[Any], await session.execute(
                update(OutboxEntryRow)
                .where(
                    OutboxEntryRow.status == EntryStatus.PROCESSING.value,
                    OutboxEntryRow.updated_at <= cutoff,
                )
                .values(status=EntryStatus.QUEUED.value, scheduled_at=now, updated_at=now)
            ))
            await session.commit()

        if requeued.rowcount:
            self._logger.warning("outbox_requeued_stale", count=requeued.rowcount)
        return requeued.rowcount

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Drain until `stop` is set, sleeping `policy.poll_interval` when idle."""
        interval = self._policy.poll_interval.total_seconds()
        self._logger.info("outbox_worker_started", interval=interval)
        while not stop.is_set():
            await self.requeue_stale()
            report = await self.drain()
            if report.claimed:
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                pass
        self._logger.info("outbox_worker_stopped")


__all__ = ("OutboxWorker",)
