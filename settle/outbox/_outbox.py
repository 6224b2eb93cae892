"""
Outbox — durable, deduplicated queue of customer/admin notifications.

    enqueue → live entry with this dedupe key?  merge variables (coalesced)
            → failed entry with this key?       reopen to queued
            → otherwise                         INSERT

The partial unique index on dedupe_key (status != 'failed') is the real
guard: two writers racing on the same key get one row, and the loser's
IntegrityError is read back as "already queued".

Note: a dead-lettered entry still counts as live, so later triggers in
its window are absorbed and it is never delivered again.
"""

from __future__ import annotations

import uuid
from typing import Any, cast

import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kungfu import Result, Ok, Error

from settle._types import Clock, system_clock
from settle.db import DeadLetterRow, OutboxEntryRow, SessionFactory
from settle.outbox._dedupe import channel_for, dedupe_key, normalize_recipient
from settle.outbox._policy import OutboxPolicy
from settle.outbox._types import (
    DeadLetterEntry,
    EnqueueResult,
    EntryStatus,
    OutboxEntry,
    OutboxError,
    OutboxErrorKind,
    Priority,
)


class Outbox:
    def __init__(
        self,
        session_factory: SessionFactory,
        policy: OutboxPolicy = OutboxPolicy(),
        clock: Clock = system_clock,
    ) -> None:
        self._session_factory = session_factory
        self._policy = policy
        self._clock = clock
        self._logger = structlog.get_logger().bind(component="outbox")

    @property
    def policy(self) -> OutboxPolicy:
        return self._policy

    # ═══════════════════════════════════════════════════════════════════════════
    # enqueue
    # ═══════════════════════════════════════════════════════════════════════════

    async def enqueue(
        self,
        event_type: str,
        order_id: str,
        recipient: str | None,
        template_key: str,
        variables: dict[str, Any] | None = None,
        priority: Priority = Priority.NORMAL,
    ) -> Result[EnqueueResult, OutboxError]:
        normalized = normalize_recipient(recipient)
        if not normalized:
            return Error(OutboxError(
                OutboxErrorKind.INVALID_RECIPIENT,
                f"No recipient for {event_type} on order {order_id}",
            ))

        now = self._clock()
        key = dedupe_key(order_id, event_type, normalized, now, self._policy.coalesce_window)
        variables = dict(variables or {})

        try:
            async with self._session_factory() as session:
                live = await _live_entry(session, key)
                if live is not None:
                    if live.status == EntryStatus.QUEUED.value:
                        live.variables = {**(live.variables or {}), **variables}
                        if priority.rank > live.priority_rank:
                            live.priority = priority.value
                            live.priority_rank = priority.rank
                        live.updated_at = now
                    await session.commit()
                    self._logger.debug("outbox_coalesced", entry_id=live.id, dedupe_key=key)
                    return Ok(EnqueueResult(OutboxEntry.from_row(live), coalesced=True))

                failed = (await session.execute(
                    select(OutboxEntryRow)
                    .where(
                        OutboxEntryRow.dedupe_key == key,
                        OutboxEntryRow.status == EntryStatus.FAILED.value,
                    )
                    .order_by(OutboxEntryRow.updated_at.desc())
                    .limit(1)
                )).scalar_one_or_none()

                if failed is not None:
                    failed.status = EntryStatus.QUEUED.value
                    failed.retry_count = 0
                    failed.error_message = None
                    failed.scheduled_at = now
                    failed.variables = {**(failed.variables or {}), **variables}
                    failed.updated_at = now
                    await session.commit()
                    self._logger.info("outbox_reopened", entry_id=failed.id, dedupe_key=key)
                    return Ok(EnqueueResult(OutboxEntry.from_row(failed), reopened=True))

                row = OutboxEntryRow(
                    id=str(uuid.uuid4()),
                    event_type=event_type,
                    order_id=order_id,
                    recipient=normalized,
                    channel=channel_for(normalized).value,
                    template_key=template_key,
                    variables=variables,
                    dedupe_key=key,
                    status=EntryStatus.QUEUED.value,
                    retry_count=0,
                    priority=priority.value,
                    priority_rank=priority.rank,
                    scheduled_at=now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                await session.commit()

        except IntegrityError:
            # Lost the race on uq_outbox_entries_dedupe_live
            return await self._already_queued(key)
        except SQLAlchemyError as e:
            self._logger.error("outbox_enqueue_failed", order_id=order_id, error=str(e))
            return Error(OutboxError(OutboxErrorKind.STORE_ERROR, str(e)))

        self._logger.info(
            "outbox_enqueued",
            entry_id=row.id,
            event_type=event_type,
            order_id=order_id,
            priority=priority.value,
        )
        return Ok(EnqueueResult(OutboxEntry.from_row(row), created=True))

    async def _already_queued(self, key: str) -> Result[EnqueueResult, OutboxError]:
        try:
            async with self._session_factory() as session:
                live = await _live_entry(session, key)
        except SQLAlchemyError as e:
            return Error(OutboxError(OutboxErrorKind.STORE_ERROR, str(e)))

        if live is None:
            return Error(OutboxError(
                OutboxErrorKind.STORE_ERROR,
                f"Insert for {key} conflicted but no live entry was found",
            ))
        self._logger.debug("outbox_coalesced", entry_id=live.id, dedupe_key=key)
        return Ok(EnqueueResult(OutboxEntry.from_row(live), coalesced=True))

    # ═══════════════════════════════════════════════════════════════════════════
    # cancel / queries
    # ═══════════════════════════════════════════════════════════════════════════

    async def cancel(self, entry_id: str) -> Result[OutboxEntry, OutboxError]:
        """queued → cancelled. Cancelling a cancelled entry is a no-op."""
        now = self._clock()
        try:
            async with self._session_factory() as session:
                cancelled = cast(CursorResult[Any], await session.execute(
                    update(OutboxEntryRow)
                    .where(
                        OutboxEntryRow.id == entry_id,
                        OutboxEntryRow.status == EntryStatus.QUEUED.value,
                    )
                    .values(status=EntryStatus.CANCELLED.value, updated_at=now)
                ))
                await session.commit()
                row = await _fresh(session, entry_id)
        except SQLAlchemyError as e:
            return Error(OutboxError(OutboxErrorKind.STORE_ERROR, str(e), entry_id))

        if row is None:
            return Error(OutboxError(OutboxErrorKind.NOT_FOUND, f"No entry {entry_id}", entry_id))
        if not cancelled.rowcount and row.status != EntryStatus.CANCELLED.value:
            return Error(OutboxError(
                OutboxErrorKind.NOT_FOUND,
                f"No queued entry {entry_id} (status {row.status})",
                entry_id,
            ))

        self._logger.info("outbox_cancelled", entry_id=entry_id)
        return Ok(OutboxEntry.from_row(row))

    async def get(self, entry_id: str) -> Result[OutboxEntry, OutboxError]:
        try:
            async with self._session_factory() as session:
                row = await _fresh(session, entry_id)
        except SQLAlchemyError as e:
            return Error(OutboxError(OutboxErrorKind.STORE_ERROR, str(e), entry_id))
        if row is None:
            return Error(OutboxError(OutboxErrorKind.NOT_FOUND, f"No entry {entry_id}", entry_id))
        return Ok(OutboxEntry.from_row(row))

    async def entries(
        self,
        *,
        order_id: str | None = None,
        status: EntryStatus | None = None,
    ) -> list[OutboxEntry]:
        stmt = select(OutboxEntryRow).order_by(OutboxEntryRow.created_at, OutboxEntryRow.id)
        if order_id is not None:
            stmt = stmt.where(OutboxEntryRow.order_id == order_id)
        if status is not None:
            stmt = stmt.where(OutboxEntryRow.status == status.value)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [OutboxEntry.from_row(row) for row in rows]

    async def dead_letters(self, *, entry_id: str | None = None) -> list[DeadLetterEntry]:
        stmt = select(DeadLetterRow).order_by(DeadLetterRow.id)
        if entry_id is not None:
            stmt = stmt.where(DeadLetterRow.original_entry_id == entry_id)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [DeadLetterEntry.from_row(row) for row in rows]


async def _live_entry(session: AsyncSession, key: str) -> OutboxEntryRow | None:
    return (await session.execute(
        select(OutboxEntryRow)
        .where(
            OutboxEntryRow.dedupe_key == key,
            OutboxEntryRow.status != EntryStatus.FAILED.value,
        )
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


async def _fresh(session: AsyncSession, entry_id: str) -> OutboxEntryRow | None:
    return (await session.execute(
        select(OutboxEntryRow)
        .where(OutboxEntryRow.id == entry_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


__all__ = ("Outbox",)
