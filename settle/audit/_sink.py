"""
Audit sinks — append-only trail behind a Result-returning protocol.

Writers never let the trail fail their own operation: they go through
record_quietly(), which logs a failed write and moves on.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError

from kungfu import Result, Ok, Error

from settle._types import Clock, system_clock
from settle.audit._types import AuditEvent, AuditError, AuditKind
from settle.db import AuditEventRow, SessionFactory


# ═══════════════════════════════════════════════════════════════════════════════
# Protocol
# ═══════════════════════════════════════════════════════════════════════════════

class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> Result[None, AuditError]:
        """Append one event."""
        ...


async def record_quietly(sink: AuditSink, event: AuditEvent) -> None:
    """Append without propagating failure."""
    match await sink.record(event):
        case Ok(_):
            pass
        case Error(err):
            structlog.get_logger().bind(component="audit").error(
                "audit_write_failed",
                action=event.action,
                order_id=event.order_id,
                error=err.message,
            )


# ═══════════════════════════════════════════════════════════════════════════════
# Memory Sink
# ═══════════════════════════════════════════════════════════════════════════════

class MemoryAuditSink:
    """
    In-memory sink for tests and local runs.

    Note: Thread-safe via asyncio.Lock.
    """

    def __init__(self, clock: Clock = system_clock) -> None:
        self._events: list[AuditEvent] = []
        self._lock = asyncio.Lock()
        self._clock = clock

    async def record(self, event: AuditEvent) -> Result[None, AuditError]:
        async with self._lock:
            if event.created_at is None:
                event = replace(event, created_at=self._clock())
            self._events.append(event)
        return Ok(None)

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    def of_kind(self, kind: AuditKind) -> list[AuditEvent]:
        return [e for e in self._events if e.kind == kind]

    def actions(self) -> list[str]:
        return [e.action for e in self._events]


# ═══════════════════════════════════════════════════════════════════════════════
# SQLAlchemy Sink
# ═══════════════════════════════════════════════════════════════════════════════

class SQLAlchemyAuditSink:
    """Persists events to audit_events, one short transaction each."""

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Clock = system_clock,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def record(self, event: AuditEvent) -> Result[None, AuditError]:
        try:
            async with self._session_factory() as session:
                session.add(
                    AuditEventRow(
                        kind=event.kind.value,
                        action=event.action,
                        severity=event.severity.value if event.severity else None,
                        order_id=event.order_id,
                        actor_id=event.actor_id,
                        reference=event.reference,
                        details=event.details,
                        created_at=event.created_at or self._clock(),
                    )
                )
                await session.commit()
            return Ok(None)
        except SQLAlchemyError as e:
            return Error(AuditError(f"Failed to record {event.action}: {e}", e))


__all__ = (
    "AuditSink",
    "record_quietly",
    "MemoryAuditSink",
    "SQLAlchemyAuditSink",
)
