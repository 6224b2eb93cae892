"""
Audit — append-only trail of transitions, incidents and denials.

    from settle import audit as A

    sink = A.SQLAlchemyAuditSink(session_factory)
    await A.record_quietly(sink, A.AuditEvent(
        kind=A.AuditKind.INCIDENT,
        action="payment_amount_mismatch",
        severity=A.Severity.CRITICAL,
    ))
"""

from settle.audit._types import (
    AuditKind,
    Severity,
    AuditEvent,
    AuditError,
)
from settle.audit._sink import (
    AuditSink,
    record_quietly,
    MemoryAuditSink,
    SQLAlchemyAuditSink,
)

__all__ = (
    # Types
    "AuditKind",
    "Severity",
    "AuditEvent",
    "AuditError",
    # Sinks
    "AuditSink",
    "record_quietly",
    "MemoryAuditSink",
    "SQLAlchemyAuditSink",
)
