"""
Audit types — what gets written to the trail.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class AuditKind(StrEnum):
    """
    TRANSITION: an applied order status change.
    INCIDENT:   anomaly for human review (amount mismatch, orphan, expired lock).
    DENIAL:     a rejected, security-relevant request.
    """

    TRANSITION = "transition"
    INCIDENT = "incident"
    DENIAL = "denial"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """
    One append-only audit record.

    Note: created_at is filled by the sink when left empty.
    """

    kind: AuditKind
    action: str
    order_id: str | None = None
    actor_id: str | None = None
    severity: Severity | None = None
    reference: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class AuditError:
    message: str
    cause: Exception | None = None


__all__ = (
    "AuditKind",
    "Severity",
    "AuditEvent",
    "AuditError",
)
