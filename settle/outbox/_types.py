"""
Outbox types — entries, dead letters, send results, errors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, StrEnum, auto
from typing import Any

from settle.db import DeadLetterRow, OutboxEntryRow


# ═══════════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════════

class EntryStatus(StrEnum):
    """
    queued → processing → sent
                       → queued (retry, backoff)
                       → failed (policy rejection, reopened by the next trigger)
                       → dead_lettered (retries exhausted, never delivered again)
    queued → cancelled
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


class Priority(StrEnum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 2, "normal": 1, "low": 0}[self.value]


class Channel(StrEnum):
    EMAIL = "email"
    SMS = "sms"


# ═══════════════════════════════════════════════════════════════════════════════
# Entries
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class OutboxEntry:
    id: str
    event_type: str
    order_id: str
    recipient: str
    channel: Channel
    template_key: str
    variables: dict[str, Any]
    dedupe_key: str
    status: EntryStatus
    retry_count: int
    priority: Priority
    scheduled_at: datetime
    error_message: str | None = None
    provider_message_id: str | None = None
    sent_at: datetime | None = None

    @classmethod
    def from_row(cls, row: OutboxEntryRow) -> OutboxEntry:
        return cls(
            id=row.id,
            event_type=row.event_type,
            order_id=row.order_id,
            recipient=row.recipient,
            channel=Channel(row.channel),
            template_key=row.template_key,
            variables=dict(row.variables or {}),
            dedupe_key=row.dedupe_key,
            status=EntryStatus(row.status),
            retry_count=row.retry_count,
            priority=Priority(row.priority),
            scheduled_at=row.scheduled_at,
            error_message=row.error_message,
            provider_message_id=row.provider_message_id,
            sent_at=row.sent_at,
        )


@dataclass(frozen=True, slots=True)
class DeadLetterEntry:
    original_entry_id: str
    recipient: str
    event_type: str
    final_error: str
    total_attempts: int
    moved_at: datetime

    @classmethod
    def from_row(cls, row: DeadLetterRow) -> DeadLetterEntry:
        return cls(
            original_entry_id=row.original_entry_id,
            recipient=row.recipient,
            event_type=row.event_type,
            final_error=row.final_error,
            total_attempts=row.total_attempts,
            moved_at=row.moved_at,
        )


@dataclass(frozen=True, slots=True)
class EnqueueResult:
    """
    created:   a new entry was inserted
    coalesced: folded into a live entry with the same dedupe key
    reopened:  a failed entry with the same key went back to queued
    """

    entry: OutboxEntry
    created: bool = False
    coalesced: bool = False
    reopened: bool = False


# ═══════════════════════════════════════════════════════════════════════════════
# Channel results
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class SendOk:
    provider_message_id: str


@dataclass(frozen=True, slots=True)
class SendFailed:
    reason: str


type SendResult = SendOk | SendFailed


# ═══════════════════════════════════════════════════════════════════════════════
# Delivery reports
# ═══════════════════════════════════════════════════════════════════════════════

class Delivery(StrEnum):
    SENT = "sent"
    RETRY = "retry"
    DEAD_LETTERED = "dead_lettered"
    REJECTED = "rejected"  # suppression / rate limit: failed, no retry
    LOST = "lost"  # entry left processing (e.g. reaped) before we finished


@dataclass(slots=True)
class DrainReport:
    claimed: int = 0
    outcomes: dict[Delivery, int] = field(default_factory=dict)

    def count(self, delivery: Delivery) -> int:
        return self.outcomes.get(delivery, 0)


# ═══════════════════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════════════════

class OutboxErrorKind(Enum):
    RATE_LIMITED = auto()
    RECIPIENT_SUPPRESSED = auto()
    RETRIES_EXHAUSTED = auto()
    SEND_FAILED = auto()
    INVALID_RECIPIENT = auto()
    NOT_FOUND = auto()
    STORE_ERROR = auto()


@dataclass(frozen=True, slots=True)
class OutboxError:
    kind: OutboxErrorKind
    message: str
    entry_id: str | None = None
    retry_after: float | None = None


__all__ = (
    "EntryStatus",
    "Priority",
    "Channel",
    "OutboxEntry",
    "DeadLetterEntry",
    "EnqueueResult",
    "SendOk",
    "SendFailed",
    "SendResult",
    "Delivery",
    "DrainReport",
    "OutboxErrorKind",
    "OutboxError",
)
