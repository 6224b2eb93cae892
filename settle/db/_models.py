"""
Tables — SQLAlchemy models for every persisted entity.

Note: uniqueness that the concurrency model relies on lives here, as
partial unique indexes, not in application code:

    order_locks     one unreleased row per order_id
    outbox_entries  one non-failed row per dedupe_key
    payment_transactions.provider_reference  globally unique
    idempotency_records.key                  primary key
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ═══════════════════════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════════════════════

class Base(DeclarativeBase):
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# Orders & Payments
# ═══════════════════════════════════════════════════════════════════════════════

class OrderRow(Base):
    """
    Orders. Never hard-deleted; terminal states stay for audit.

    Note: status / payment_status are mutated only through conditional
    UPDATEs (see settle.orders and settle.payments).
    """
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", index=True)
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    assigned_agent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_type: Mapped[str] = mapped_column(String(16), nullable=False, default="delivery")

    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class PaymentTransactionRow(Base):
    """Gateway transactions. Linked to one order once resolved, never relinked."""
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    provider_reference: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    order_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)

    # Note: "metadata" is reserved on declarative classes
    hints: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    gateway_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # amount_mismatch | duplicate_payment; held for a human, skipped by the batch job
    review_reason: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# ═══════════════════════════════════════════════════════════════════════════════
# Locks
# ═══════════════════════════════════════════════════════════════════════════════

class OrderLockRow(Base):
    __tablename__ = "order_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), nullable=False)
    lock_key: Mapped[str] = mapped_column(String(64), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(128), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    released_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    renewal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index(
            "uq_order_locks_active",
            "order_id",
            unique=True,
            sqlite_where=text("released_at IS NULL"),
            postgresql_where=text("released_at IS NULL"),
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotency
# ═══════════════════════════════════════════════════════════════════════════════

class IdempotencyRecordRow(Base):
    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    request_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="processing")
    response_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)


# ═══════════════════════════════════════════════════════════════════════════════
# Outbox
# ═══════════════════════════════════════════════════════════════════════════════

class OutboxEntryRow(Base):
    """
    Notification outbox.

    Note: priority_rank mirrors priority (high=2, normal=1, low=0) so the
    worker can order by it.
    """
    __tablename__ = "outbox_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    template_key: Mapped[str] = mapped_column(String(64), nullable=False)
    variables: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    dedupe_key: Mapped[str] = mapped_column(String(400), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    priority: Mapped[str] = mapped_column(String(8), nullable=False, default="normal")
    priority_rank: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index(
            "uq_outbox_entries_dedupe_live",
            "dedupe_key",
            unique=True,
            sqlite_where=text("status != 'failed'"),
            postgresql_where=text("status != 'failed'"),
        ),
        Index("ix_outbox_entries_due", "status", "priority_rank", "scheduled_at"),
    )


class DeadLetterRow(Base):
    """Write-once archive of entries that exhausted their retries."""
    __tablename__ = "dead_letter_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    original_entry_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    final_error: Mapped[str] = mapped_column(Text, nullable=False)
    total_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    moved_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class RecipientReputationRow(Base):
    """Rate-limit counters and reputation score per email domain / phone number."""
    __tablename__ = "recipient_reputation"

    recipient_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    hour_window_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    hour_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    day_window_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    day_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


# ═══════════════════════════════════════════════════════════════════════════════
# Audit
# ═══════════════════════════════════════════════════════════════════════════════

class AuditEventRow(Base):
    """Append-only audit trail: transitions, incidents, denials."""
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    severity: Mapped[str | None] = mapped_column(String(16), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


__all__ = (
    "Base",
    "OrderRow",
    "PaymentTransactionRow",
    "OrderLockRow",
    "IdempotencyRecordRow",
    "OutboxEntryRow",
    "DeadLetterRow",
    "RecipientReputationRow",
    "AuditEventRow",
)
