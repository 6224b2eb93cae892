"""
Relational store — tables and sessions shared by every component.

    from settle import db

    session_factory, engine = await db.create_database("sqlite+aiosqlite:///settle.db")
"""

from settle.db._models import (
    Base,
    OrderRow,
    PaymentTransactionRow,
    OrderLockRow,
    IdempotencyRecordRow,
    OutboxEntryRow,
    DeadLetterRow,
    RecipientReputationRow,
    AuditEventRow,
)
from settle.db._session import (
    SessionFactory,
    create_database,
    insert_for,
)

__all__ = (
    # Tables
    "Base",
    "OrderRow",
    "PaymentTransactionRow",
    "OrderLockRow",
    "IdempotencyRecordRow",
    "OutboxEntryRow",
    "DeadLetterRow",
    "RecipientReputationRow",
    "AuditEventRow",
    # Session
    "SessionFactory",
    "create_database",
    "insert_for",
)
