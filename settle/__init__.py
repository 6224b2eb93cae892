"""
settle — consistency core for orders, payments and notifications.

    from settle import orders as O      # Status state machine
    from settle import payments as P    # Reconciliation engine + batch job
    from settle import locks as L       # Per-order leases
    from settle import outbox as N      # Notification outbox + worker
    from settle import idempotency as I # Replay-safe operations
"""

from settle import audit
from settle import db
from settle import idempotency
from settle import locks
from settle import orders
from settle import outbox
from settle import payments
from settle import webhook
from settle._logging import configure_logging
from settle._types import (
    Result,
    Ok,
    Error,
    LazyCoroResult,
    Clock,
    system_clock,
)
from settle.config import Settings
from settle.errors import ErrorCode, public_code

__version__ = "0.1.0"

__all__ = (
    "audit",
    "db",
    "idempotency",
    "locks",
    "orders",
    "outbox",
    "payments",
    "webhook",
    "configure_logging",
    "Result",
    "Ok",
    "Error",
    "LazyCoroResult",
    "Clock",
    "system_clock",
    "Settings",
    "ErrorCode",
    "public_code",
)
