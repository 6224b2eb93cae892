"""
Order types — statuses, the order snapshot, transition events and errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum, StrEnum, auto

from settle.db import OrderRow


# ═══════════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════════

class OrderStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class OrderType(StrEnum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


# ═══════════════════════════════════════════════════════════════════════════════
# Order snapshot
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class Order:
    id: str
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    total_amount: Decimal
    order_type: OrderType
    payment_reference: str | None
    assigned_agent_id: str | None
    customer_email: str | None
    customer_phone: str | None
    paid_at: datetime | None
    verified_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: OrderRow) -> Order:
        return cls(
            id=row.id,
            order_number=row.order_number,
            status=OrderStatus(row.status),
            payment_status=PaymentStatus(row.payment_status),
            total_amount=Decimal(row.total_amount),
            order_type=OrderType(row.order_type),
            payment_reference=row.payment_reference,
            assigned_agent_id=row.assigned_agent_id,
            customer_email=row.customer_email,
            customer_phone=row.customer_phone,
            paid_at=row.paid_at,
            verified_at=row.verified_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Transition results
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class TransitionEvent:
    """An applied status change. Handed to observers after commit."""

    order: Order
    previous: OrderStatus
    actor_id: str
    occurred_at: datetime

    @property
    def target(self) -> OrderStatus:
        return self.order.status


@dataclass(frozen=True, slots=True)
class Transition:
    """
    Result of applying a transition inside a session.

    event is None for a same-status call (no-op).
    """

    order: Order
    event: TransitionEvent | None

    @property
    def changed(self) -> bool:
        return self.event is not None


class TransitionErrorKind(Enum):
    INVALID_TRANSITION = auto()  # (from, to) not in the table
    MISSING_ASSIGNMENT = auto()  # Needs an assigned agent
    NOT_FOUND = auto()
    CONCURRENT_UPDATE = auto()  # Row kept changing underneath us
    BUSY = auto()  # Order lock not acquired
    STORE_ERROR = auto()


@dataclass(frozen=True, slots=True)
class TransitionError:
    kind: TransitionErrorKind
    message: str
    order_id: str | None = None
    current: OrderStatus | None = None
    target: OrderStatus | None = None


__all__ = (
    "OrderStatus",
    "PaymentStatus",
    "OrderType",
    "Order",
    "TransitionEvent",
    "Transition",
    "TransitionErrorKind",
    "TransitionError",
)
