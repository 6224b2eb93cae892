"""
Payment types — reported statuses, the metadata envelope, results, errors.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum, StrEnum, auto
from typing import Any

from settle.orders import Order


# ═══════════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════════

class TransactionStatus(StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ReconcileOutcome(StrEnum):
    RECONCILED = "reconciled"  # Payment linked and accepted in this call
    ALREADY_PROCESSED = "already_processed"  # Replay, or a duplicate payment; order untouched
    RECORDED = "recorded"  # Non-success status stored, order not paid


class MatchStrategy(StrEnum):
    """How a reference was resolved to an order, in lookup order."""

    LINKED = "linked"  # Transaction row already linked
    METADATA_ORDER_ID = "metadata_order_id"
    PAYMENT_REFERENCE = "payment_reference"
    ALIAS = "alias"  # pay_ ↔ txn_ heuristic
    ORDER_NUMBER = "order_number"


class ReviewReason(StrEnum):
    """Why a transaction row is held for a human instead of being applied."""

    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE_PAYMENT = "duplicate_payment"  # Second success on an already paid order


# ═══════════════════════════════════════════════════════════════════════════════
# Metadata envelope
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class PaymentMetadata:
    """
    The only metadata hints the engine trusts.

    Note: anything else the gateway sends stays in gateway_payload.
    """

    order_id: str | None = None
    order_number: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> PaymentMetadata:
        if not data:
            return cls()
        return cls(
            order_id=_hint(data.get("order_id")),
            order_number=_hint(data.get("order_number")),
        )

    def to_dict(self) -> dict[str, str]:
        out: dict[str, str] = {}
        if self.order_id:
            out["order_id"] = self.order_id
        if self.order_number:
            out["order_number"] = self.order_number
        return out


def _hint(value: Any) -> str | None:
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    return None


# ═══════════════════════════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class Reconciliation:
    outcome: ReconcileOutcome
    provider_reference: str
    order_id: str
    matched_by: MatchStrategy
    status_advanced: bool = False
    order: Order | None = None
    review_reason: ReviewReason | None = None


class ReconcileErrorKind(Enum):
    AMOUNT_MISMATCH = auto()  # Resolved, but amount off by more than tolerance
    ORPHANED = auto()  # No order resolved; transaction kept unlinked
    BUSY = auto()  # Order lock not acquired
    STORE_ERROR = auto()


@dataclass(frozen=True, slots=True)
class ReconcileError:
    kind: ReconcileErrorKind
    message: str
    provider_reference: str
    order_id: str | None = None
    expected: Decimal | None = None
    received: Decimal | None = None

    @property
    def retryable(self) -> bool:
        return self.kind in (ReconcileErrorKind.BUSY, ReconcileErrorKind.STORE_ERROR)


@dataclass(slots=True)
class BatchReport:
    scanned: int = 0
    reconciled: int = 0
    already_processed: int = 0
    orphaned: int = 0
    mismatched: int = 0
    busy: int = 0
    failed: int = 0


__all__ = (
    "TransactionStatus",
    "ReconcileOutcome",
    "MatchStrategy",
    "ReviewReason",
    "PaymentMetadata",
    "Reconciliation",
    "ReconcileErrorKind",
    "ReconcileError",
    "BatchReport",
)
