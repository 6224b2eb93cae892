"""
Public error codes — the small, stable enum checkout/admin callers see.

Internal error values carry messages, references and amounts; none of
that crosses this boundary. Callers get a code and decide from it alone.

    match await service.transition(order_id, OrderStatus.OUT_FOR_DELIVERY, actor_id):
        case Error(err):
            return {"error": public_code(err)}
"""

from __future__ import annotations

from enum import StrEnum

from settle.idempotency import IdempotencyError, IdempotencyErrorKind
from settle.locks import LockError, LockErrorKind
from settle.orders import TransitionError, TransitionErrorKind
from settle.outbox import OutboxError, OutboxErrorKind
from settle.payments import ReconcileError, ReconcileErrorKind


class ErrorCode(StrEnum):
    INVALID_TRANSITION = "invalid_transition"
    MISSING_ASSIGNMENT = "missing_assignment"
    NOT_FOUND = "not_found"
    BUSY = "busy"  # Retry shortly
    CONFLICT = "conflict"  # Same request still in flight; retry later
    INVALID_REQUEST = "invalid_request"
    PAYMENT_REVIEW = "payment_review"  # Held for manual review
    RATE_LIMITED = "rate_limited"
    RECIPIENT_SUPPRESSED = "recipient_suppressed"
    DELIVERY_FAILED = "delivery_failed"
    UNAVAILABLE = "unavailable"  # Storage trouble; retryable


type SettleError = (
    TransitionError
    | ReconcileError
    | LockError
    | IdempotencyError
    | OutboxError
)


_TRANSITION = {
    TransitionErrorKind.INVALID_TRANSITION: ErrorCode.INVALID_TRANSITION,
    TransitionErrorKind.MISSING_ASSIGNMENT: ErrorCode.MISSING_ASSIGNMENT,
    TransitionErrorKind.NOT_FOUND: ErrorCode.NOT_FOUND,
    TransitionErrorKind.CONCURRENT_UPDATE: ErrorCode.BUSY,
    TransitionErrorKind.BUSY: ErrorCode.BUSY,
    TransitionErrorKind.STORE_ERROR: ErrorCode.UNAVAILABLE,
}

_RECONCILE = {
    ReconcileErrorKind.AMOUNT_MISMATCH: ErrorCode.PAYMENT_REVIEW,
    ReconcileErrorKind.ORPHANED: ErrorCode.PAYMENT_REVIEW,
    ReconcileErrorKind.BUSY: ErrorCode.BUSY,
    ReconcileErrorKind.STORE_ERROR: ErrorCode.UNAVAILABLE,
}

_LOCK = {
    LockErrorKind.BUSY: ErrorCode.BUSY,
    LockErrorKind.EXPIRED: ErrorCode.BUSY,
    LockErrorKind.STORE_ERROR: ErrorCode.UNAVAILABLE,
}

_IDEMPOTENCY = {
    IdempotencyErrorKind.CONFLICT: ErrorCode.CONFLICT,
    IdempotencyErrorKind.TIMEOUT: ErrorCode.CONFLICT,
    IdempotencyErrorKind.STORE_ERROR: ErrorCode.UNAVAILABLE,
    IdempotencyErrorKind.INPUT_MISMATCH: ErrorCode.INVALID_REQUEST,
}

_OUTBOX = {
    OutboxErrorKind.RATE_LIMITED: ErrorCode.RATE_LIMITED,
    OutboxErrorKind.RECIPIENT_SUPPRESSED: ErrorCode.RECIPIENT_SUPPRESSED,
    OutboxErrorKind.RETRIES_EXHAUSTED: ErrorCode.DELIVERY_FAILED,
    OutboxErrorKind.SEND_FAILED: ErrorCode.DELIVERY_FAILED,
    OutboxErrorKind.INVALID_RECIPIENT: ErrorCode.INVALID_REQUEST,
    OutboxErrorKind.NOT_FOUND: ErrorCode.NOT_FOUND,
    OutboxErrorKind.STORE_ERROR: ErrorCode.UNAVAILABLE,
}


def public_code(error: SettleError) -> ErrorCode:
    """
    Map any internal error value to its public code.

    Note: an EXECUTION error from the idempotency layer maps through the
    wrapped operation's own error; a raised exception there is UNAVAILABLE.
    """
    match error:
        case TransitionError(kind=kind):
            return _TRANSITION[kind]
        case ReconcileError(kind=kind):
            return _RECONCILE[kind]
        case LockError(kind=kind):
            return _LOCK[kind]
        case IdempotencyError(kind=IdempotencyErrorKind.EXECUTION, original_error=inner) if isinstance(
            inner, (TransitionError, ReconcileError, LockError, IdempotencyError, OutboxError)
        ):
            return public_code(inner)
        case IdempotencyError(kind=IdempotencyErrorKind.EXECUTION):
            return ErrorCode.UNAVAILABLE
        case IdempotencyError(kind=kind):
            return _IDEMPOTENCY[kind]
        case OutboxError(kind=kind):
            return _OUTBOX[kind]
        case _:
            raise TypeError(f"Not a settle error: {error!r}")


__all__ = (
    "ErrorCode",
    "SettleError",
    "public_code",
)
