"""
Payments — reconciliation of gateway reports against orders.

    from settle import payments as P

    engine = P.ReconciliationEngine(session_factory, machine, lock_manager, audit_sink)

    match await engine.reconcile("pay_7Hq2", "success", Decimal("5000.00"), payload):
        case Ok(P.Reconciliation(outcome=P.ReconcileOutcome.ALREADY_PROCESSED)):
            ...  # replay, nothing written
        case Ok(rec):
            ...  # paid (+ confirmed when it was pending)
        case Error(P.ReconcileError(kind=P.ReconcileErrorKind.AMOUNT_MISMATCH)):
            ...  # incident raised, nothing mutated

    # Self-healing
    job = P.ReconciliationJob(engine, session_factory)
    report = await job.run_once()
"""

from settle.payments._types import (
    TransactionStatus,
    ReconcileOutcome,
    MatchStrategy,
    ReviewReason,
    PaymentMetadata,
    Reconciliation,
    ReconcileErrorKind,
    ReconcileError,
    BatchReport,
)
from settle.payments._policy import ReconcilePolicy
from settle.payments._resolve import (
    ALIAS_PREFIXES,
    Resolution,
    alias_candidates,
    is_uuid,
    resolve_order,
)
from settle.payments._engine import ReconciliationEngine
from settle.payments._batch import (
    PendingPayment,
    ReconciliationJob,
)

__all__ = (
    # Types
    "TransactionStatus",
    "ReconcileOutcome",
    "MatchStrategy",
    "ReviewReason",
    "PaymentMetadata",
    "Reconciliation",
    "ReconcileErrorKind",
    "ReconcileError",
    "BatchReport",
    # Policy
    "ReconcilePolicy",
    # Resolution
    "ALIAS_PREFIXES",
    "Resolution",
    "alias_candidates",
    "is_uuid",
    "resolve_order",
    # Engine & job
    "ReconciliationEngine",
    "PendingPayment",
    "ReconciliationJob",
)
