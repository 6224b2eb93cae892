"""
Idempotency — replay-safe execution of externally triggered entry points.

    from settle import idempotency as I

    executor = (
        I.idempotent(handle)
        .key(lambda d: d.idempotency_key)
        .store(I.SQLAlchemyStore(session_factory))
        .policy(I.Policy().with_on_pending(I.FAIL))
        .build()
    )
    match await executor.run(delivery):
        case Ok(I.IdempotencyResult(value=ack, from_cache=True)):
            ...  # duplicate suppressed, cached response
        case Error(I.IdempotencyError(kind=I.IdempotencyErrorKind.CONFLICT)):
            ...  # same key in flight

Architecture:

    IdempotentCall → LookupNode
                         │
       Completed / Failed / InFlight / Unclaimed / LookupFailed nodes
                         │
                ReplayDecision (@polymorphic)
                         │
                  ReplayResultNode
"""

from settle.idempotency._types import (
    RecordState,
    IdempotencyRecord,
    IdempotencyResult,
    IdempotencyError,
    IdempotencyErrorKind,
    fingerprint,
)
from settle.idempotency._store import (
    Store,
    StoreError,
    MemoryStore,
)
from settle.idempotency._sqlalchemy import SQLAlchemyStore
from settle.idempotency._policy import (
    Policy,
    OnPending,
    FAIL,
    WAIT,
)
from settle.idempotency._graph import (
    IdempotentCall,
    run_idempotent,
)
from settle.idempotency._builder import (
    idempotent,
    Idempotent,
    IdempotentExecutor,
)

__all__ = (
    # Types
    "RecordState",
    "IdempotencyRecord",
    "IdempotencyResult",
    "IdempotencyError",
    "IdempotencyErrorKind",
    "fingerprint",
    # Store
    "Store",
    "StoreError",
    "MemoryStore",
    "SQLAlchemyStore",
    # Policy
    "Policy",
    "OnPending",
    "FAIL",
    "WAIT",
    # Graph
    "IdempotentCall",
    "run_idempotent",
    # Builder
    "idempotent",
    "Idempotent",
    "IdempotentExecutor",
)
