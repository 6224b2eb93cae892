"""
Idempotency graph: the replay decision expressed as nodnod nodes.

Each state node accepts exactly one record state and raises NodeError for
anything else, so the polymorphic outcome resolves to the first case whose
dependencies succeed.

    IdempotentCall (injected)
         │
         ▼
    CallNode → LookupNode
                   │
         ┌─────────┼───────────────┬──────────────┬──────────────┐
         ▼         ▼               ▼              ▼              ▼
    CompletedNode  FailedNode  InFlightNode   UnclaimedNode  LookupFailedNode
         │
         ▼
    SameRequestNode
         │
         └──────────────► ReplayDecision (@polymorphic) ──► ReplayResultNode

nodnod resolves dependencies from runtime annotations, so this module
must not use postponed evaluation of annotations.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from nodnod import NodeError, case, polymorphic, scalar_node

from kungfu import Result, Ok, Error

from settle._run import compose
from settle.idempotency._policy import OnPending, Policy
from settle.idempotency._store import Store, StoreError
from settle.idempotency._types import (
    IdempotencyError,
    IdempotencyErrorKind,
    IdempotencyRecord,
    IdempotencyResult,
    RecordState,
)


@dataclass(frozen=True)
class IdempotentCall:
    """
    One keyed invocation of an operation.

    The fingerprint is optional. A cached record is only replayed when
    either side lacks a fingerprint or both fingerprints agree.
    """

    key: str
    input_value: Any
    operation: Callable[[Any], Awaitable[Result[Any, Any]]]
    store: Store
    policy: Policy
    fingerprint: str | None = None


@scalar_node
class CallNode:
    def __init__(self, call: IdempotentCall) -> None:
        self.call = call

    @classmethod
    def __compose__(cls, call: IdempotentCall) -> "CallNode":
        return cls(call)


@scalar_node
class LookupNode:
    """Loads the live record for the key; expired records read as absent."""

    def __init__(
        self,
        call: IdempotentCall,
        record: IdempotencyRecord | None = None,
        failure: StoreError | None = None,
    ) -> None:
        self.call = call
        self.record = record
        self.failure = failure

    @classmethod
    async def __compose__(cls, entry: CallNode) -> "LookupNode":
        call = entry.call
        match await call.store.get(call.key):
            case Ok(record):
                return cls(call, record=record)
            case Error(err):
                return cls(call, failure=err)


def _record_in(lookup: LookupNode, state: RecordState) -> IdempotencyRecord:
    if lookup.record is None or lookup.record.state != state:
        raise NodeError(f"No {state.value} record for {lookup.call.key}")
    return lookup.record


@scalar_node
class CompletedNode:
    def __init__(self, record: IdempotencyRecord, call: IdempotentCall) -> None:
        self.record = record
        self.call = call

    @classmethod
    def __compose__(cls, lookup: LookupNode) -> "CompletedNode":
        return cls(_record_in(lookup, RecordState.SUCCESS), lookup.call)


@scalar_node
class FailedNode:
    def __init__(self, record: IdempotencyRecord, call: IdempotentCall) -> None:
        self.record = record
        self.call = call

    @classmethod
    def __compose__(cls, lookup: LookupNode) -> "FailedNode":
        return cls(_record_in(lookup, RecordState.FAILED), lookup.call)


@scalar_node
class InFlightNode:
    def __init__(self, record: IdempotencyRecord, call: IdempotentCall) -> None:
        self.record = record
        self.call = call

    @classmethod
    def __compose__(cls, lookup: LookupNode) -> "InFlightNode":
        return cls(_record_in(lookup, RecordState.PROCESSING), lookup.call)


@scalar_node
class UnclaimedNode:
    """Nobody holds the key and the store answered."""

    def __init__(self, call: IdempotentCall) -> None:
        self.call = call

    @classmethod
    def __compose__(cls, lookup: LookupNode) -> "UnclaimedNode":
        if lookup.failure is not None or lookup.record is not None:
            raise NodeError(f"Key {lookup.call.key} is not free")
        return cls(lookup.call)


@scalar_node
class LookupFailedNode:
    def __init__(self, failure: StoreError) -> None:
        self.failure = failure

    @classmethod
    def __compose__(cls, lookup: LookupNode) -> "LookupFailedNode":
        if lookup.failure is None:
            raise NodeError("Lookup succeeded")
        return cls(lookup.failure)


@scalar_node
class SameRequestNode:
    """The cached success was produced by an identical request."""

    def __init__(self, completed: CompletedNode) -> None:
        self.completed = completed

    @classmethod
    def __compose__(cls, completed: CompletedNode) -> "SameRequestNode":
        incoming = completed.call.fingerprint
        stored = completed.record.fingerprint
        if incoming and stored and incoming != stored:
            raise NodeError("Fingerprint differs")
        return cls(completed)


# Outcomes are plain values until the final node turns them into a Result.


@dataclass(frozen=True)
class Replayed:
    value: Any
    from_cache: bool
    key: str


@dataclass(frozen=True)
class Refused:
    kind: IdempotencyErrorKind
    message: str
    original_error: Any | None = None


type Decision = Replayed | Refused


def _store_refusal(err: StoreError) -> Refused:
    return Refused(IdempotencyErrorKind.STORE_ERROR, err.message, err.cause)


def _in_progress(key: str) -> Refused:
    return Refused(IdempotencyErrorKind.CONFLICT, f"Request already in progress: {key}")


async def _run_claimed(call: IdempotentCall) -> Decision:
    """Invoke the operation for a key this caller just claimed."""
    policy = call.policy
    try:
        result = await call.operation(call.input_value)
    except Exception as exc:
        await call.store.delete(call.key)
        return Refused(IdempotencyErrorKind.EXECUTION, str(exc), exc)

    match result:
        case Ok(value):
            match await call.store.set_completed(call.key, value, policy.result_ttl):
                case Error(err):
                    return _store_refusal(err)
                case Ok(_):
                    return Replayed(value, from_cache=False, key=call.key)
        case Error(err):
            if policy.persist_failed:
                await call.store.set_failed(call.key, str(err), policy.failed_result_ttl or policy.result_ttl)
            else:
                await call.store.delete(call.key)
            return Refused(IdempotencyErrorKind.EXECUTION, "Operation returned Error", err)


async def _await_holder(call: IdempotentCall) -> Decision:
    """Poll until the in-flight holder finishes or the wait timeout passes."""
    deadline = call.policy.pending_wait_timeout.total_seconds()
    step = call.policy.poll_interval.total_seconds()
    waited = 0.0

    while waited < deadline:
        await asyncio.sleep(step)
        waited += step

        match await call.store.get(call.key):
            case Error(err):
                return _store_refusal(err)
            case Ok(None):
                # holder failed and released the key, or its claim lapsed
                return Refused(IdempotencyErrorKind.CONFLICT, "In-flight request did not complete")
            case Ok(record) if record.state == RecordState.SUCCESS:
                return Replayed(record.value, from_cache=True, key=call.key)
            case Ok(record) if record.state == RecordState.FAILED:
                return Refused(IdempotencyErrorKind.EXECUTION, "Operation failed while waiting", record.error)
            case Ok(_):
                continue

    return Refused(IdempotencyErrorKind.TIMEOUT, "Timeout waiting for in-flight request")


@polymorphic[Decision]
class ReplayDecision:
    """Routes on the record state; cases only act, state nodes already checked."""

    @case
    def store_down(cls, node: LookupFailedNode) -> Decision:
        return _store_refusal(node.failure)

    @case
    def replay(cls, same: SameRequestNode) -> Decision:
        completed = same.completed
        return Replayed(completed.record.value, from_cache=True, key=completed.call.key)

    @case
    def key_reused(cls, completed: CompletedNode) -> Decision:
        # reached only when SameRequestNode refused
        return Refused(
            IdempotencyErrorKind.INPUT_MISMATCH,
            f"Key reused with a different request: {completed.call.key}",
        )

    @case
    def replay_failure(cls, node: FailedNode) -> Decision:
        return Refused(IdempotencyErrorKind.EXECUTION, "Cached failure", node.record.error)

    @case
    async def in_flight(cls, node: InFlightNode) -> Decision:
        if node.call.policy.conflict_strategy == OnPending.WAIT:
            return await _await_holder(node.call)
        return _in_progress(node.call.key)

    @case
    async def claim_and_run(cls, node: UnclaimedNode) -> Decision:
        call = node.call
        match await call.store.set_pending(call.key, call.policy.processing_ttl, call.fingerprint):
            case Error(err):
                return _store_refusal(err)
            case Ok(False):
                # lost the insert race; the winner may already be done
                match await call.store.get(call.key):
                    case Ok(record) if record is not None and record.state == RecordState.SUCCESS:
                        return Replayed(record.value, from_cache=True, key=call.key)
                    case _:
                        return _in_progress(call.key)
            case Ok(True):
                return await _run_claimed(call)


@scalar_node
class ReplayResultNode:
    def __init__(self, decision: Decision) -> None:
        self.decision = decision

    @classmethod
    def __compose__(cls, decision: ReplayDecision) -> "ReplayResultNode":
        return cls(decision.value)

    def to_result(self) -> Result[IdempotencyResult[Any], IdempotencyError[Any]]:
        match self.decision:
            case Replayed(value=value, from_cache=from_cache, key=key):
                return Ok(IdempotencyResult(value=value, from_cache=from_cache, key=key))
            case Refused(kind=kind, message=message, original_error=original):
                return Error(IdempotencyError(kind=kind, message=message, original_error=original))


async def run_idempotent(call: IdempotentCall) -> Result[IdempotencyResult[Any], IdempotencyError[Any]]:
    node = await compose(ReplayResultNode, call)
    return node.to_result()


__all__ = (
    "IdempotentCall",
    "Decision",
    "Replayed",
    "Refused",
    "ReplayDecision",
    "ReplayResultNode",
    "run_idempotent",
)
