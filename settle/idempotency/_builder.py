"""
Idempotency builder — fluent API over the graph.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any

from kungfu import Result

from settle.idempotency._graph import IdempotentCall, run_idempotent
from settle.idempotency._policy import Policy
from settle.idempotency._store import MemoryStore, Store
from settle.idempotency._types import IdempotencyError, IdempotencyResult


type KeyFn[K] = Callable[[K], str]
type FingerprintFn[K] = Callable[[K], str]


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotent Builder
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(slots=True, frozen=True)
class Idempotent[K, T, E]:
    """Fluent idempotency builder."""

    _operation: Callable[[K], Awaitable[Result[T, E]]]
    _key_fn: KeyFn[K] | None = None
    _fingerprint_fn: FingerprintFn[K] | None = None
    _store: Store | None = None
    _policy: Policy = Policy()

    def key(self, fn: KeyFn[K]) -> Idempotent[K, T, E]:
        """Set key extraction function."""
        return replace(self, _key_fn=fn)

    def fingerprint(self, fn: FingerprintFn[K]) -> Idempotent[K, T, E]:
        """Set request fingerprint function (key-collision detection)."""
        return replace(self, _fingerprint_fn=fn)

    def store(self, s: Store) -> Idempotent[K, T, E]:
        return replace(self, _store=s)

    def policy(self, p: Policy) -> Idempotent[K, T, E]:
        return replace(self, _policy=p)

    def build(self) -> IdempotentExecutor[K, T, E]:
        if self._key_fn is None:
            raise ValueError("key() is required")

        return IdempotentExecutor(
            operation=self._operation,
            key_fn=self._key_fn,
            fingerprint_fn=self._fingerprint_fn,
            store=self._store if self._store is not None else MemoryStore(),
            policy=self._policy,
        )


@dataclass(slots=True, frozen=True)
class IdempotentExecutor[K, T, E]:
    operation: Callable[[K], Awaitable[Result[T, E]]]
    key_fn: KeyFn[K]
    fingerprint_fn: FingerprintFn[K] | None
    store: Store
    policy: Policy

    async def run(self, value: K) -> Result[IdempotencyResult[T], IdempotencyError[E]]:
        call = IdempotentCall(
            key=self.key_fn(value),
            input_value=value,
            operation=self.operation,
            store=self.store,
            policy=self.policy,
            fingerprint=self.fingerprint_fn(value) if self.fingerprint_fn else None,
        )
        result: Result[Any, Any] = await run_idempotent(call)
        return result


def idempotent[K, T, E](
    operation: Callable[[K], Awaitable[Result[T, E]]],
) -> Idempotent[K, T, E]:
    """
    Start building an idempotent executor.

    Example:
        executor = (
            idempotent(process_webhook)
            .key(lambda d: d.idempotency_key)
            .fingerprint(lambda d: fingerprint(d.body))
            .store(SQLAlchemyStore(session_factory))
            .policy(Policy().with_ttl(hours=24))
            .build()
        )
        result = await executor.run(delivery)
    """
    return Idempotent(_operation=operation)


__all__ = (
    "Idempotent",
    "IdempotentExecutor",
    "idempotent",
)
