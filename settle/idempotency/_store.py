"""
Idempotency store — storage protocol + in-memory implementation.

All methods return Result for explicit error handling.
set_pending() is the only mutual-exclusion point: it must be an atomic
insert-or-conflict in every implementation.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Protocol

from kungfu import Result, Ok, Error

from settle._types import Clock, system_clock
from settle.idempotency._types import RecordState, IdempotencyRecord


# ═══════════════════════════════════════════════════════════════════════════════
# Store Error
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StoreError:
    """Storage operation error."""

    message: str
    cause: Exception | None = None


# ═══════════════════════════════════════════════════════════════════════════════
# Store Protocol
# ═══════════════════════════════════════════════════════════════════════════════


class Store(Protocol):
    """
    Idempotency store protocol.

    Note: expired records behave as absent — get() returns Ok(None) and
    set_pending() may take the key over.
    """

    async def get(self, key: str) -> Result[IdempotencyRecord | None, StoreError]:
        """Get live record. Ok(None) if missing or expired."""
        ...

    async def set_pending(
        self,
        key: str,
        ttl: timedelta | None,
        fingerprint: str | None = None,
    ) -> Result[bool, StoreError]:
        """
        Atomically claim the key.

        Ok(True) — claimed, caller executes.
        Ok(False) — someone else holds a live record.
        """
        ...

    async def set_completed(
        self, key: str, value: Any, ttl: timedelta | None
    ) -> Result[None, StoreError]:
        ...

    async def set_failed(
        self, key: str, error: str, ttl: timedelta | None
    ) -> Result[None, StoreError]:
        ...

    async def delete(self, key: str) -> Result[bool, StoreError]:
        ...

    async def purge_expired(self) -> Result[int, StoreError]:
        """Remove expired records. Returns how many."""
        ...


# ═══════════════════════════════════════════════════════════════════════════════
# Memory Store
# ═══════════════════════════════════════════════════════════════════════════════


class MemoryStore:
    """
    In-memory store for tests and single-process use.

    Note: asyncio.Lock gives set_pending its atomicity; across processes
    use the SQLAlchemy store.
    """

    def __init__(self, clock: Clock = system_clock) -> None:
        self._data: dict[str, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, key: str) -> Result[IdempotencyRecord | None, StoreError]:
        async with self._lock:
            record = self._data.get(key)
            if record is None or record.is_expired(self._clock()):
                return Ok(None)
            return Ok(record)

    async def set_pending(
        self,
        key: str,
        ttl: timedelta | None,
        fingerprint: str | None = None,
    ) -> Result[bool, StoreError]:
        async with self._lock:
            now = self._clock()
            existing = self._data.get(key)
            if existing is not None and not existing.is_expired(now):
                return Ok(False)

            self._data[key] = IdempotencyRecord(
                key=key,
                state=RecordState.PROCESSING,
                value=None,
                error=None,
                created_at=now,
                expires_at=now + ttl if ttl else None,
                fingerprint=fingerprint,
            )
            return Ok(True)

    async def set_completed(
        self, key: str, value: Any, ttl: timedelta | None
    ) -> Result[None, StoreError]:
        async with self._lock:
            record = self._data.get(key)
            if record is None:
                return Error(StoreError(f"Record not found: {key}"))
            now = self._clock()
            self._data[key] = replace(
                record,
                state=RecordState.SUCCESS,
                value=value,
                completed_at=now,
                expires_at=now + ttl if ttl else None,
            )
            return Ok(None)

    async def set_failed(
        self, key: str, error: str, ttl: timedelta | None
    ) -> Result[None, StoreError]:
        async with self._lock:
            record = self._data.get(key)
            if record is None:
                return Error(StoreError(f"Record not found: {key}"))
            now = self._clock()
            self._data[key] = replace(
                record,
                state=RecordState.FAILED,
                error=error,
                completed_at=now,
                expires_at=now + ttl if ttl else None,
            )
            return Ok(None)

    async def delete(self, key: str) -> Result[bool, StoreError]:
        async with self._lock:
            return Ok(self._data.pop(key, None) is not None)

    async def purge_expired(self) -> Result[int, StoreError]:
        async with self._lock:
            now = self._clock()
            expired = [k for k, r in self._data.items() if r.is_expired(now)]
            for k in expired:
                del self._data[k]
            return Ok(len(expired))


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "Store",
    "StoreError",
    "MemoryStore",
)
