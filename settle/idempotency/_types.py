"""
Idempotency types — records, results, errors.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, StrEnum, auto
from typing import Any


# ═══════════════════════════════════════════════════════════════════════════════
# Record State: Operation Lifecycle
# ═══════════════════════════════════════════════════════════════════════════════


class RecordState(StrEnum):
    """
    State of an idempotency record.

    Lifecycle:
        PROCESSING → SUCCESS (response cached)
                   → FAILED  (only when the policy persists failures)
                   → (expired/deleted, key can run again)
    """

    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


# ═══════════════════════════════════════════════════════════════════════════════
# Idempotency Record: Stored State
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class IdempotencyRecord:
    """
    A stored idempotency record.

    fingerprint: hash of the request that created the record.
    A replay under the same key with another fingerprint is a key collision.
    """

    key: str
    state: RecordState
    value: Any
    error: str | None
    created_at: datetime
    expires_at: datetime | None
    fingerprint: str | None = None
    completed_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at


# ═══════════════════════════════════════════════════════════════════════════════
# Result Types
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class IdempotencyResult[T]:
    """
    Successful idempotency result.

    Note: from_cache=True is a suppressed duplicate — the cached response,
    returned verbatim, side effects not re-run.
    """

    value: T
    from_cache: bool
    key: str


class IdempotencyErrorKind(Enum):
    """Kinds of idempotency errors."""

    CONFLICT = auto()  # Same key still processing
    TIMEOUT = auto()  # Waiting for processing timed out
    STORE_ERROR = auto()  # Storage backend error
    EXECUTION = auto()  # Wrapped operation failed
    INPUT_MISMATCH = auto()  # Same key, different request fingerprint


@dataclass(frozen=True, slots=True)
class IdempotencyError[E]:
    """
    Idempotency operation error.

    Note: original_error holds the wrapped operation's error for EXECUTION.
    """

    kind: IdempotencyErrorKind
    message: str
    original_error: E | None = None


def fingerprint(payload: Any) -> str:
    """Stable sha256 of a JSON-able request."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "RecordState",
    "IdempotencyRecord",
    "IdempotencyResult",
    "IdempotencyError",
    "IdempotencyErrorKind",
    "fingerprint",
)
