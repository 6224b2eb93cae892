"""
Idempotency policy — behavior configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum, auto


# ═══════════════════════════════════════════════════════════════════════════════
# On Processing: Conflict Resolution Strategy
# ═══════════════════════════════════════════════════════════════════════════════


class OnPending(Enum):
    """
    What to do when a request arrives while another with the same key is processing.

    FAIL: Immediately return CONFLICT. Default: webhook senders retry on their own.
    WAIT: Poll until the in-flight request finishes, return its result.
    """

    FAIL = auto()
    WAIT = auto()


FAIL = OnPending.FAIL
WAIT = OnPending.WAIT


# ═══════════════════════════════════════════════════════════════════════════════
# Policy: Full Configuration
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Policy:
    """
    Idempotency policy configuration.

    Example:
        policy = (
            Policy()
            .with_ttl(hours=24)
            .with_on_pending(WAIT)
            .with_wait_timeout(seconds=10)
        )

    Note: processing_ttl bounds how long a crashed request can hold its key.
    """

    result_ttl: timedelta | None = timedelta(hours=24)
    processing_ttl: timedelta = timedelta(minutes=5)
    conflict_strategy: OnPending = OnPending.FAIL
    pending_wait_timeout: timedelta = timedelta(seconds=30)
    poll_interval: timedelta = timedelta(milliseconds=100)
    # Note: False: failed runs are forgotten so the caller may retry.
    persist_failed: bool = False
    failed_result_ttl: timedelta | None = None

    def with_ttl(
        self,
        *,
        seconds: float | None = None,
        minutes: float | None = None,
        hours: float | None = None,
        delta: timedelta | None = None,
    ) -> Policy:
        """
        TTL for successful records; afterwards the key can run again.

        Example:
            .with_ttl(hours=24)
            .with_ttl(delta=timedelta(days=7))
        """
        if delta is not None:
            ttl_val: timedelta | None = delta
        else:
            total_seconds = (seconds or 0) + (minutes or 0) * 60 + (hours or 0) * 3600
            ttl_val = timedelta(seconds=total_seconds) if total_seconds > 0 else None
        return replace(self, result_ttl=ttl_val)

    def with_processing_ttl(self, *, seconds: float) -> Policy:
        return replace(self, processing_ttl=timedelta(seconds=seconds))

    def with_on_pending(self, strategy: OnPending) -> Policy:
        return replace(self, conflict_strategy=strategy)

    def with_wait_timeout(self, *, seconds: float, poll_ms: float = 100) -> Policy:
        """Only applies to WAIT."""
        return replace(
            self,
            pending_wait_timeout=timedelta(seconds=seconds),
            poll_interval=timedelta(milliseconds=poll_ms),
        )

    def with_store_failed(self, store: bool = True, *, seconds: float | None = None) -> Policy:
        """
        Cache failed results too (replays get the cached error).

        Example:
            .with_store_failed(seconds=60)  # failures cached for a minute
        """
        failed_ttl = timedelta(seconds=seconds) if seconds else None
        return replace(self, persist_failed=store, failed_result_ttl=failed_ttl)


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "OnPending",
    "FAIL",
    "WAIT",
    "Policy",
)
