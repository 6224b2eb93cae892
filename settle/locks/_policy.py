"""
Lock policy — lease length and bounded retry.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta


@dataclass(frozen=True, slots=True)
class LockPolicy:
    """
    Lock manager configuration.

    Example:
        policy = (
            LockPolicy()
            .with_ttl(seconds=30)
            .with_retry(attempts=5, delay_ms=200)
        )

    Note: ttl bounds how long a crashed holder can block an order.
    """

    ttl: timedelta = timedelta(seconds=30)
    attempts: int = 5
    retry_delay: timedelta = timedelta(milliseconds=200)
    allow_renewal: bool = True

    def with_ttl(self, *, seconds: float) -> LockPolicy:
        return replace(self, ttl=timedelta(seconds=seconds))

    def with_retry(self, *, attempts: int, delay_ms: float = 200) -> LockPolicy:
        """
        Bounded acquisition: `attempts` tries, `delay_ms` apart.

        Example:
            .with_retry(attempts=1)  # single try, no waiting
        """
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        return replace(self, attempts=attempts, retry_delay=timedelta(milliseconds=delay_ms))

    def with_renewal(self, allow: bool = True) -> LockPolicy:
        """Whether the current holder may re-acquire to extend its lease."""
        return replace(self, allow_renewal=allow)


__all__ = ("LockPolicy",)
