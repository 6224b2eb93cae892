"""
Lock types — leases and lock errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, auto

from settle.db import OrderLockRow


@dataclass(frozen=True, slots=True)
class Lease:
    """A held (unreleased) order lock."""

    order_id: str
    lock_key: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    renewal_count: int = 0

    def seconds_remaining(self, now: datetime) -> float:
        return max(0.0, (self.expires_at - now).total_seconds())

    @classmethod
    def from_row(cls, row: OrderLockRow) -> Lease:
        return cls(
            order_id=row.order_id,
            lock_key=row.lock_key,
            holder_id=row.holder_id,
            acquired_at=row.acquired_at,
            expires_at=row.expires_at,
            renewal_count=row.renewal_count,
        )


class LockErrorKind(Enum):
    """Kinds of lock errors."""

    BUSY = auto()  # Held by someone else after all attempts
    EXPIRED = auto()  # Caller's lease ran out before release/renew
    STORE_ERROR = auto()  # Storage backend error


@dataclass(frozen=True, slots=True)
class LockError:
    """
    Lock operation error.

    Note: holder / retry_after are filled for BUSY when the current lease is known.
    """

    kind: LockErrorKind
    message: str
    order_id: str
    holder: Lease | None = None
    retry_after: float | None = None


def lock_key(order_id: str) -> str:
    return f"order:{order_id}"


__all__ = (
    "Lease",
    "LockErrorKind",
    "LockError",
    "lock_key",
)
