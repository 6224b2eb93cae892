"""
Locks — short-TTL, database-backed mutual exclusion per order.

    from settle import locks

    manager = locks.LockManager(session_factory, locks.LockPolicy().with_ttl(seconds=30))

    if await manager.acquire(order_id, holder_id="admin-7"):
        try:
            ...
        finally:
            await manager.release(order_id, holder_id="admin-7")

    # Or bounded retry + guaranteed release:
    result = await manager.locked(order_id, "admin-7", lambda: do_work())
"""

from settle.locks._types import (
    Lease,
    LockErrorKind,
    LockError,
    lock_key,
)
from settle.locks._policy import LockPolicy
from settle.locks._manager import LockManager

__all__ = (
    "Lease",
    "LockErrorKind",
    "LockError",
    "lock_key",
    "LockPolicy",
    "LockManager",
)
