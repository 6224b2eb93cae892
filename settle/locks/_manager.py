"""
Lock manager — short-lived per-order mutual exclusion on top of the database.

Acquire:

    UPDATE order_locks SET released_at = now          -- reap expired leases
     WHERE order_id = :id AND released_at IS NULL AND expires_at <= now
    UPDATE ... SET expires_at = now + ttl             -- same holder: renew
     WHERE order_id = :id AND holder_id = :holder AND released_at IS NULL
    INSERT INTO order_locks (...)                     -- uq_order_locks_active
                                                         decides the winner

Release only matches the caller's own, still-live lease, so a holder that
timed out can never clear a lock someone else has since acquired.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, cast

import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from kungfu import Result, Ok, Error

from settle._types import Clock, system_clock
from settle.audit import AuditEvent, AuditKind, AuditSink, Severity, record_quietly
from settle.db import OrderLockRow, SessionFactory
from settle.locks._policy import LockPolicy
from settle.locks._types import Lease, LockError, LockErrorKind, lock_key


class LockManager:
    def __init__(
        self,
        session_factory: SessionFactory,
        policy: LockPolicy = LockPolicy(),
        audit: AuditSink | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self._session_factory = session_factory
        self._policy = policy
        self._audit = audit
        self._clock = clock
        self._logger = structlog.get_logger().bind(component="lock_manager")

    @property
    def policy(self) -> LockPolicy:
        return self._policy

    # ═══════════════════════════════════════════════════════════════════════════
    # acquire / release
    # ═══════════════════════════════════════════════════════════════════════════

    async def acquire(
        self,
        order_id: str,
        holder_id: str,
        ttl_seconds: float | None = None,
    ) -> bool:
        """Try once. Never blocks on a held lock."""
        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else self._policy.ttl
        now = self._clock()
        expires_at = now + ttl

        try:
            async with self._session_factory() as session:
                reaped = cast(CursorResult[Any], await session.execute(
                    update(OrderLockRow)
                    .where(
                        OrderLockRow.order_id == order_id,
                        OrderLockRow.released_at.is_(None),
                        OrderLockRow.expires_at <= now,
                    )
                    .values(released_at=now)
                ))
                if reaped.rowcount:
                    self._logger.info("lock_reaped", order_id=order_id, count=reaped.rowcount)

                if self._policy.allow_renewal:
                    renewed = cast(CursorResult[Any], await session.execute(
                        update(OrderLockRow)
                        .where(
                            OrderLockRow.order_id == order_id,
                            OrderLockRow.holder_id == holder_id,
                            OrderLockRow.released_at.is_(None),
                        )
                        .values(
                            expires_at=expires_at,
                            renewal_count=OrderLockRow.renewal_count + 1,
                        )
                    ))
                    if renewed.rowcount:
                        await session.commit()
                        self._logger.debug("lock_renewed", order_id=order_id, holder_id=holder_id)
                        return True

                session.add(
                    OrderLockRow(
                        order_id=order_id,
                        lock_key=lock_key(order_id),
                        holder_id=holder_id,
                        acquired_at=now,
                        expires_at=expires_at,
                        renewal_count=0,
                    )
                )
                await session.commit()

        except IntegrityError:
            self._logger.debug("lock_busy", order_id=order_id, holder_id=holder_id)
            return False
        except SQLAlchemyError as e:
            self._logger.error("lock_acquire_failed", order_id=order_id, error=str(e))
            return False

        self._logger.debug("lock_acquired", order_id=order_id, holder_id=holder_id)
        return True

    async def release(self, order_id: str, holder_id: str) -> bool:
        """Release the caller's live lease. False if it is not (or no longer) held."""
        match await self._release(order_id, holder_id):
            case Ok(_):
                return True
            case Error(_):
                return False

    async def _release(self, order_id: str, holder_id: str) -> Result[None, LockError]:
        now = self._clock()
        try:
            async with self._session_factory() as session:
                released = cast(CursorResult[Any], await session.execute(
                    update(OrderLockRow)
                    .where(
                        OrderLockRow.order_id == order_id,
                        OrderLockRow.holder_id == holder_id,
                        OrderLockRow.released_at.is_(None),
                        OrderLockRow.expires_at > now,
                    )
                    .values(released_at=now)
                ))
                if released.rowcount:
                    await session.commit()
                    self._logger.debug("lock_released", order_id=order_id, holder_id=holder_id)
                    return Ok(None)

                # Our lease ran out; close it if nobody has reaped it yet
                await session.execute(
                    update(OrderLockRow)
                    .where(
                        OrderLockRow.order_id == order_id,
                        OrderLockRow.holder_id == holder_id,
                        OrderLockRow.released_at.is_(None),
                    )
                    .values(released_at=now)
                )
                await session.commit()
        except SQLAlchemyError as e:
            self._logger.error("lock_release_failed", order_id=order_id, error=str(e))
            return Error(LockError(LockErrorKind.STORE_ERROR, str(e), order_id))

        return Error(LockError(
            LockErrorKind.EXPIRED,
            f"Lease on {lock_key(order_id)} expired before release",
            order_id,
        ))

    # ═══════════════════════════════════════════════════════════════════════════
    # renew / holder
    # ═══════════════════════════════════════════════════════════════════════════

    async def renew(
        self,
        order_id: str,
        holder_id: str,
        ttl_seconds: float | None = None,
    ) -> Result[Lease, LockError]:
        """Extend a live lease. EXPIRED if it is gone."""
        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else self._policy.ttl
        now = self._clock()
        try:
            async with self._session_factory() as session:
                renewed = cast(CursorResult[Any], await session.execute(
                    update(OrderLockRow)
                    .where(
                        OrderLockRow.order_id == order_id,
                        OrderLockRow.holder_id == holder_id,
                        OrderLockRow.released_at.is_(None),
                        OrderLockRow.expires_at > now,
                    )
                    .values(
                        expires_at=now + ttl,
                        renewal_count=OrderLockRow.renewal_count + 1,
                    )
                ))
                if not renewed.rowcount:
                    return Error(LockError(
                        LockErrorKind.EXPIRED,
                        f"No live lease on {lock_key(order_id)} for {holder_id}",
                        order_id,
                    ))
                row = (await session.execute(
                    select(OrderLockRow).where(
                        OrderLockRow.order_id == order_id,
                        OrderLockRow.released_at.is_(None),
                    )
                )).scalar_one()
                lease = Lease.from_row(row)
                await session.commit()
                return Ok(lease)
        except SQLAlchemyError as e:
            return Error(LockError(LockErrorKind.STORE_ERROR, str(e), order_id))

    async def holder(self, order_id: str) -> Result[Lease | None, LockError]:
        """Current live lease, if any."""
        now = self._clock()
        try:
            async with self._session_factory() as session:
                row = (await session.execute(
                    select(OrderLockRow).where(
                        OrderLockRow.order_id == order_id,
                        OrderLockRow.released_at.is_(None),
                        OrderLockRow.expires_at > now,
                    )
                )).scalar_one_or_none()
                return Ok(Lease.from_row(row) if row is not None else None)
        except SQLAlchemyError as e:
            return Error(LockError(LockErrorKind.STORE_ERROR, str(e), order_id))

    # ═══════════════════════════════════════════════════════════════════════════
    # locked: bounded retry + guaranteed release
    # ═══════════════════════════════════════════════════════════════════════════

    async def locked[T, E](
        self,
        order_id: str,
        holder_id: str,
        action: Callable[[], Awaitable[Result[T, E]]],
    ) -> Result[T, E | LockError]:
        """
        Run `action` while holding the order's lock.

        Tries `policy.attempts` times, `policy.retry_delay` apart, then
        returns BUSY. Releases only what it acquired.
        """
        delay = self._policy.retry_delay.total_seconds()

        for attempt in range(self._policy.attempts):
            if await self.acquire(order_id, holder_id):
                break
            if attempt + 1 < self._policy.attempts:
                await asyncio.sleep(delay)
        else:
            return Error(await self._busy(order_id))

        try:
            return await action()
        finally:
            match await self._release(order_id, holder_id):
                case Error(LockError(kind=LockErrorKind.EXPIRED) as err):
                    self._logger.warning("lock_expired", order_id=order_id, holder_id=holder_id)
                    if self._audit is not None:
                        await record_quietly(self._audit, AuditEvent(
                            kind=AuditKind.INCIDENT,
                            action="lock_expired",
                            order_id=order_id,
                            actor_id=holder_id,
                            severity=Severity.MEDIUM,
                            details={"message": err.message},
                        ))
                case _:
                    pass

    async def _busy(self, order_id: str) -> LockError:
        match await self.holder(order_id):
            case Ok(Lease() as lease):
                return LockError(
                    LockErrorKind.BUSY,
                    f"{lock_key(order_id)} held by {lease.holder_id}",
                    order_id,
                    holder=lease,
                    retry_after=lease.seconds_remaining(self._clock()),
                )
            case _:
                return LockError(
                    LockErrorKind.BUSY,
                    f"{lock_key(order_id)} not acquired after {self._policy.attempts} attempts",
                    order_id,
                )


__all__ = ("LockManager",)
