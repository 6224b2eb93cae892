"""
Order state machine — validates and applies status transitions.

    apply(session, ...)      inside a caller-owned session (reconciliation)
    transition(...)          own session: apply → commit → publish
    publish(event)           audit entry + observers, after commit

Every write is one conditional UPDATE guarded by the status we read:

    UPDATE orders SET status = :target
     WHERE id = :id AND status = :observed

A concurrent change makes it match nothing; we re-read, re-validate
against the table and try again, a bounded number of times.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, cast

import structlog
from sqlalchemy import select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kungfu import Result, Ok, Error

from settle._types import Clock, system_clock
from settle.audit import AuditEvent, AuditKind, AuditSink, record_quietly
from settle.db import OrderRow, SessionFactory
from settle.orders._table import REQUIRES_AGENT, TERMINAL, check_transition
from settle.orders._types import (
    Order,
    OrderStatus,
    Transition,
    TransitionError,
    TransitionErrorKind,
    TransitionEvent,
)


type Observer = Callable[[TransitionEvent], Awaitable[None]]


async def load_order(session: AsyncSession, order_id: str) -> OrderRow | None:
    """Fresh read; bypasses whatever the identity map already holds."""
    return (await session.execute(
        select(OrderRow)
        .where(OrderRow.id == order_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


class StateMachine:
    def __init__(
        self,
        session_factory: SessionFactory,
        audit: AuditSink,
        clock: Clock = system_clock,
        max_attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._clock = clock
        self._max_attempts = max_attempts
        self._observers: list[Observer] = []
        self._logger = structlog.get_logger().bind(component="state_machine")

    def subscribe(self, observer: Observer) -> None:
        """Called after every committed status change, in subscription order."""
        self._observers.append(observer)

    # ═══════════════════════════════════════════════════════════════════════════
    # apply: inside a caller's session
    # ═══════════════════════════════════════════════════════════════════════════

    async def apply(
        self,
        session: AsyncSession,
        order_id: str,
        target: OrderStatus,
        actor_id: str,
    ) -> Result[Transition, TransitionError]:
        """
        Validate and write one transition. Does not commit.

        Same-status calls return Ok(Transition(event=None)).
        """
        for _ in range(self._max_attempts):
            row = await load_order(session, order_id)
            if row is None:
                return Error(TransitionError(
                    TransitionErrorKind.NOT_FOUND, f"Order {order_id} not found", order_id=order_id
                ))

            current = OrderStatus(row.status)
            if current == target:
                return Ok(Transition(order=Order.from_row(row), event=None))

            match check_transition(current, target, row.assigned_agent_id, order_id):
                case Error(err):
                    return Error(err)
                case Ok(_):
                    pass

            now = self._clock()
            stmt = (
                update(OrderRow)
                .where(OrderRow.id == order_id, OrderRow.status == current.value)
                .values(status=target.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if target in REQUIRES_AGENT:
                stmt = stmt.where(OrderRow.assigned_agent_id.is_not(None))

            cursor = cast(CursorResult[Any], await session.execute(stmt))
            if cursor.rowcount == 1:
                fresh = await load_order(session, order_id)
                if fresh is None:
                    return Error(_vanished(order_id))
                order = Order.from_row(fresh)
                return Ok(Transition(
                    order=order,
                    event=TransitionEvent(
                        order=order, previous=current, actor_id=actor_id, occurred_at=now
                    ),
                ))

            self._logger.info(
                "status_changed_underneath",
                order_id=order_id,
                observed=current.value,
                target=target.value,
            )

        return Error(TransitionError(
            TransitionErrorKind.CONCURRENT_UPDATE,
            f"Order {order_id} kept changing; gave up after {self._max_attempts} attempts",
            order_id=order_id,
            target=target,
        ))

    # ═══════════════════════════════════════════════════════════════════════════
    # transition: standalone
    # ═══════════════════════════════════════════════════════════════════════════

    async def transition(
        self,
        order_id: str,
        target: OrderStatus | str,
        actor_id: str,
    ) -> Result[Order, TransitionError]:
        try:
            target = OrderStatus(target)
        except ValueError:
            return Error(TransitionError(
                TransitionErrorKind.INVALID_TRANSITION,
                f"Unknown status {target!r}",
                order_id=order_id,
            ))

        try:
            async with self._session_factory() as session:
                match await self.apply(session, order_id, target, actor_id):
                    case Error(err):
                        self._logger.info(
                            "transition_rejected",
                            order_id=order_id,
                            target=target.value,
                            actor_id=actor_id,
                            reason=err.kind.name,
                        )
                        return Error(err)
                    case Ok(applied):
                        await session.commit()
        except SQLAlchemyError as e:
            self._logger.error("transition_failed", order_id=order_id, error=str(e))
            return Error(TransitionError(
                TransitionErrorKind.STORE_ERROR, str(e), order_id=order_id, target=target
            ))

        if applied.event is not None:
            await self.publish(applied.event)
        return Ok(applied.order)

    async def publish(self, event: TransitionEvent) -> None:
        """Audit + observers for a committed transition. Never raises."""
        self._logger.info(
            "order_status_changed",
            order_id=event.order.id,
            previous=event.previous.value,
            status=event.target.value,
            actor_id=event.actor_id,
        )
        await record_quietly(self._audit, AuditEvent(
            kind=AuditKind.TRANSITION,
            action="order_status_changed",
            order_id=event.order.id,
            actor_id=event.actor_id,
            details={"from": event.previous.value, "to": event.target.value},
            created_at=event.occurred_at,
        ))

        for observer in self._observers:
            try:
                await observer(event)
            except Exception:
                self._logger.exception(
                    "observer_failed",
                    order_id=event.order.id,
                    status=event.target.value,
                    observer=getattr(observer, "__name__", type(observer).__name__),
                )

    # ═══════════════════════════════════════════════════════════════════════════
    # assign_agent
    # ═══════════════════════════════════════════════════════════════════════════

    async def assign_agent(
        self,
        order_id: str,
        agent_id: str | None,
        actor_id: str,
    ) -> Result[Order, TransitionError]:
        """Set (or clear) the delivery agent. Refused on terminal orders."""
        now = self._clock()
        try:
            async with self._session_factory() as session:
                row = await load_order(session, order_id)
                if row is None:
                    return Error(TransitionError(
                        TransitionErrorKind.NOT_FOUND, f"Order {order_id} not found", order_id=order_id
                    ))
                current = OrderStatus(row.status)
                if current in TERMINAL:
                    return Error(TransitionError(
                        TransitionErrorKind.INVALID_TRANSITION,
                        f"Order {order_id} is {current}; assignment is closed",
                        order_id=order_id,
                        current=current,
                    ))

                cursor = cast(CursorResult[Any], await session.execute(
                    update(OrderRow)
                    .where(OrderRow.id == order_id, OrderRow.status == current.value)
                    .values(assigned_agent_id=agent_id, updated_at=now)
                    .execution_options(synchronize_session=False)
                ))
                if cursor.rowcount != 1:
                    return Error(TransitionError(
                        TransitionErrorKind.CONCURRENT_UPDATE,
                        f"Order {order_id} changed during assignment",
                        order_id=order_id,
                    ))
                fresh = await load_order(session, order_id)
                if fresh is None:
                    return Error(_vanished(order_id))
                await session.commit()
        except SQLAlchemyError as e:
            return Error(TransitionError(TransitionErrorKind.STORE_ERROR, str(e), order_id=order_id))

        await record_quietly(self._audit, AuditEvent(
            kind=AuditKind.TRANSITION,
            action="order_agent_assigned",
            order_id=order_id,
            actor_id=actor_id,
            details={"agent_id": agent_id},
            created_at=now,
        ))
        return Ok(Order.from_row(fresh))


def _vanished(order_id: str) -> TransitionError:
    return TransitionError(
        TransitionErrorKind.STORE_ERROR,
        f"Order {order_id} was updated but could not be read back",
        order_id=order_id,
    )


__all__ = (
    "Observer",
    "StateMachine",
    "load_order",
)
