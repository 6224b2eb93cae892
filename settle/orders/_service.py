"""
Order service — admin entry point: take the order lock, then transition.
"""

from __future__ import annotations

import uuid
from typing import cast

from kungfu import Result, Error

from settle.locks import LockError, LockManager
from settle.orders._machine import StateMachine
from settle.orders._types import Order, OrderStatus, TransitionError, TransitionErrorKind


class OrderService:
    def __init__(self, machine: StateMachine, locks: LockManager) -> None:
        self._machine = machine
        self._locks = locks

    async def transition(
        self,
        order_id: str,
        target: OrderStatus | str,
        actor_id: str,
    ) -> Result[Order, TransitionError]:
        return _busy_to_transition(await self._locks.locked(
            order_id,
            _holder(actor_id),
            lambda: self._machine.transition(order_id, target, actor_id),
        ))

    async def assign_agent(
        self,
        order_id: str,
        agent_id: str | None,
        actor_id: str,
    ) -> Result[Order, TransitionError]:
        return _busy_to_transition(await self._locks.locked(
            order_id,
            _holder(actor_id),
            lambda: self._machine.assign_agent(order_id, agent_id, actor_id),
        ))


def _holder(actor_id: str) -> str:
    # Note: one holder id per call, so separate calls by one actor never share a lease
    return f"{actor_id}:{uuid.uuid4().hex[:12]}"


def _busy_to_transition(
    result: Result[Order, TransitionError | LockError],
) -> Result[Order, TransitionError]:
    match result:
        case Error(LockError() as err):
            return Error(TransitionError(
                TransitionErrorKind.BUSY,
                err.message,
                order_id=err.order_id,
            ))
        case _:
            return cast(Result[Order, TransitionError], result)


__all__ = ("OrderService",)
