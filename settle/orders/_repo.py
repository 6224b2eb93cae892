"""
Order repository — creation and reads.

Status fields are not written here; they move only through StateMachine
and the reconciliation engine.
"""

from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from kungfu import Result, Ok, Error

from settle._types import Clock, system_clock
from settle.db import OrderRow, SessionFactory
from settle.orders._types import (
    Order,
    OrderStatus,
    OrderType,
    PaymentStatus,
    TransitionError,
    TransitionErrorKind,
)


class OrderRepository:
    def __init__(self, session_factory: SessionFactory, clock: Clock = system_clock) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def create(
        self,
        *,
        total_amount: Decimal | str | int,
        order_number: str | None = None,
        payment_reference: str | None = None,
        order_type: OrderType = OrderType.DELIVERY,
        customer_email: str | None = None,
        customer_phone: str | None = None,
        assigned_agent_id: str | None = None,
        order_id: str | None = None,
    ) -> Result[Order, TransitionError]:
        """Insert a new pending order (checkout side)."""
        now = self._clock()
        order_id = order_id or str(uuid.uuid4())
        row = OrderRow(
            id=order_id,
            order_number=order_number or f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}",
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            total_amount=Decimal(str(total_amount)),
            payment_reference=payment_reference,
            assigned_agent_id=assigned_agent_id,
            order_type=order_type.value,
            customer_email=customer_email,
            customer_phone=customer_phone,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
            return Ok(Order.from_row(row))
        except SQLAlchemyError as e:
            return Error(TransitionError(TransitionErrorKind.STORE_ERROR, str(e), order_id=order_id))

    async def get(self, order_id: str) -> Result[Order, TransitionError]:
        try:
            async with self._session_factory() as session:
                row = (await session.execute(
                    select(OrderRow).where(OrderRow.id == order_id)
                )).scalar_one_or_none()
        except SQLAlchemyError as e:
            return Error(TransitionError(TransitionErrorKind.STORE_ERROR, str(e), order_id=order_id))

        if row is None:
            return Error(TransitionError(
                TransitionErrorKind.NOT_FOUND, f"Order {order_id} not found", order_id=order_id
            ))
        return Ok(Order.from_row(row))


__all__ = ("OrderRepository",)
