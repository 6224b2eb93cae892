"""
Notification triggers — a state machine observer that fills the outbox.

    machine.subscribe(TransitionNotifier(outbox, admin_recipient="ops@shop.example"))
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from kungfu import Ok, Error

from settle.orders import OrderStatus, TransitionEvent
from settle.outbox._outbox import Outbox
from settle.outbox._types import OutboxError, OutboxErrorKind, Priority


@dataclass(frozen=True, slots=True)
class Trigger:
    event_type: str
    template_key: str
    priority: Priority = Priority.NORMAL


CUSTOMER_TRIGGERS: Mapping[OrderStatus, Trigger] = {
    OrderStatus.CONFIRMED: Trigger("order_confirmed", "payment_confirmation", Priority.HIGH),
    OrderStatus.PREPARING: Trigger("order_preparing", "order_preparing"),
    OrderStatus.READY: Trigger("order_ready", "order_ready"),
    OrderStatus.OUT_FOR_DELIVERY: Trigger("order_out_for_delivery", "order_out_for_delivery"),
    OrderStatus.DELIVERED: Trigger("order_delivered", "order_delivered"),
    OrderStatus.COMPLETED: Trigger("order_completed", "order_completed", Priority.LOW),
    OrderStatus.CANCELLED: Trigger("order_cancelled", "order_cancelled", Priority.HIGH),
    OrderStatus.REFUNDED: Trigger("order_refunded", "order_refunded", Priority.HIGH),
}

ADMIN_TRIGGERS: Mapping[OrderStatus, Trigger] = {
    OrderStatus.CANCELLED: Trigger("admin_order_cancelled", "admin_order_cancelled", Priority.HIGH),
    OrderStatus.REFUNDED: Trigger("admin_order_refunded", "admin_order_refunded", Priority.HIGH),
}


class TransitionNotifier:
    def __init__(
        self,
        outbox: Outbox,
        *,
        admin_recipient: str | None = None,
        sms: bool = True,
    ) -> None:
        self._outbox = outbox
        self._admin_recipient = admin_recipient
        self._sms = sms
        self._logger = structlog.get_logger().bind(component="transition_notifier")

    async def __call__(self, event: TransitionEvent) -> None:
        order = event.order
        variables = _variables(event)

        trigger = CUSTOMER_TRIGGERS.get(event.target)
        if trigger is not None:
            recipients = [order.customer_email]
            if self._sms:
                recipients.append(order.customer_phone)
            for recipient in recipients:
                if recipient:
                    await self._enqueue(trigger, order.id, recipient, variables)

        admin = ADMIN_TRIGGERS.get(event.target)
        if admin is not None and self._admin_recipient:
            await self._enqueue(admin, order.id, self._admin_recipient, variables)

    async def _enqueue(
        self,
        trigger: Trigger,
        order_id: str,
        recipient: str,
        variables: dict[str, Any],
    ) -> None:
        match await self._outbox.enqueue(
            trigger.event_type,
            order_id,
            recipient,
            trigger.template_key,
            variables,
            trigger.priority,
        ):
            case Ok(_):
                pass
            case Error(OutboxError(kind=OutboxErrorKind.INVALID_RECIPIENT)):
                self._logger.debug("notification_skipped", order_id=order_id, event_type=trigger.event_type)
            case Error(err):
                self._logger.warning(
                    "notification_enqueue_failed",
                    order_id=order_id,
                    event_type=trigger.event_type,
                    error=err.message,
                )


def _variables(event: TransitionEvent) -> dict[str, Any]:
    order = event.order
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": event.target.value,
        "previous_status": event.previous.value,
        "total_amount": str(order.total_amount),
        "order_type": order.order_type.value,
    }


__all__ = (
    "Trigger",
    "CUSTOMER_TRIGGERS",
    "ADMIN_TRIGGERS",
    "TransitionNotifier",
)
