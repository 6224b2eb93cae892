"""
Transition table — the only source of allowed status changes.

    pending          → confirmed, cancelled, refunded
    confirmed        → preparing, cancelled, refunded
    preparing        → ready, cancelled, refunded
    ready            → out_for_delivery, completed, cancelled, refunded
    out_for_delivery → delivered, cancelled, refunded
    delivered        → completed, refunded
    completed, cancelled, refunded: terminal

Entering out_for_delivery, delivered or completed needs an assigned agent.
"""

from __future__ import annotations

from collections.abc import Mapping

from kungfu import Result, Ok, Error

from settle.orders._types import OrderStatus, TransitionError, TransitionErrorKind

S = OrderStatus

TRANSITIONS: Mapping[OrderStatus, frozenset[OrderStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED, S.REFUNDED}),
    S.CONFIRMED: frozenset({S.PREPARING, S.CANCELLED, S.REFUNDED}),
    S.PREPARING: frozenset({S.READY, S.CANCELLED, S.REFUNDED}),
    S.READY: frozenset({S.OUT_FOR_DELIVERY, S.COMPLETED, S.CANCELLED, S.REFUNDED}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED, S.CANCELLED, S.REFUNDED}),
    S.DELIVERED: frozenset({S.COMPLETED, S.REFUNDED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
}

TERMINAL: frozenset[OrderStatus] = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)

REQUIRES_AGENT: frozenset[OrderStatus] = frozenset({S.OUT_FOR_DELIVERY, S.DELIVERED, S.COMPLETED})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(
    current: OrderStatus,
    target: OrderStatus,
    assigned_agent_id: str | None,
    order_id: str | None = None,
) -> Result[None, TransitionError]:
    """Table lookup first, then the assignment guard."""
    if not can_transition(current, target):
        return Error(TransitionError(
            TransitionErrorKind.INVALID_TRANSITION,
            f"Cannot move from {current} to {target}",
            order_id=order_id,
            current=current,
            target=target,
        ))
    if target in REQUIRES_AGENT and not assigned_agent_id:
        return Error(TransitionError(
            TransitionErrorKind.MISSING_ASSIGNMENT,
            f"{target} requires an assigned agent",
            order_id=order_id,
            current=current,
            target=target,
        ))
    return Ok(None)


__all__ = (
    "TRANSITIONS",
    "TERMINAL",
    "REQUIRES_AGENT",
    "can_transition",
    "check_transition",
)
