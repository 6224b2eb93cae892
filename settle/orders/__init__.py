"""
Orders — status state machine with guarded transitions.

    from settle import orders as O

    machine = O.StateMachine(session_factory, audit=sink)
    machine.subscribe(notifier)

    match await machine.transition(order_id, O.OrderStatus.PREPARING, actor_id="admin-7"):
        case Ok(order): ...
        case Error(O.TransitionError(kind=O.TransitionErrorKind.MISSING_ASSIGNMENT)): ...

    # Admin path, serialized by the order lock:
    service = O.OrderService(machine, lock_manager)
"""

from settle.orders._types import (
    OrderStatus,
    PaymentStatus,
    OrderType,
    Order,
    TransitionEvent,
    Transition,
    TransitionErrorKind,
    TransitionError,
)
from settle.orders._table import (
    TRANSITIONS,
    TERMINAL,
    REQUIRES_AGENT,
    can_transition,
    check_transition,
)
from settle.orders._repo import OrderRepository
from settle.orders._machine import (
    Observer,
    StateMachine,
    load_order,
)
from settle.orders._service import OrderService

__all__ = (
    # Types
    "OrderStatus",
    "PaymentStatus",
    "OrderType",
    "Order",
    "TransitionEvent",
    "Transition",
    "TransitionErrorKind",
    "TransitionError",
    # Table
    "TRANSITIONS",
    "TERMINAL",
    "REQUIRES_AGENT",
    "can_transition",
    "check_transition",
    # Components
    "OrderRepository",
    "Observer",
    "StateMachine",
    "load_order",
    "OrderService",
)
