"""
Webhook — validated, idempotent entry point for gateway payment events.

    from settle import webhook as W

    handler = W.WebhookHandler(engine, SQLAlchemyStore(session_factory))

    event = W.GatewayEvent.from_charge(body)
    if event is not None:
        ack = await handler.handle(request_id, event)
        # ack.accepted → 200; ack.retry → ask the gateway to resend
"""

from settle.webhook._models import (
    GatewayMetadata,
    GatewayEvent,
    Acknowledgement,
)
from settle.webhook._handler import (
    WebhookDelivery,
    WebhookHandler,
)

__all__ = (
    "GatewayMetadata",
    "GatewayEvent",
    "Acknowledgement",
    "WebhookDelivery",
    "WebhookHandler",
)
