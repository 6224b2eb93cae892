"""
Outbox — deduplicated, retried, rate-limited customer/admin notifications.

    from settle import outbox as O

    box = O.Outbox(session_factory)
    await box.enqueue("order_confirmed", order.id, "ada@example.com", "payment_confirmation",
                      {"order_number": order.order_number}, O.Priority.HIGH)

    worker = O.OutboxWorker(
        session_factory,
        senders={O.Channel.EMAIL: email_sender, O.Channel.SMS: sms_sender},
        suppression=suppression_list,
        limiter=O.RateLimiter(session_factory),
    )
    report = await worker.drain()

    # Wire to the state machine
    machine.subscribe(O.TransitionNotifier(box, admin_recipient="ops@shop.example"))
"""

from settle.outbox._types import (
    EntryStatus,
    Priority,
    Channel,
    OutboxEntry,
    DeadLetterEntry,
    EnqueueResult,
    SendOk,
    SendFailed,
    SendResult,
    Delivery,
    DrainReport,
    OutboxErrorKind,
    OutboxError,
)
from settle.outbox._policy import OutboxPolicy
from settle.outbox._dedupe import (
    channel_for,
    normalize_recipient,
    recipient_key,
    window_bucket,
    dedupe_key,
)
from settle.outbox._channels import (
    ChannelSender,
    SuppressionList,
    SentMessage,
    MemorySender,
    StaticSuppressionList,
)
from settle.outbox._ratelimit import (
    Tier,
    Quota,
    RateLimitPolicy,
    Reputation,
    RateLimiter,
)
from settle.outbox._outbox import Outbox
from settle.outbox._worker import OutboxWorker
from settle.outbox._notify import (
    Trigger,
    CUSTOMER_TRIGGERS,
    ADMIN_TRIGGERS,
    TransitionNotifier,
)

__all__ = (
    # Types
    "EntryStatus",
    "Priority",
    "Channel",
    "OutboxEntry",
    "DeadLetterEntry",
    "EnqueueResult",
    "SendOk",
    "SendFailed",
    "SendResult",
    "Delivery",
    "DrainReport",
    "OutboxErrorKind",
    "OutboxError",
    # Policy
    "OutboxPolicy",
    # Dedupe
    "channel_for",
    "normalize_recipient",
    "recipient_key",
    "window_bucket",
    "dedupe_key",
    # Channels
    "ChannelSender",
    "SuppressionList",
    "SentMessage",
    "MemorySender",
    "StaticSuppressionList",
    # Rate limiting
    "Tier",
    "Quota",
    "RateLimitPolicy",
    "Reputation",
    "RateLimiter",
    # Components
    "Outbox",
    "OutboxWorker",
    "Trigger",
    "CUSTOMER_TRIGGERS",
    "ADMIN_TRIGGERS",
    "TransitionNotifier",
)
