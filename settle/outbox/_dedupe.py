"""
Dedupe keys and recipient normalization.

    dedupe_key = "{order_id}:{event_type}:{recipient}:{window}"

window is the current time truncated to the coalescing interval, so
repeated triggers inside one interval share a key.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta

from settle.outbox._types import Channel

_EPOCH = datetime(1970, 1, 1)
_PHONE_NOISE = re.compile(r"[\s\-().]")


def channel_for(recipient: str) -> Channel:
    return Channel.EMAIL if "@" in recipient else Channel.SMS


def normalize_recipient(recipient: str | None) -> str:
    """Lower-cased email, or phone number without separators. Empty if blank."""
    if not recipient:
        return ""
    value = recipient.strip()
    if "@" in value:
        return value.lower()
    return _PHONE_NOISE.sub("", value)


def recipient_key(recipient: str) -> str:
    """What the rate limiter counts against: the email domain or the phone number."""
    normalized = normalize_recipient(recipient)
    if "@" in normalized:
        return normalized.rsplit("@", 1)[1]
    return normalized


def window_bucket(now: datetime, window: timedelta) -> int:
    return int((now - _EPOCH).total_seconds() // window.total_seconds())


def dedupe_key(
    order_id: str,
    event_type: str,
    recipient: str,
    now: datetime,
    window: timedelta,
) -> str:
    return f"{order_id}:{event_type}:{normalize_recipient(recipient)}:{window_bucket(now, window)}"


__all__ = (
    "channel_for",
    "normalize_recipient",
    "recipient_key",
    "window_bucket",
    "dedupe_key",
)
