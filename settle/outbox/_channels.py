"""
Channel senders and the suppression list — external collaborators.

The outbox only consumes the result contract; provider wire protocols
live behind these protocols.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from settle.outbox._dedupe import normalize_recipient
from settle.outbox._types import SendFailed, SendOk, SendResult


class ChannelSender(Protocol):
    async def send(
        self,
        recipient: str,
        template_key: str,
        variables: dict[str, Any],
    ) -> SendResult: ...


class SuppressionList(Protocol):
    async def is_suppressed(self, recipient: str) -> bool: ...


# ═══════════════════════════════════════════════════════════════════════════════
# In-memory implementations
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class SentMessage:
    recipient: str
    template_key: str
    variables: dict[str, Any]
    provider_message_id: str


class MemorySender:
    """
    Records sends. Scripted failures are consumed first:

        sender = MemorySender(failures=["smtp 451", "smtp 451"])
        # two failures, then successes

    `delay` makes every send sleep first (for timeout tests).
    """

    def __init__(
        self,
        *,
        failures: Iterable[str] = (),
        always_fail: str | None = None,
        delay: float = 0.0,
    ) -> None:
        self._failures = list(failures)
        self._always_fail = always_fail
        self._delay = delay
        self._ids = itertools.count(1)
        self.sent: list[SentMessage] = []
        self.attempts = 0

    async def send(
        self,
        recipient: str,
        template_key: str,
        variables: dict[str, Any],
    ) -> SendResult:
        self.attempts += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._always_fail is not None:
            return SendFailed(self._always_fail)
        if self._failures:
            return SendFailed(self._failures.pop(0))

        message_id = f"msg_{next(self._ids)}"
        self.sent.append(SentMessage(recipient, template_key, dict(variables), message_id))
        return SendOk(message_id)


class StaticSuppressionList:
    def __init__(self, recipients: Iterable[str] = ()) -> None:
        self._suppressed = {normalize_recipient(r) for r in recipients}

    def add(self, recipient: str) -> None:
        self._suppressed.add(normalize_recipient(recipient))

    async def is_suppressed(self, recipient: str) -> bool:
        return normalize_recipient(recipient) in self._suppressed


__all__ = (
    "ChannelSender",
    "SuppressionList",
    "SentMessage",
    "MemorySender",
    "StaticSuppressionList",
)
