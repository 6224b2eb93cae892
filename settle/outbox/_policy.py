"""
Outbox policy — coalescing, retry/backoff, worker sizing.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta


@dataclass(frozen=True, slots=True)
class OutboxPolicy:
    """
    Example:
        policy = (
            OutboxPolicy()
            .with_window(minutes=2)
            .with_retries(3, base_seconds=30, cap_seconds=3600)
            .with_send_timeout(seconds=10)
        )

    Backoff after the n-th failure: min(backoff_base * 2**n, backoff_cap).
    An entry is dead-lettered once retry_count reaches max_retries.
    """

    coalesce_window: timedelta = timedelta(minutes=2)
    max_retries: int = 3
    backoff_base: timedelta = timedelta(seconds=30)
    backoff_cap: timedelta = timedelta(hours=1)
    send_timeout: timedelta = timedelta(seconds=10)
    batch_size: int = 50
    concurrency: int = 4
    poll_interval: timedelta = timedelta(seconds=2)
    stale_after: timedelta = timedelta(minutes=10)

    def backoff(self, retry_count: int) -> timedelta:
        delay = self.backoff_base * (2 ** retry_count)
        return min(delay, self.backoff_cap)

    def with_window(self, *, seconds: float | None = None, minutes: float | None = None) -> OutboxPolicy:
        total = (seconds or 0) + (minutes or 0) * 60
        if total <= 0:
            raise ValueError("coalescing window must be positive")
        return replace(self, coalesce_window=timedelta(seconds=total))

    def with_retries(
        self,
        max_retries: int,
        *,
        base_seconds: float | None = None,
        cap_seconds: float | None = None,
    ) -> OutboxPolicy:
        return replace(
            self,
            max_retries=max_retries,
            backoff_base=timedelta(seconds=base_seconds) if base_seconds is not None else self.backoff_base,
            backoff_cap=timedelta(seconds=cap_seconds) if cap_seconds is not None else self.backoff_cap,
        )

    def with_send_timeout(self, *, seconds: float) -> OutboxPolicy:
        return replace(self, send_timeout=timedelta(seconds=seconds))

    def with_worker(
        self,
        *,
        batch_size: int | None = None,
        concurrency: int | None = None,
        poll_seconds: float | None = None,
        stale_seconds: float | None = None,
    ) -> OutboxPolicy:
        return replace(
            self,
            batch_size=batch_size or self.batch_size,
            concurrency=concurrency or self.concurrency,
            poll_interval=timedelta(seconds=poll_seconds) if poll_seconds else self.poll_interval,
            stale_after=timedelta(seconds=stale_seconds) if stale_seconds else self.stale_after,
        )


__all__ = ("OutboxPolicy",)
