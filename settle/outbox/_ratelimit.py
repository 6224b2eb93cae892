"""
Tiered rate limiting per recipient key (email domain / phone number).

    score ≥ 0.8  trusted      100/hour  500/day
    score ≥ 0.5  standard      50/hour  200/day
    otherwise    restricted     5/hour   10/day

Counters live on fixed hour/day windows and reset when the window rolls
over. The increment is a single conditional UPDATE, so concurrent workers
can never push a key past its quota.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, cast

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError

from kungfu import Result, Ok, Error

from settle._types import Clock, system_clock
from settle.db import RecipientReputationRow, SessionFactory, insert_for
from settle.outbox._dedupe import recipient_key
from settle.outbox._types import OutboxError, OutboxErrorKind


# ═══════════════════════════════════════════════════════════════════════════════
# Policy
# ═══════════════════════════════════════════════════════════════════════════════

class Tier(StrEnum):
    TRUSTED = "trusted"
    STANDARD = "standard"
    RESTRICTED = "restricted"


@dataclass(frozen=True, slots=True)
class Quota:
    per_hour: int
    per_day: int


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    trusted_threshold: float = 0.8
    standard_threshold: float = 0.5
    trusted: Quota = Quota(per_hour=100, per_day=500)
    standard: Quota = Quota(per_hour=50, per_day=200)
    restricted: Quota = Quota(per_hour=5, per_day=10)
    initial_score: float = 0.6
    success_step: float = 0.01
    failure_step: float = 0.05

    def tier(self, score: float) -> Tier:
        if score >= self.trusted_threshold:
            return Tier.TRUSTED
        if score >= self.standard_threshold:
            return Tier.STANDARD
        return Tier.RESTRICTED

    def quota(self, tier: Tier) -> Quota:
        match tier:
            case Tier.TRUSTED:
                return self.trusted
            case Tier.STANDARD:
                return self.standard
            case Tier.RESTRICTED:
                return self.restricted

    def with_quota(self, tier: Tier, *, per_hour: int, per_day: int) -> RateLimitPolicy:
        return replace(self, **{tier.value: Quota(per_hour=per_hour, per_day=per_day)})

    def with_initial_score(self, score: float) -> RateLimitPolicy:
        if not 0.0 <= score <= 1.0:
            raise ValueError("score must be within [0, 1]")
        return replace(self, initial_score=score)


@dataclass(frozen=True, slots=True)
class Reputation:
    recipient_key: str
    score: float
    tier: Tier
    hour_count: int
    day_count: int


def _hour_start(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def _day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


# ═══════════════════════════════════════════════════════════════════════════════
# Limiter
# ═══════════════════════════════════════════════════════════════════════════════

class RateLimiter:
    def __init__(
        self,
        session_factory: SessionFactory,
        policy: RateLimitPolicy = RateLimitPolicy(),
        clock: Clock = system_clock,
    ) -> None:
        self._session_factory = session_factory
        self._policy = policy
        self._clock = clock
        self._logger = structlog.get_logger().bind(component="rate_limiter")

    @property
    def policy(self) -> RateLimitPolicy:
        return self._policy

    async def check(self, recipient: str) -> Result[None, OutboxError]:
        """Consume one unit of the recipient key's quota, or RATE_LIMITED."""
        key = recipient_key(recipient)
        now = self._clock()
        hour, day = _hour_start(now), _day_start(now)

        try:
            async with self._session_factory() as session:
                await session.execute(
                    insert_for(session, RecipientReputationRow)
                    .values(
                        recipient_key=key,
                        score=self._policy.initial_score,
                        hour_window_start=hour,
                        hour_count=0,
                        day_window_start=day,
                        day_count=0,
                        updated_at=now,
                    )
                    .on_conflict_do_nothing(index_elements=["recipient_key"])
                )
                await session.execute(
                    update(RecipientReputationRow)
                    .where(
                        RecipientReputationRow.recipient_key == key,
                        RecipientReputationRow.hour_window_start < hour,
                    )
                    .values(hour_window_start=hour, hour_count=0)
                )
                await session.execute(
                    update(RecipientReputationRow)
                    .where(
                        RecipientReputationRow.recipient_key == key,
                        RecipientReputationRow.day_window_start < day,
                    )
                    .values(day_window_start=day, day_count=0)
                )

                row = (await session.execute(
                    select(RecipientReputationRow)
                    .where(RecipientReputationRow.recipient_key == key)
                    .execution_options(populate_existing=True)
                )).scalar_one()
                tier = self._policy.tier(row.score)
                quota = self._policy.quota(tier)

                consumed = cast(CursorResult[Any], await session.execute(
                    update(RecipientReputationRow)
                    .where(
                        RecipientReputationRow.recipient_key == key,
                        RecipientReputationRow.hour_count < quota.per_hour,
                        RecipientReputationRow.day_count < quota.per_day,
                    )
                    .values(
                        hour_count=RecipientReputationRow.hour_count + 1,
                        day_count=RecipientReputationRow.day_count + 1,
                        updated_at=now,
                    )
                ))
                await session.commit()
        except SQLAlchemyError as e:
            self._logger.error("rate_limit_check_failed", recipient_key=key, error=str(e))
            return Error(OutboxError(OutboxErrorKind.STORE_ERROR, str(e)))

        if consumed.rowcount:
            return Ok(None)

        if row.hour_count >= quota.per_hour:
            window, retry_after = "hour", (hour + timedelta(hours=1) - now).total_seconds()
        else:
            window, retry_after = "day", (day + timedelta(days=1) - now).total_seconds()

        self._logger.warning("rate_limited", recipient_key=key, tier=tier.value, window=window)
        return Error(OutboxError(
            OutboxErrorKind.RATE_LIMITED,
            f"{tier.value} quota for {key} exhausted for this {window}",
            retry_after=retry_after,
        ))

    async def record_outcome(self, recipient: str, *, delivered: bool) -> None:
        """Nudge the key's score, clamped to [0, 1]. Failures here are logged only."""
        key = recipient_key(recipient)
        step = self._policy.success_step if delivered else -self._policy.failure_step
        nudged = RecipientReputationRow.score + step
        try:
            async with self._session_factory() as session:
                # one statement, so concurrent outcomes for a key all count
                await session.execute(
                    update(RecipientReputationRow)
                    .where(RecipientReputationRow.recipient_key == key)
                    .values(
                        score=case((nudged > 1.0, 1.0), (nudged < 0.0, 0.0), else_=nudged),
                        updated_at=self._clock(),
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            self._logger.warning("reputation_update_failed", recipient_key=key, error=str(e))

    async def reputation(self, recipient: str) -> Reputation | None:
        key = recipient_key(recipient)
        async with self._session_factory() as session:
            row = await session.get(RecipientReputationRow, key)
            if row is None:
                return None
            return Reputation(
                recipient_key=key,
                score=row.score,
                tier=self._policy.tier(row.score),
                hour_count=row.hour_count,
                day_count=row.day_count,
            )


__all__ = (
    "Tier",
    "Quota",
    "RateLimitPolicy",
    "Reputation",
    "RateLimiter",
)
