"""
Runtime configuration — SETTLE_* environment variables → policies.

    settings = Settings.from_env()
    locks = LockManager(session_factory, settings.lock_policy())

Every variable is optional; defaults match the policy defaults.

    SETTLE_DATABASE_URL             sqlite+aiosqlite:///./settle.db
    SETTLE_LOG_LEVEL                INFO
    SETTLE_LOG_JSON                 true
    SETTLE_ADMIN_RECIPIENT          (unset: no admin notifications)
    SETTLE_LOCK_TTL_SECONDS         30
    SETTLE_LOCK_ATTEMPTS            5
    SETTLE_LOCK_RETRY_DELAY_MS      200
    SETTLE_IDEMPOTENCY_TTL_HOURS    24
    SETTLE_IDEMPOTENCY_PROCESSING_TTL_SECONDS  300
    SETTLE_AMOUNT_TOLERANCE         0.01
    SETTLE_RECONCILE_BATCH_SIZE     100
    SETTLE_RECONCILE_CONCURRENCY    4
    SETTLE_RECONCILE_INTERVAL_SECONDS  300
    SETTLE_OUTBOX_WINDOW_SECONDS    120
    SETTLE_OUTBOX_MAX_RETRIES       3
    SETTLE_OUTBOX_BACKOFF_BASE_SECONDS  30
    SETTLE_OUTBOX_BACKOFF_CAP_SECONDS   3600
    SETTLE_OUTBOX_SEND_TIMEOUT_SECONDS  10
    SETTLE_OUTBOX_BATCH_SIZE        50
    SETTLE_OUTBOX_CONCURRENCY       4
    SETTLE_OUTBOX_POLL_SECONDS      2
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from settle.idempotency import Policy
from settle.locks import LockPolicy
from settle.outbox import OutboxPolicy, RateLimitPolicy
from settle.payments import ReconcilePolicy


PREFIX = "SETTLE_"

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


class ConfigError(ValueError):
    """A SETTLE_* variable could not be parsed."""


@dataclass(frozen=True, slots=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./settle.db"
    log_level: str = "INFO"
    log_json: bool = True
    admin_recipient: str | None = None

    lock_ttl_seconds: float = 30
    lock_attempts: int = 5
    lock_retry_delay_ms: float = 200

    idempotency_ttl_hours: float = 24
    idempotency_processing_ttl_seconds: float = 300

    amount_tolerance: Decimal = Decimal("0.01")
    reconcile_batch_size: int = 100
    reconcile_concurrency: int = 4
    reconcile_interval_seconds: float = 300

    outbox_window_seconds: float = 120
    outbox_max_retries: int = 3
    outbox_backoff_base_seconds: float = 30
    outbox_backoff_cap_seconds: float = 3600
    outbox_send_timeout_seconds: float = 10
    outbox_batch_size: int = 50
    outbox_concurrency: int = 4
    outbox_poll_seconds: float = 2

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        reader = _Reader(env)
        defaults = cls()

        return cls(
            database_url=reader.text("DATABASE_URL", defaults.database_url),
            log_level=reader.text("LOG_LEVEL", defaults.log_level).upper(),
            log_json=reader.flag("LOG_JSON", defaults.log_json),
            admin_recipient=reader.text("ADMIN_RECIPIENT", "") or None,
            lock_ttl_seconds=reader.number("LOCK_TTL_SECONDS", defaults.lock_ttl_seconds),
            lock_attempts=reader.integer("LOCK_ATTEMPTS", defaults.lock_attempts),
            lock_retry_delay_ms=reader.number("LOCK_RETRY_DELAY_MS", defaults.lock_retry_delay_ms),
            idempotency_ttl_hours=reader.number("IDEMPOTENCY_TTL_HOURS", defaults.idempotency_ttl_hours),
            idempotency_processing_ttl_seconds=reader.number(
                "IDEMPOTENCY_PROCESSING_TTL_SECONDS", defaults.idempotency_processing_ttl_seconds
            ),
            amount_tolerance=reader.decimal("AMOUNT_TOLERANCE", defaults.amount_tolerance),
            reconcile_batch_size=reader.integer("RECONCILE_BATCH_SIZE", defaults.reconcile_batch_size),
            reconcile_concurrency=reader.integer("RECONCILE_CONCURRENCY", defaults.reconcile_concurrency),
            reconcile_interval_seconds=reader.number(
                "RECONCILE_INTERVAL_SECONDS", defaults.reconcile_interval_seconds
            ),
            outbox_window_seconds=reader.number("OUTBOX_WINDOW_SECONDS", defaults.outbox_window_seconds),
            outbox_max_retries=reader.integer("OUTBOX_MAX_RETRIES", defaults.outbox_max_retries),
            outbox_backoff_base_seconds=reader.number(
                "OUTBOX_BACKOFF_BASE_SECONDS", defaults.outbox_backoff_base_seconds
            ),
            outbox_backoff_cap_seconds=reader.number(
                "OUTBOX_BACKOFF_CAP_SECONDS", defaults.outbox_backoff_cap_seconds
            ),
            outbox_send_timeout_seconds=reader.number(
                "OUTBOX_SEND_TIMEOUT_SECONDS", defaults.outbox_send_timeout_seconds
            ),
            outbox_batch_size=reader.integer("OUTBOX_BATCH_SIZE", defaults.outbox_batch_size),
            outbox_concurrency=reader.integer("OUTBOX_CONCURRENCY", defaults.outbox_concurrency),
            outbox_poll_seconds=reader.number("OUTBOX_POLL_SECONDS", defaults.outbox_poll_seconds),
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # Policies
    # ═══════════════════════════════════════════════════════════════════════════

    def lock_policy(self) -> LockPolicy:
        return (
            LockPolicy()
            .with_ttl(seconds=self.lock_ttl_seconds)
            .with_retry(attempts=self.lock_attempts, delay_ms=self.lock_retry_delay_ms)
        )

    def idempotency_policy(self) -> Policy:
        return (
            Policy()
            .with_ttl(hours=self.idempotency_ttl_hours)
            .with_processing_ttl(seconds=self.idempotency_processing_ttl_seconds)
        )

    def reconcile_policy(self) -> ReconcilePolicy:
        return (
            ReconcilePolicy()
            .with_tolerance(self.amount_tolerance)
            .with_batch(
                size=self.reconcile_batch_size,
                concurrency=self.reconcile_concurrency,
                interval_seconds=self.reconcile_interval_seconds,
            )
        )

    def outbox_policy(self) -> OutboxPolicy:
        return (
            OutboxPolicy()
            .with_window(seconds=self.outbox_window_seconds)
            .with_retries(
                self.outbox_max_retries,
                base_seconds=self.outbox_backoff_base_seconds,
                cap_seconds=self.outbox_backoff_cap_seconds,
            )
            .with_send_timeout(seconds=self.outbox_send_timeout_seconds)
            .with_worker(
                batch_size=self.outbox_batch_size,
                concurrency=self.outbox_concurrency,
                poll_seconds=self.outbox_poll_seconds,
            )
        )

    def rate_limit_policy(self) -> RateLimitPolicy:
        return RateLimitPolicy()


class _Reader:
    def __init__(self, env: Mapping[str, str]) -> None:
        self._env = env

    def _raw(self, name: str) -> str | None:
        value = self._env.get(PREFIX + name)
        if value is None or not value.strip():
            return None
        return value.strip()

    def text(self, name: str, default: str) -> str:
        return self._raw(name) or default

    def flag(self, name: str, default: bool) -> bool:
        raw = self._raw(name)
        if raw is None:
            return default
        if raw.lower() in _TRUE:
            return True
        if raw.lower() in _FALSE:
            return False
        raise ConfigError(f"{PREFIX}{name}: expected a boolean, got {raw!r}")

    def integer(self, name: str, default: int) -> int:
        raw = self._raw(name)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{PREFIX}{name}: expected an integer, got {raw!r}") from None

    def number(self, name: str, default: float) -> float:
        raw = self._raw(name)
        if raw is None:
            return default
        try:
            return float(raw)
        except ValueError:
            raise ConfigError(f"{PREFIX}{name}: expected a number, got {raw!r}") from None

    def decimal(self, name: str, default: Decimal) -> Decimal:
        raw = self._raw(name)
        if raw is None:
            return default
        try:
            return Decimal(raw)
        except InvalidOperation:
            raise ConfigError(f"{PREFIX}{name}: expected a decimal, got {raw!r}") from None


__all__ = (
    "PREFIX",
    "ConfigError",
    "Settings",
)
