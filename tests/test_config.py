"""
Settings from the environment and the public error codes.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from settle.config import ConfigError, Settings
from settle.errors import ErrorCode, public_code
from settle.idempotency import IdempotencyError, IdempotencyErrorKind
from settle.locks import LockError, LockErrorKind
from settle.orders import TransitionError, TransitionErrorKind
from settle.outbox import OutboxError, OutboxErrorKind
from settle.payments import ReconcileError, ReconcileErrorKind


class TestSettings:
    def test_defaults_without_environment(self):
        settings = Settings.from_env({})

        assert settings == Settings()
        assert settings.admin_recipient is None

    def test_reads_prefixed_variables(self):
        settings = Settings.from_env({
            "SETTLE_DATABASE_URL": "postgresql+asyncpg://db/settle",
            "SETTLE_LOG_LEVEL": "debug",
            "SETTLE_LOG_JSON": "no",
            "SETTLE_ADMIN_RECIPIENT": "ops@shop.example",
            "SETTLE_LOCK_ATTEMPTS": "2",
            "SETTLE_AMOUNT_TOLERANCE": "0.50",
            "SETTLE_OUTBOX_MAX_RETRIES": "5",
            "UNRELATED": "ignored",
        })

        assert settings.database_url == "postgresql+asyncpg://db/settle"
        assert settings.log_level == "DEBUG"
        assert settings.log_json is False
        assert settings.admin_recipient == "ops@shop.example"
        assert settings.lock_attempts == 2
        assert settings.amount_tolerance == Decimal("0.50")
        assert settings.outbox_max_retries == 5

    @pytest.mark.parametrize(
        ("name", "value"),
        [
            ("SETTLE_LOCK_ATTEMPTS", "many"),
            ("SETTLE_LOG_JSON", "maybe"),
            ("SETTLE_AMOUNT_TOLERANCE", "a cent"),
            ("SETTLE_OUTBOX_POLL_SECONDS", "soon"),
        ],
    )
    def test_bad_values_raise(self, name, value):
        with pytest.raises(ConfigError, match=name):
            Settings.from_env({name: value})

    def test_policies_follow_settings(self):
        settings = Settings(
            lock_ttl_seconds=12,
            lock_attempts=3,
            amount_tolerance=Decimal("0"),
            outbox_window_seconds=60,
            outbox_max_retries=4,
        )

        assert settings.lock_policy().ttl == timedelta(seconds=12)
        assert settings.lock_policy().attempts == 3
        assert settings.reconcile_policy().amount_tolerance == Decimal("0")
        assert settings.outbox_policy().coalesce_window == timedelta(seconds=60)
        assert settings.outbox_policy().max_retries == 4
        assert settings.idempotency_policy().result_ttl == timedelta(hours=24)


class TestPublicCodes:
    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (TransitionError(TransitionErrorKind.MISSING_ASSIGNMENT, "x"), ErrorCode.MISSING_ASSIGNMENT),
            (TransitionError(TransitionErrorKind.CONCURRENT_UPDATE, "x"), ErrorCode.BUSY),
            (ReconcileError(ReconcileErrorKind.AMOUNT_MISMATCH, "x", "ref"), ErrorCode.PAYMENT_REVIEW),
            (ReconcileError(ReconcileErrorKind.STORE_ERROR, "x", "ref"), ErrorCode.UNAVAILABLE),
            (LockError(LockErrorKind.BUSY, "x", "o"), ErrorCode.BUSY),
            (IdempotencyError(IdempotencyErrorKind.CONFLICT, "x"), ErrorCode.CONFLICT),
            (IdempotencyError(IdempotencyErrorKind.INPUT_MISMATCH, "x"), ErrorCode.INVALID_REQUEST),
            (OutboxError(OutboxErrorKind.RATE_LIMITED, "x"), ErrorCode.RATE_LIMITED),
            (OutboxError(OutboxErrorKind.RETRIES_EXHAUSTED, "x"), ErrorCode.DELIVERY_FAILED),
        ],
        ids=lambda v: getattr(getattr(v, "kind", None), "name", None) or str(v),
    )
    def test_mapping(self, error, code):
        assert public_code(error) == code

    def test_execution_error_maps_through_wrapped_error(self):
        inner = ReconcileError(ReconcileErrorKind.BUSY, "held", "ref")
        wrapped = IdempotencyError(IdempotencyErrorKind.EXECUTION, "failed", original_error=inner)

        assert public_code(wrapped) == ErrorCode.BUSY

    def test_execution_error_from_exception_is_unavailable(self):
        wrapped = IdempotencyError(IdempotencyErrorKind.EXECUTION, "boom", original_error=RuntimeError("boom"))

        assert public_code(wrapped) == ErrorCode.UNAVAILABLE

    def test_every_kind_has_a_code(self):
        for kind in TransitionErrorKind:
            public_code(TransitionError(kind, "x"))
        for kind in ReconcileErrorKind:
            public_code(ReconcileError(kind, "x", "ref"))
        for kind in LockErrorKind:
            public_code(LockError(kind, "x", "o"))
        for kind in OutboxErrorKind:
            public_code(OutboxError(kind, "x"))

    def test_foreign_values_are_refused(self):
        with pytest.raises(TypeError):
            public_code("boom")  # type: ignore[arg-type]
