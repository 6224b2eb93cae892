"""
Webhook entry point: payload validation, replay suppression and the
accept / retry contract with the gateway.
"""

from decimal import Decimal

import pytest
from pydantic import ValidationError
from kungfu import Error

from settle.audit import AuditError, AuditKind
from settle.errors import ErrorCode
from settle.idempotency import SQLAlchemyStore
from settle.orders import OrderStatus, PaymentStatus
from settle.payments import ReconciliationEngine, TransactionStatus
from settle.webhook import GatewayEvent, WebhookHandler

from tests.helpers import expect_ok


@pytest.fixture
def handler(reconciliation, session_factory, clock):
    return WebhookHandler(reconciliation, SQLAlchemyStore(session_factory, clock))


class FailingAuditSink:
    async def record(self, event):
        return Error(AuditError("audit store down"))


def event(reference="pay_wh1", status="success", amount="5000.00", **metadata):
    return GatewayEvent(
        provider_reference=reference,
        status=status,
        amount=Decimal(amount),
        metadata=metadata,
        payload={"raw": True},
    )


class TestModels:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("success", TransactionStatus.SUCCESS),
            ("Successful", TransactionStatus.SUCCESS),
            ("paid", TransactionStatus.SUCCESS),
            ("failed", TransactionStatus.FAILED),
            ("abandoned", TransactionStatus.FAILED),
            ("ongoing", TransactionStatus.PENDING),
        ],
    )
    def test_status_normalization(self, raw, expected):
        assert event(status=raw).status == expected

    def test_reference_is_stripped(self):
        assert event(reference="  pay_1 ").provider_reference == "pay_1"

    def test_blank_reference_is_rejected(self):
        with pytest.raises(ValidationError):
            event(reference="   ")

    def test_negative_amount_is_rejected(self):
        with pytest.raises(ValidationError):
            event(amount="-1.00")

    def test_unknown_metadata_is_dropped(self):
        parsed = event(order_id="abc", cart="[1,2]")

        assert parsed.metadata.hints().order_id == "abc"
        assert not hasattr(parsed.metadata, "cart")

    def test_from_charge_success(self):
        parsed = GatewayEvent.from_charge({
            "event": "charge.success",
            "data": {"reference": "pay_7Hq2", "amount": 500000, "metadata": {"order_number": "ORD-9"}},
        })

        assert parsed is not None
        assert parsed.status == TransactionStatus.SUCCESS
        assert parsed.amount == Decimal("5000.00")
        assert parsed.metadata.order_number == "ORD-9"
        assert parsed.payload["event"] == "charge.success"

    def test_from_charge_ignores_other_events(self):
        assert GatewayEvent.from_charge({"event": "transfer.success", "data": {}}) is None


class TestHandle:
    @pytest.mark.asyncio
    async def test_accepts_and_pays(self, handler, repo, make_order):
        order = await make_order(payment_reference="pay_wh1")

        ack = await handler.handle("evt-1", event())

        assert ack.accepted
        assert not ack.replayed
        assert ack.outcome == "reconciled"
        assert ack.order_id == order.id
        assert ack.code is None
        stored = expect_ok(await repo.get(order.id))
        assert stored.payment_status == PaymentStatus.PAID
        assert stored.status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_redelivery_is_replayed_from_cache(self, handler, audit, make_order):
        await make_order(payment_reference="pay_wh1")
        first = await handler.handle("evt-1", event())
        events_after_first = len(audit.events)

        second = await handler.handle("evt-1", event())

        assert second.replayed
        assert second.model_copy(update={"replayed": False}) == first
        assert len(audit.events) == events_after_first

    @pytest.mark.asyncio
    async def test_new_key_for_same_payment_is_already_processed(self, handler, make_order):
        await make_order(payment_reference="pay_wh1")
        await handler.handle("evt-1", event())

        ack = await handler.handle("evt-2", event())

        assert ack.accepted
        assert not ack.replayed
        assert ack.outcome == "already_processed"

    @pytest.mark.asyncio
    async def test_key_reused_with_other_body(self, handler, make_order):
        await make_order(payment_reference="pay_wh1")
        await handler.handle("evt-1", event())

        ack = await handler.handle("evt-1", event(amount="1.00"))

        assert not ack.accepted
        assert not ack.retry
        assert ack.code == ErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_held_for_review(self, handler, repo, make_order):
        order = await make_order(payment_reference="pay_wh1")

        ack = await handler.handle("evt-1", event(amount="10.00"))

        assert ack.accepted
        assert ack.outcome == "amount_mismatch"
        assert ack.code == ErrorCode.PAYMENT_REVIEW
        assert expect_ok(await repo.get(order.id)).payment_status == PaymentStatus.PENDING

        replay = await handler.handle("evt-1", event(amount="10.00"))
        assert replay.replayed
        assert replay.code == ErrorCode.PAYMENT_REVIEW

    @pytest.mark.asyncio
    async def test_orphan_is_accepted(self, handler):
        ack = await handler.handle("evt-1", event(reference="pay_unknown"))

        assert ack.accepted
        assert ack.outcome == "orphaned"
        assert ack.code == ErrorCode.PAYMENT_REVIEW

    @pytest.mark.asyncio
    async def test_busy_order_asks_for_retry(self, handler, locks, repo, make_order):
        order = await make_order(payment_reference="pay_wh1")
        assert await locks.acquire(order.id, "admin:1")

        busy = await handler.handle("evt-1", event())

        assert not busy.accepted
        assert busy.retry
        assert busy.code == ErrorCode.BUSY

        await locks.release(order.id, "admin:1")
        retried = await handler.handle("evt-1", event())

        assert retried.accepted
        assert not retried.replayed
        assert retried.outcome == "reconciled"
        assert expect_ok(await repo.get(order.id)).payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_unrecorded_mismatch_asks_for_retry(
        self, handler, session_factory, machine, locks, audit, repo, make_order, clock
    ):
        order = await make_order(payment_reference="pay_wh1")
        sink_down = ReconciliationEngine(session_factory, machine, locks, FailingAuditSink(), clock=clock)
        degraded = WebhookHandler(sink_down, SQLAlchemyStore(session_factory, clock))

        ack = await degraded.handle("evt-1", event(amount="10.00"))

        assert not ack.accepted
        assert ack.retry
        assert ack.code == ErrorCode.UNAVAILABLE

        retried = await handler.handle("evt-1", event(amount="10.00"))

        assert retried.accepted
        assert not retried.replayed
        assert retried.outcome == "amount_mismatch"
        assert retried.code == ErrorCode.PAYMENT_REVIEW
        [incident] = audit.of_kind(AuditKind.INCIDENT)
        assert incident.action == "payment_amount_mismatch"
        assert expect_ok(await repo.get(order.id)).payment_status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_duplicate_payment_is_held_for_review(self, handler, make_order):
        order = await make_order(payment_reference="pay_wh1")
        await handler.handle("evt-1", event())

        ack = await handler.handle("evt-2", event(reference="pay_wh2", order_id=order.id))

        assert ack.accepted
        assert ack.outcome == "already_processed"
        assert ack.order_id == order.id
        assert ack.code == ErrorCode.PAYMENT_REVIEW
