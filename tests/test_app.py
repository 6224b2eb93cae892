"""
End-to-end through the composition root, plus the maintenance CLI.
"""

from decimal import Decimal

import pytest
import pytest_asyncio

from settle.__main__ import main
from settle.app import build
from settle.audit import MemoryAuditSink
from settle.config import Settings
from settle.orders import OrderStatus, PaymentStatus
from settle.outbox import Channel, Delivery, EntryStatus, MemorySender, StaticSuppressionList
from settle.webhook import GatewayEvent

from tests.helpers import expect_error, expect_ok


@pytest_asyncio.fixture
async def app(tmp_path, clock):
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'app.db'}",
        admin_recipient="ops@shop.example",
        lock_attempts=2,
        lock_retry_delay_ms=10,
    )
    built = await build(settings, clock=clock, audit=MemoryAuditSink(clock))
    try:
        yield built
    finally:
        await built.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_checkout_to_delivery(self, app, clock):
        order = expect_ok(await app.orders.create(
            total_amount=Decimal("2500.00"),
            payment_reference="pay_e2e",
            customer_email="ada@example.com",
        ))

        charge = GatewayEvent.from_charge({
            "event": "charge.success",
            "data": {"reference": "pay_e2e", "amount": 250000, "metadata": {"order_id": order.id}},
        })
        ack = await app.webhook.handle("evt-e2e", charge)
        assert ack.accepted
        assert ack.outcome == "reconciled"

        sender = MemorySender()
        worker = app.worker({Channel.EMAIL: sender}, StaticSuppressionList(), worker_id="e2e")
        report = await worker.drain()
        assert report.count(Delivery.SENT) == 1
        assert sender.sent[0].template_key == "payment_confirmation"

        for status in (OrderStatus.PREPARING, OrderStatus.READY):
            expect_ok(await app.service.transition(order.id, status, "admin:1"))

        refused = expect_error(await app.service.transition(order.id, OrderStatus.OUT_FOR_DELIVERY, "admin:1"))
        assert refused.current == OrderStatus.READY

        expect_ok(await app.service.assign_agent(order.id, "rider-1", "admin:1"))
        for status in (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, OrderStatus.COMPLETED):
            expect_ok(await app.service.transition(order.id, status, "admin:1"))

        final = expect_ok(await app.orders.get(order.id))
        assert final.status == OrderStatus.COMPLETED
        assert final.payment_status == PaymentStatus.PAID

        queued = await app.outbox.entries(order_id=order.id, status=EntryStatus.QUEUED)
        assert sorted(e.event_type for e in queued) == [
            "order_completed",
            "order_delivered",
            "order_out_for_delivery",
            "order_preparing",
            "order_ready",
        ]

    @pytest.mark.asyncio
    async def test_cancellation_notifies_admin(self, app):
        order = expect_ok(await app.orders.create(total_amount="10.00", customer_email="ada@example.com"))

        expect_ok(await app.service.transition(order.id, OrderStatus.CANCELLED, "admin:1"))

        recipients = {e.recipient for e in await app.outbox.entries(order_id=order.id)}
        assert recipients == {"ada@example.com", "ops@shop.example"}


class TestCli:
    @pytest.fixture(autouse=True)
    def database(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SETTLE_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
        monkeypatch.setenv("SETTLE_LOG_JSON", "true")
        monkeypatch.setenv("SETTLE_LOG_LEVEL", "WARNING")

    def test_init_db(self, capsys):
        assert main(["init-db"]) == 0
        assert "tables ready" in capsys.readouterr().out

    def test_reconcile_once(self, capsys):
        assert main(["reconcile"]) == 0
        assert "scanned=0" in capsys.readouterr().out

    def test_purge_idempotency(self, capsys):
        assert main(["purge-idempotency"]) == 0
        assert "purged=0" in capsys.readouterr().out

    def test_requeue_stale(self, capsys):
        assert main(["requeue-stale", "--seconds", "60"]) == 0
        assert "requeued=0" in capsys.readouterr().out

    def test_dead_letters_empty(self, capsys):
        assert main(["dead-letters"]) == 0

    def test_bad_configuration(self, monkeypatch, capsys):
        monkeypatch.setenv("SETTLE_LOCK_ATTEMPTS", "lots")

        assert main(["init-db"]) == 2
        assert "SETTLE_LOCK_ATTEMPTS" in capsys.readouterr().err

    def test_unknown_command(self):
        with pytest.raises(SystemExit):
            main(["explode"])
