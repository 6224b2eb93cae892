"""
Outbox: coalescing, reopening, cancellation, delivery with retry/backoff,
dead letters, suppression and the transition notifier.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from settle.orders import OrderStatus
from settle.outbox import (
    Channel,
    Delivery,
    EntryStatus,
    MemorySender,
    OutboxErrorKind,
    OutboxPolicy,
    OutboxWorker,
    Priority,
    TransitionNotifier,
    dedupe_key,
    normalize_recipient,
    window_bucket,
)

from tests.helpers import expect_error, expect_ok

ORDER = "3f1d7a52-0000-4b6e-8c1a-00000000a001"


def make_worker(session_factory, limiter, suppression, clock, sender, timeout=0.5):
    return OutboxWorker(
        session_factory,
        {Channel.EMAIL: sender, Channel.SMS: sender},
        suppression,
        limiter,
        OutboxPolicy().with_send_timeout(seconds=timeout),
        clock,
        worker_id="test-worker",
    )


class TestDedupe:
    def test_normalize_recipient(self):
        assert normalize_recipient(" Ada@Example.COM ") == "ada@example.com"
        assert normalize_recipient("+234 (801) 555-0000") == "+2348015550000"
        assert normalize_recipient("   ") == ""
        assert normalize_recipient(None) == ""

    def test_key_shape(self):
        now = datetime(2025, 3, 14, 10, 0, 30)
        window = timedelta(minutes=2)

        key = dedupe_key("o1", "order_confirmed", "Ada@Example.com", now, window)

        assert key == f"o1:order_confirmed:ada@example.com:{window_bucket(now, window)}"

    def test_bucket_rolls_over_with_window(self):
        window = timedelta(minutes=2)
        start = datetime(2025, 3, 14, 10, 0, 0)

        assert window_bucket(start, window) == window_bucket(start + timedelta(seconds=119), window)
        assert window_bucket(start, window) != window_bucket(start + timedelta(minutes=2), window)


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_repeated_triggers_coalesce(self, outbox):
        results = [
            expect_ok(await outbox.enqueue("order_confirmed", ORDER, "ada@example.com", "payment_confirmation"))
            for _ in range(5)
        ]

        assert results[0].created
        assert all(r.coalesced for r in results[1:])
        assert len({r.entry.id for r in results}) == 1
        assert len(await outbox.entries(order_id=ORDER)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_triggers_coalesce(self, outbox):
        results = await asyncio.gather(*[
            outbox.enqueue("order_confirmed", ORDER, "ada@example.com", "payment_confirmation")
            for _ in range(5)
        ])

        assert len({expect_ok(r).entry.id for r in results}) == 1
        assert len(await outbox.entries(order_id=ORDER)) == 1

    @pytest.mark.asyncio
    async def test_recipient_spelling_does_not_split(self, outbox):
        expect_ok(await outbox.enqueue("order_ready", ORDER, "Ada@Example.com", "order_ready"))
        second = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com ", "order_ready"))

        assert second.coalesced

    @pytest.mark.asyncio
    async def test_new_window_creates_new_entry(self, outbox, clock):
        first = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready"))
        clock.advance(minutes=1)
        same = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready"))
        clock.advance(minutes=1)
        later = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready"))

        assert same.entry.id == first.entry.id
        assert later.created
        assert later.entry.id != first.entry.id

    @pytest.mark.asyncio
    async def test_coalescing_merges_variables_and_raises_priority(self, outbox):
        expect_ok(await outbox.enqueue(
            "order_ready", ORDER, "ada@example.com", "order_ready", {"a": 1}, Priority.LOW
        ))
        merged = expect_ok(await outbox.enqueue(
            "order_ready", ORDER, "ada@example.com", "order_ready", {"b": 2}, Priority.HIGH
        ))

        assert merged.entry.variables == {"a": 1, "b": 2}
        assert merged.entry.priority == Priority.HIGH

    @pytest.mark.asyncio
    async def test_channel_follows_recipient(self, outbox):
        email = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready"))
        sms = expect_ok(await outbox.enqueue("order_ready", ORDER, "+234 801 555 0000", "order_ready"))

        assert email.entry.channel == Channel.EMAIL
        assert sms.entry.channel == Channel.SMS
        assert sms.entry.recipient == "+2348015550000"

    @pytest.mark.asyncio
    async def test_blank_recipient_is_rejected(self, outbox):
        err = expect_error(await outbox.enqueue("order_ready", ORDER, "  ", "order_ready"))

        assert err.kind == OutboxErrorKind.INVALID_RECIPIENT
        assert await outbox.entries() == []


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_queued_entry(self, outbox, worker):
        entry = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready")).entry

        cancelled = expect_ok(await outbox.cancel(entry.id))

        assert cancelled.status == EntryStatus.CANCELLED
        assert expect_ok(await outbox.cancel(entry.id)).status == EntryStatus.CANCELLED
        assert await worker.claim() == []

    @pytest.mark.asyncio
    async def test_cannot_cancel_sent_entry(self, outbox, worker):
        entry = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready")).entry
        await worker.drain()

        err = expect_error(await outbox.cancel(entry.id))

        assert err.kind == OutboxErrorKind.NOT_FOUND
        assert expect_ok(await outbox.get(entry.id)).status == EntryStatus.SENT

    @pytest.mark.asyncio
    async def test_cancel_unknown_entry(self, outbox):
        err = expect_error(await outbox.cancel("missing"))

        assert err.kind == OutboxErrorKind.NOT_FOUND


class TestDelivery:
    @pytest.mark.asyncio
    async def test_drain_sends(self, outbox, worker, sender, clock):
        entry = expect_ok(await outbox.enqueue(
            "order_confirmed", ORDER, "ada@example.com", "payment_confirmation", {"order_number": "ORD-1"}
        )).entry

        report = await worker.drain()

        assert report.claimed == 1
        assert report.count(Delivery.SENT) == 1
        [message] = sender.sent
        assert message.recipient == "ada@example.com"
        assert message.template_key == "payment_confirmation"
        assert message.variables == {"order_number": "ORD-1"}

        stored = expect_ok(await outbox.get(entry.id))
        assert stored.status == EntryStatus.SENT
        assert stored.provider_message_id == message.provider_message_id
        assert stored.sent_at == clock.now

    @pytest.mark.asyncio
    async def test_claim_orders_by_priority(self, outbox, worker):
        for i, priority in enumerate([Priority.LOW, Priority.NORMAL, Priority.HIGH]):
            expect_ok(await outbox.enqueue(
                f"event_{i}", ORDER, "ada@example.com", "tpl", priority=priority
            ))

        claimed = await worker.claim()

        assert [e.priority for e in claimed] == [Priority.HIGH, Priority.NORMAL, Priority.LOW]
        assert all(e.status == EntryStatus.PROCESSING for e in claimed)
        assert await worker.claim() == []

    @pytest.mark.asyncio
    async def test_two_workers_never_share_an_entry(self, outbox, worker):
        for i in range(6):
            expect_ok(await outbox.enqueue(f"event_{i}", ORDER, "ada@example.com", "tpl"))

        first, second = await asyncio.gather(worker.claim(limit=6), worker.claim(limit=6))

        ids = [e.id for e in first] + [e.id for e in second]
        assert len(ids) == 6
        assert len(set(ids)) == 6

    @pytest.mark.asyncio
    async def test_failure_schedules_backoff(self, session_factory, outbox, limiter, suppression, clock):
        sender = MemorySender(failures=["smtp 451"])
        worker = make_worker(session_factory, limiter, suppression, clock, sender)
        entry = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready")).entry

        report = await worker.drain()

        assert report.count(Delivery.RETRY) == 1
        stored = expect_ok(await outbox.get(entry.id))
        assert stored.status == EntryStatus.QUEUED
        assert stored.retry_count == 1
        assert stored.error_message == "smtp 451"
        assert stored.scheduled_at == clock.now + OutboxPolicy().backoff(1)

        # Not due yet
        assert (await worker.drain()).claimed == 0

        clock.advance(seconds=OutboxPolicy().backoff(1).total_seconds())
        assert (await worker.drain()).count(Delivery.SENT) == 1
        assert sender.attempts == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_dead_letter(self, session_factory, outbox, limiter, suppression, clock):
        sender = MemorySender(always_fail="mailbox unavailable")
        worker = make_worker(session_factory, limiter, suppression, clock, sender)
        entry = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready")).entry

        outcomes = []
        for _ in range(3):
            report = await worker.drain()
            outcomes.extend(d for d, n in report.outcomes.items() for _ in range(n))
            clock.advance(hours=1)

        assert outcomes == [Delivery.RETRY, Delivery.RETRY, Delivery.DEAD_LETTERED]
        assert sender.attempts == 3

        stored = expect_ok(await outbox.get(entry.id))
        assert stored.status == EntryStatus.DEAD_LETTERED
        assert stored.retry_count == 3

        [dead] = await outbox.dead_letters()
        assert dead.original_entry_id == entry.id
        assert dead.total_attempts == 3
        assert dead.final_error == "RETRIES_EXHAUSTED: mailbox unavailable"

        clock.advance(days=1)
        assert (await worker.drain()).claimed == 0
        assert sender.attempts == 3

    @pytest.mark.asyncio
    async def test_dead_lettered_entry_is_not_reopened(self, session_factory, outbox, limiter, suppression, clock):
        sender = MemorySender(failures=["smtp 451", "smtp 451", "smtp 451"])
        worker = OutboxWorker(
            session_factory,
            {Channel.EMAIL: sender},
            suppression,
            limiter,
            OutboxPolicy().with_retries(3, base_seconds=1).with_send_timeout(seconds=0.5),
            clock,
            worker_id="test-worker",
        )
        entry = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready")).entry

        await worker.drain()
        clock.advance(seconds=2)
        await worker.drain()
        clock.advance(seconds=4)
        assert (await worker.drain()).count(Delivery.DEAD_LETTERED) == 1

        # Same coalescing window as the original trigger
        again = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready"))

        assert again.coalesced
        assert not again.reopened
        assert again.entry.id == entry.id
        assert again.entry.status == EntryStatus.DEAD_LETTERED
        assert (await worker.drain()).claimed == 0
        assert sender.attempts == 3
        assert len(await outbox.dead_letters()) == 1

    @pytest.mark.asyncio
    async def test_send_timeout_counts_as_failure(self, session_factory, outbox, limiter, suppression, clock):
        sender = MemorySender(delay=1.0)
        worker = make_worker(session_factory, limiter, suppression, clock, sender, timeout=0.05)
        entry = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready")).entry

        report = await worker.drain()

        assert report.count(Delivery.RETRY) == 1
        stored = expect_ok(await outbox.get(entry.id))
        assert stored.retry_count == 1
        assert "timed out" in stored.error_message
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_missing_sender_is_rejected(self, session_factory, outbox, limiter, suppression, clock):
        worker = OutboxWorker(
            session_factory, {Channel.EMAIL: MemorySender()}, suppression, limiter, clock=clock
        )
        entry = expect_ok(await outbox.enqueue("order_ready", ORDER, "+2348015550000", "order_ready")).entry

        assert (await worker.drain()).count(Delivery.REJECTED) == 1
        assert expect_ok(await outbox.get(entry.id)).status == EntryStatus.FAILED


class TestSuppression:
    @pytest.mark.asyncio
    async def test_suppressed_recipient_fails_without_retry(self, outbox, worker, sender, suppression):
        suppression.add("ADA@example.com")
        entry = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready")).entry

        report = await worker.drain()

        assert report.count(Delivery.REJECTED) == 1
        assert sender.attempts == 0
        stored = expect_ok(await outbox.get(entry.id))
        assert stored.status == EntryStatus.FAILED
        assert stored.error_message.startswith("RECIPIENT_SUPPRESSED")
        assert await outbox.dead_letters() == []

    @pytest.mark.asyncio
    async def test_failed_entry_reopens_on_new_trigger(self, outbox, worker, suppression):
        suppression.add("ada@example.com")
        entry = expect_ok(await outbox.enqueue(
            "order_ready", ORDER, "ada@example.com", "order_ready", {"a": 1}
        )).entry
        await worker.drain()

        again = expect_ok(await outbox.enqueue(
            "order_ready", ORDER, "ada@example.com", "order_ready", {"b": 2}
        ))

        assert again.reopened
        assert again.entry.id == entry.id
        assert again.entry.status == EntryStatus.QUEUED
        assert again.entry.retry_count == 0
        assert again.entry.variables == {"a": 1, "b": 2}


class TestStaleEntries:
    @pytest.mark.asyncio
    async def test_requeue_stale_processing(self, outbox, worker, clock):
        entry = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready")).entry
        await worker.claim()

        assert await worker.requeue_stale() == 0
        clock.advance(minutes=11)
        assert await worker.requeue_stale() == 1

        assert expect_ok(await outbox.get(entry.id)).status == EntryStatus.QUEUED

    @pytest.mark.asyncio
    async def test_slow_worker_cannot_overwrite_requeued_entry(self, outbox, worker, clock):
        entry = expect_ok(await outbox.enqueue("order_ready", ORDER, "ada@example.com", "order_ready")).entry
        [claimed] = await worker.claim()
        clock.advance(minutes=11)
        assert await worker.requeue_stale() == 1

        assert await worker.deliver(claimed) == Delivery.LOST

        stored = expect_ok(await outbox.get(entry.id))
        assert stored.status == EntryStatus.QUEUED
        assert stored.provider_message_id is None


class TestNotifier:
    @pytest.mark.asyncio
    async def test_confirmation_reaches_email_and_sms(self, machine, outbox, make_order):
        machine.subscribe(TransitionNotifier(outbox))
        order = await make_order(customer_email="ada@example.com", customer_phone="0801 555 0000")

        await machine.transition(order.id, OrderStatus.CONFIRMED, "payment-gateway")

        entries = await outbox.entries(order_id=order.id)
        assert {e.channel for e in entries} == {Channel.EMAIL, Channel.SMS}
        for entry in entries:
            assert entry.event_type == "order_confirmed"
            assert entry.template_key == "payment_confirmation"
            assert entry.priority == Priority.HIGH
            assert entry.variables["order_number"] == order.order_number
            assert entry.variables["previous_status"] == "pending"
            assert entry.variables["total_amount"] == "5000.00"

    @pytest.mark.asyncio
    async def test_cancellation_alerts_admin(self, machine, outbox, make_order):
        machine.subscribe(TransitionNotifier(outbox, admin_recipient="ops@shop.example", sms=False))
        order = await make_order(customer_email="ada@example.com", customer_phone="0801 555 0000")

        await machine.transition(order.id, OrderStatus.CANCELLED, "admin:1")

        entries = await outbox.entries(order_id=order.id)
        assert sorted(e.event_type for e in entries) == ["admin_order_cancelled", "order_cancelled"]
        assert all(e.channel == Channel.EMAIL for e in entries)

    @pytest.mark.asyncio
    async def test_order_without_contacts_enqueues_nothing(self, machine, outbox, make_order):
        machine.subscribe(TransitionNotifier(outbox))
        order = await make_order()

        await machine.transition(order.id, OrderStatus.CONFIRMED, "admin:1")

        assert await outbox.entries(order_id=order.id) == []

    @pytest.mark.asyncio
    async def test_replayed_payment_notifies_once(self, machine, outbox, reconciliation, make_order):
        machine.subscribe(TransitionNotifier(outbox, sms=False))
        order = await make_order(payment_reference="pay_n1", customer_email="ada@example.com")

        for _ in range(3):
            await reconciliation.reconcile("pay_n1", "success", "5000.00")

        assert len(await outbox.entries(order_id=order.id)) == 1
