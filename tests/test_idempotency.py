"""
Idempotent execution over both stores: cache hits, key collisions,
in-flight conflicts, failed runs and expiry.
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from kungfu import Ok, Error

from settle.idempotency import (
    FAIL,
    WAIT,
    IdempotencyErrorKind,
    MemoryStore,
    Policy,
    RecordState,
    SQLAlchemyStore,
    fingerprint,
    idempotent,
)

from tests.helpers import expect_error, expect_ok


class Counter:
    def __init__(self):
        self.calls = 0

    async def __call__(self, request):
        self.calls += 1
        return Ok({"charged": request["amount"], "call": self.calls})


@pytest_asyncio.fixture(params=["memory", "sqlalchemy"])
async def store(request, session_factory, clock):
    if request.param == "memory":
        return MemoryStore(clock)
    return SQLAlchemyStore(session_factory, clock)


def executor(operation, store, policy=Policy()):
    return (
        idempotent(operation)
        .key(lambda r: r["key"])
        .fingerprint(lambda r: fingerprint({"amount": r["amount"]}))
        .store(store)
        .policy(policy)
        .build()
    )


class TestCache:
    @pytest.mark.asyncio
    async def test_second_run_is_served_from_cache(self, store):
        op = Counter()
        run = executor(op, store)

        first = expect_ok(await run.run({"key": "k1", "amount": 10}))
        second = expect_ok(await run.run({"key": "k1", "amount": 10}))

        assert not first.from_cache
        assert second.from_cache
        assert second.value == first.value == {"charged": 10, "call": 1}
        assert second.key == "k1"
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_distinct_keys_run_separately(self, store):
        op = Counter()
        run = executor(op, store)

        await run.run({"key": "k1", "amount": 10})
        await run.run({"key": "k2", "amount": 10})

        assert op.calls == 2

    @pytest.mark.asyncio
    async def test_key_reuse_with_other_request(self, store):
        op = Counter()
        run = executor(op, store)
        await run.run({"key": "k1", "amount": 10})

        err = expect_error(await run.run({"key": "k1", "amount": 99}))

        assert err.kind == IdempotencyErrorKind.INPUT_MISMATCH
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_expired_result_runs_again(self, store, clock):
        op = Counter()
        run = executor(op, store, Policy().with_ttl(hours=1))
        await run.run({"key": "k1", "amount": 10})

        clock.advance(hours=2)
        again = expect_ok(await run.run({"key": "k1", "amount": 10}))

        assert not again.from_cache
        assert op.calls == 2


class TestInFlight:
    @pytest.mark.asyncio
    async def test_processing_key_conflicts(self, store):
        expect_ok(await store.set_pending("k1", timedelta(minutes=5)))
        op = Counter()

        err = expect_error(await executor(op, store, Policy().with_on_pending(FAIL)).run({"key": "k1", "amount": 1}))

        assert err.kind == IdempotencyErrorKind.CONFLICT
        assert op.calls == 0

    @pytest.mark.asyncio
    async def test_crashed_claim_expires(self, store, clock):
        expect_ok(await store.set_pending("k1", timedelta(seconds=30)))
        clock.advance(seconds=31)
        op = Counter()

        result = expect_ok(await executor(op, store).run({"key": "k1", "amount": 1}))

        assert not result.from_cache
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_wait_returns_in_flight_result(self, clock):
        store = MemoryStore(clock)
        release = asyncio.Event()
        calls = []

        async def slow(request):
            calls.append(request)
            await release.wait()
            return Ok("done")

        run = executor(slow, store, Policy().with_on_pending(WAIT).with_wait_timeout(seconds=2, poll_ms=10))

        first = asyncio.create_task(run.run({"key": "k1", "amount": 1}))
        await asyncio.sleep(0.02)
        second = asyncio.create_task(run.run({"key": "k1", "amount": 1}))
        await asyncio.sleep(0.02)
        release.set()

        assert expect_ok(await first).from_cache is False
        waited = expect_ok(await second)
        assert waited.from_cache
        assert waited.value == "done"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_wait_times_out(self, clock):
        store = MemoryStore(clock)
        expect_ok(await store.set_pending("k1", timedelta(minutes=5)))

        run = executor(Counter(), store, Policy().with_on_pending(WAIT).with_wait_timeout(seconds=0.05, poll_ms=10))
        err = expect_error(await run.run({"key": "k1", "amount": 1}))

        assert err.kind == IdempotencyErrorKind.TIMEOUT


class TestFailures:
    @pytest.mark.asyncio
    async def test_error_result_is_forgotten(self, store):
        attempts = []

        async def flaky(request):
            attempts.append(1)
            if len(attempts) == 1:
                return Error("gateway down")
            return Ok("ok")

        run = executor(flaky, store)

        err = expect_error(await run.run({"key": "k1", "amount": 1}))
        assert err.kind == IdempotencyErrorKind.EXECUTION
        assert err.original_error == "gateway down"
        assert expect_ok(await store.get("k1")) is None

        assert expect_ok(await run.run({"key": "k1", "amount": 1})).value == "ok"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_raised_exception_is_execution_error(self, store):
        async def broken(request):
            raise RuntimeError("boom")

        err = expect_error(await executor(broken, store).run({"key": "k1", "amount": 1}))

        assert err.kind == IdempotencyErrorKind.EXECUTION
        assert isinstance(err.original_error, RuntimeError)
        assert expect_ok(await store.get("k1")) is None

    @pytest.mark.asyncio
    async def test_persisted_failure_is_replayed(self, store):
        attempts = []

        async def failing(request):
            attempts.append(1)
            return Error("declined")

        run = executor(failing, store, Policy().with_store_failed(seconds=60))
        await run.run({"key": "k1", "amount": 1})

        err = expect_error(await run.run({"key": "k1", "amount": 1}))

        assert err.kind == IdempotencyErrorKind.EXECUTION
        assert err.original_error == "declined"
        assert len(attempts) == 1
        assert expect_ok(await store.get("k1")).state == RecordState.FAILED


class TestPurge:
    @pytest.mark.asyncio
    async def test_purge_expired(self, store, clock):
        run = executor(Counter(), store, Policy().with_ttl(hours=1))
        await run.run({"key": "old", "amount": 1})
        clock.advance(hours=2)
        await run.run({"key": "fresh", "amount": 1})

        assert expect_ok(await store.purge_expired()) == 1
        assert expect_ok(await store.get("fresh")) is not None
        assert expect_ok(await store.purge_expired()) == 0

    def test_key_is_required(self):
        with pytest.raises(ValueError):
            idempotent(Counter()).build()

    def test_fingerprint_is_order_insensitive(self):
        assert fingerprint({"a": 1, "b": 2}) == fingerprint({"b": 2, "a": 1})
        assert fingerprint({"a": 1}) != fingerprint({"a": 2})
