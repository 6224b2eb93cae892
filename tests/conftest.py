"""
Shared fixtures: a file-backed SQLite database per test, a controllable
clock, and every component wired against them.
"""

from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from kungfu import Ok, Error

from settle.audit import MemoryAuditSink
from settle.db import SessionFactory, create_database
from settle.locks import LockManager, LockPolicy
from settle.orders import Order, OrderRepository, OrderService, StateMachine
from settle.outbox import (
    Channel,
    MemorySender,
    Outbox,
    OutboxPolicy,
    OutboxWorker,
    RateLimiter,
    StaticSuppressionList,
)
from settle.payments import ReconciliationEngine, ReconciliationJob


class FakeClock:
    """Frozen time that tests move forward by hand."""

    def __init__(self, start: datetime = datetime(2025, 3, 14, 10, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[SessionFactory]:
    factory, engine = await create_database(f"sqlite+aiosqlite:///{tmp_path / 'settle.db'}")
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def audit(clock: FakeClock) -> MemoryAuditSink:
    return MemoryAuditSink(clock)


@pytest.fixture
def locks(session_factory: SessionFactory, audit: MemoryAuditSink, clock: FakeClock) -> LockManager:
    return LockManager(
        session_factory,
        LockPolicy().with_retry(attempts=2, delay_ms=10),
        audit,
        clock,
    )


@pytest.fixture
def machine(session_factory: SessionFactory, audit: MemoryAuditSink, clock: FakeClock) -> StateMachine:
    return StateMachine(session_factory, audit, clock)


@pytest.fixture
def repo(session_factory: SessionFactory, clock: FakeClock) -> OrderRepository:
    return OrderRepository(session_factory, clock)


@pytest.fixture
def service(machine: StateMachine, locks: LockManager) -> OrderService:
    return OrderService(machine, locks)


@pytest.fixture
def reconciliation(
    session_factory: SessionFactory,
    machine: StateMachine,
    locks: LockManager,
    audit: MemoryAuditSink,
    clock: FakeClock,
) -> ReconciliationEngine:
    return ReconciliationEngine(session_factory, machine, locks, audit, clock=clock)


@pytest.fixture
def job(reconciliation: ReconciliationEngine, session_factory: SessionFactory) -> ReconciliationJob:
    return ReconciliationJob(reconciliation, session_factory)


@pytest.fixture
def outbox(session_factory: SessionFactory, clock: FakeClock) -> Outbox:
    return Outbox(session_factory, OutboxPolicy(), clock)


@pytest.fixture
def limiter(session_factory: SessionFactory, clock: FakeClock) -> RateLimiter:
    return RateLimiter(session_factory, clock=clock)


@pytest.fixture
def sender() -> MemorySender:
    return MemorySender()


@pytest.fixture
def suppression() -> StaticSuppressionList:
    return StaticSuppressionList()


@pytest.fixture
def worker(
    session_factory: SessionFactory,
    sender: MemorySender,
    suppression: StaticSuppressionList,
    limiter: RateLimiter,
    clock: FakeClock,
) -> OutboxWorker:
    return OutboxWorker(
        session_factory,
        {Channel.EMAIL: sender, Channel.SMS: sender},
        suppression,
        limiter,
        OutboxPolicy().with_send_timeout(seconds=0.5),
        clock,
        worker_id="test-worker",
    )


@pytest.fixture
def make_order(repo: OrderRepository):
    async def make(total: str = "5000.00", **fields) -> Order:
        match await repo.create(total_amount=Decimal(total), **fields):
            case Ok(order):
                return order
            case Error(err):
                raise AssertionError(f"Order creation failed: {err.message}")

    return make
