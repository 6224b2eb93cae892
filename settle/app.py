"""
Composition root — one place that wires every component from Settings.

    app = await build(Settings.from_env())
    try:
        ack = await app.webhook.handle(key, event)
        await app.service.transition(order_id, OrderStatus.PREPARING, "admin:7")
        await app.worker(senders, suppression).drain()
    finally:
        await app.close()
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from settle._types import Clock, system_clock
from settle.audit import AuditSink, SQLAlchemyAuditSink
from settle.config import Settings
from settle.db import SessionFactory, create_database
from settle.idempotency import SQLAlchemyStore
from settle.locks import LockManager
from settle.orders import OrderRepository, OrderService, StateMachine
from settle.outbox import (
    Channel,
    ChannelSender,
    Outbox,
    OutboxWorker,
    RateLimiter,
    SuppressionList,
    TransitionNotifier,
)
from settle.payments import ReconciliationEngine, ReconciliationJob
from settle.webhook import WebhookHandler


@dataclass(slots=True)
class Settle:
    settings: Settings
    engine: AsyncEngine
    session_factory: SessionFactory
    clock: Clock
    audit: AuditSink
    locks: LockManager
    machine: StateMachine
    orders: OrderRepository
    service: OrderService
    reconciliation: ReconciliationEngine
    job: ReconciliationJob
    idempotency: SQLAlchemyStore
    webhook: WebhookHandler
    outbox: Outbox
    limiter: RateLimiter

    def worker(
        self,
        senders: Mapping[Channel, ChannelSender],
        suppression: SuppressionList,
        worker_id: str | None = None,
    ) -> OutboxWorker:
        return OutboxWorker(
            self.session_factory,
            senders,
            suppression,
            self.limiter,
            self.settings.outbox_policy(),
            self.clock,
            worker_id,
        )

    async def close(self) -> None:
        await self.engine.dispose()


async def build(
    settings: Settings | None = None,
    *,
    clock: Clock = system_clock,
    audit: AuditSink | None = None,
    create_tables: bool = True,
) -> Settle:
    settings = settings or Settings()
    session_factory, engine = await create_database(
        settings.database_url,
        create_tables=create_tables,
    )

    audit = audit if audit is not None else SQLAlchemyAuditSink(session_factory, clock)
    locks = LockManager(session_factory, settings.lock_policy(), audit, clock)
    machine = StateMachine(session_factory, audit, clock)
    reconcile_policy = settings.reconcile_policy()
    reconciliation = ReconciliationEngine(
        session_factory, machine, locks, audit, reconcile_policy, clock
    )
    idempotency = SQLAlchemyStore(session_factory, clock)
    outbox = Outbox(session_factory, settings.outbox_policy(), clock)

    machine.subscribe(TransitionNotifier(outbox, admin_recipient=settings.admin_recipient))

    structlog.get_logger().bind(component="app").info(
        "settle_built",
        database=engine.url.render_as_string(hide_password=True),
    )

    return Settle(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        clock=clock,
        audit=audit,
        locks=locks,
        machine=machine,
        orders=OrderRepository(session_factory, clock),
        service=OrderService(machine, locks),
        reconciliation=reconciliation,
        job=ReconciliationJob(reconciliation, session_factory, reconcile_policy),
        idempotency=idempotency,
        webhook=WebhookHandler(reconciliation, idempotency, settings.idempotency_policy()),
        outbox=outbox,
        limiter=RateLimiter(session_factory, settings.rate_limit_policy(), clock),
    )


__all__ = (
    "Settle",
    "build",
)
