"""
Batch reconciliation — replays successful transactions whose order is not paid.

Heals delivery-order races: a transaction recorded before its order
existed (orphan), or an order written before its transaction committed.

    scan:   payment_transactions.status = 'success'
            AND (order_id IS NULL OR orders.payment_status != 'paid')
            AND review_reason IS NULL   (held rows wait for a human)
    replay: ReconciliationEngine.reconcile(...) for each, N at a time
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from combinators import batch, lift as L
from kungfu import Result, Ok, Error

from settle.db import OrderRow, PaymentTransactionRow, SessionFactory
from settle.orders import PaymentStatus
from settle.payments._engine import ReconciliationEngine
from settle.payments._policy import ReconcilePolicy
from settle.payments._types import (
    BatchReport,
    PaymentMetadata,
    ReconcileError,
    ReconcileErrorKind,
    ReconcileOutcome,
    Reconciliation,
    TransactionStatus,
)


@dataclass(frozen=True, slots=True)
class PendingPayment:
    provider_reference: str
    amount: Decimal
    gateway_payload: dict[str, Any]
    metadata: PaymentMetadata


class ReconciliationJob:
    def __init__(
        self,
        engine: ReconciliationEngine,
        session_factory: SessionFactory,
        policy: ReconcilePolicy = ReconcilePolicy(),
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory
        self._policy = policy
        self._logger = structlog.get_logger().bind(component="reconciliation_job")

    async def scan(self) -> list[PendingPayment]:
        """Oldest-touched first, so repeat orphans rotate instead of starving the rest."""
        async with self._session_factory() as session:
            rows = (await session.execute(
                select(PaymentTransactionRow)
                .outerjoin(OrderRow, OrderRow.id == PaymentTransactionRow.order_id)
                .where(
                    PaymentTransactionRow.status == TransactionStatus.SUCCESS.value,
                    PaymentTransactionRow.review_reason.is_(None),
                    or_(
                        PaymentTransactionRow.order_id.is_(None),
                        OrderRow.payment_status != PaymentStatus.PAID.value,
                    ),
                )
                .order_by(PaymentTransactionRow.updated_at.asc())
                .limit(self._policy.batch_size)
            )).scalars().all()

        return [
            PendingPayment(
                provider_reference=row.provider_reference,
                amount=Decimal(row.amount),
                gateway_payload=dict(row.gateway_payload or {}),
                metadata=PaymentMetadata.from_mapping(row.hints),
            )
            for row in rows
        ]

    async def run_once(self) -> BatchReport:
        report = BatchReport()
        try:
            pending = await self.scan()
        except SQLAlchemyError as e:
            self._logger.error("reconcile_scan_failed", error=str(e))
            return report

        report.scanned = len(pending)
        if not pending:
            return report

        def replay(p: PendingPayment) -> Any:
            return L.catching_async(
                lambda: self._engine.reconcile(
                    p.provider_reference,
                    TransactionStatus.SUCCESS,
                    p.amount,
                    p.gateway_payload,
                    p.metadata,
                ),
                on_error=lambda e: ReconcileError(
                    ReconcileErrorKind.STORE_ERROR, str(e), p.provider_reference
                ),
            )

        match await batch(pending, handler=replay, concurrency=self._policy.batch_concurrency):
            case Ok(results):
                for result in results:
                    _tally(report, result)
            case Error(err):
                self._logger.error("reconcile_batch_aborted", error=str(err))
                report.failed = report.scanned

        self._logger.info(
            "reconcile_batch_done",
            scanned=report.scanned,
            reconciled=report.reconciled,
            orphaned=report.orphaned,
            mismatched=report.mismatched,
            busy=report.busy,
            failed=report.failed,
        )
        return report

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Run batches every `policy.batch_interval` until `stop` is set."""
        interval = self._policy.batch_interval.total_seconds()
        self._logger.info("reconcile_job_started", interval=interval)
        while not stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                pass
        self._logger.info("reconcile_job_stopped")


def _tally(report: BatchReport, result: Result[Reconciliation, ReconcileError]) -> None:
    match result:
        case Ok(Reconciliation(outcome=ReconcileOutcome.ALREADY_PROCESSED)):
            report.already_processed += 1
        case Ok(_):
            report.reconciled += 1
        case Error(ReconcileError(kind=ReconcileErrorKind.ORPHANED)):
            report.orphaned += 1
        case Error(ReconcileError(kind=ReconcileErrorKind.AMOUNT_MISMATCH)):
            report.mismatched += 1
        case Error(ReconcileError(kind=ReconcileErrorKind.BUSY)):
            report.busy += 1
        case Error(_):
            report.failed += 1


__all__ = (
    "PendingPayment",
    "ReconciliationJob",
)
