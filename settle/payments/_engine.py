"""
Reconciliation engine — gateway payment report → order, atomically.

    reconcile(reference, status, amount, payload)
         │
         ├─ replay of an accepted payment? ──────────────► Ok(ALREADY_PROCESSED)
         │
         ├─ resolve order (see _resolve) ── none ─► store unlinked ─► Error(ORPHANED)
         │
         └─ under the order lock, one transaction:
               re-check replay
               success + |amount − total| > ε ──► store unlinked, held for review
                                                  incident (must land) ─► Error(AMOUNT_MISMATCH)
               success on an order another reference already paid
                                              ──► store linked, held for review
                                                  incident ─► Ok(ALREADY_PROCESSED)
               upsert transaction by provider_reference
               success: payment_status = paid, paid_at (if unset)
                        pending → confirmed via StateMachine.apply
               failed:  payment_status = failed (unless already paid)
            commit → publish transition → Ok(RECONCILED | RECORDED)

Note: mismatches, duplicates and orphans are never corrected here; the
transaction row keeps the evidence and the audit sink tells a human.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, cast

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kungfu import Result, Ok, Error

from settle._types import Clock, system_clock
from settle.audit import AuditEvent, AuditKind, AuditSink, Severity, record_quietly
from settle.db import OrderRow, PaymentTransactionRow, SessionFactory, insert_for
from settle.locks import LockError, LockManager
from settle.orders import (
    Order,
    OrderStatus,
    PaymentStatus,
    StateMachine,
    TransitionEvent,
    load_order,
)
from settle.payments._policy import ReconcilePolicy
from settle.payments._resolve import find_transaction, resolve_order
from settle.payments._types import (
    MatchStrategy,
    PaymentMetadata,
    ReconcileError,
    ReconcileErrorKind,
    ReconcileOutcome,
    Reconciliation,
    ReviewReason,
    TransactionStatus,
)


# Note: a payment arriving for these is recorded but never reopens the order
_REFUSED_FOR_PAYMENT = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})


class ReconciliationEngine:
    def __init__(
        self,
        session_factory: SessionFactory,
        machine: StateMachine,
        locks: LockManager,
        audit: AuditSink,
        policy: ReconcilePolicy = ReconcilePolicy(),
        clock: Clock = system_clock,
    ) -> None:
        self._session_factory = session_factory
        self._machine = machine
        self._locks = locks
        self._audit = audit
        self._policy = policy
        self._clock = clock
        self._logger = structlog.get_logger().bind(component="reconciliation")

    async def reconcile(
        self,
        provider_reference: str,
        reported_status: TransactionStatus | str,
        amount: Decimal | str | int,
        gateway_payload: dict[str, Any] | None = None,
        metadata: PaymentMetadata | None = None,
    ) -> Result[Reconciliation, ReconcileError]:
        """
        Reconcile one gateway report. Safe to replay.

        metadata defaults to the hints in gateway_payload["metadata"].
        Raises ValueError for a status outside pending/success/failed.
        """
        status = TransactionStatus(reported_status)
        amount = Decimal(str(amount))
        payload = dict(gateway_payload or {})
        hints = metadata if metadata is not None else PaymentMetadata.from_mapping(
            payload.get("metadata") if isinstance(payload.get("metadata"), dict) else None
        )

        try:
            async with self._session_factory() as session:
                replay = await self._replay_of(session, provider_reference, status, amount)
                if replay is not None:
                    self._logger.info(
                        "payment_already_processed",
                        provider_reference=provider_reference,
                        order_id=replay.order_id,
                    )
                    return Ok(replay)
                resolution = await resolve_order(session, provider_reference, hints)
                resolved = (resolution.order.id, resolution.matched_by) if resolution else None
        except SQLAlchemyError as e:
            return Error(self._store_error(provider_reference, e))

        if resolved is None:
            return await self._orphan(provider_reference, status, amount, payload, hints)

        order_id, matched_by = resolved
        if matched_by == MatchStrategy.ALIAS:
            self._logger.warning(
                "payment_matched_by_alias",
                provider_reference=provider_reference,
                order_id=order_id,
            )

        result = await self._locks.locked(
            order_id,
            f"{self._policy.actor_id}:{uuid.uuid4().hex[:12]}",
            lambda: self._apply(order_id, matched_by, provider_reference, status, amount, payload, hints),
        )
        match result:
            case Error(LockError() as err):
                self._logger.info("payment_busy", provider_reference=provider_reference, order_id=order_id)
                return Error(ReconcileError(
                    ReconcileErrorKind.BUSY,
                    err.message,
                    provider_reference,
                    order_id=order_id,
                ))
            case _:
                return cast(Result[Reconciliation, ReconcileError], result)

    # ═══════════════════════════════════════════════════════════════════════════
    # Under the lock
    # ═══════════════════════════════════════════════════════════════════════════

    async def _apply(
        self,
        order_id: str,
        matched_by: MatchStrategy,
        reference: str,
        status: TransactionStatus,
        amount: Decimal,
        payload: dict[str, Any],
        hints: PaymentMetadata,
    ) -> Result[Reconciliation, ReconcileError]:
        event: TransitionEvent | None = None
        incident: AuditEvent | None = None
        mismatch: ReconcileError | None = None
        settled_by: str | None = None
        now = self._clock()

        try:
            async with self._session_factory() as session:
                replay = await self._replay_of(session, reference, status, amount)
                if replay is not None:
                    return Ok(replay)

                row = await load_order(session, order_id)
                if row is None:
                    return await self._orphan(reference, status, amount, payload, hints)

                total = Decimal(row.total_amount)
                current = OrderStatus(row.status)
                if status == TransactionStatus.SUCCESS and row.payment_status == PaymentStatus.PAID.value:
                    settled_by = await self._settled_by(session, order_id, reference)

                if status == TransactionStatus.SUCCESS and abs(amount - total) > self._policy.amount_tolerance:
                    mismatch = ReconcileError(
                        ReconcileErrorKind.AMOUNT_MISMATCH,
                        f"Paid {amount}, order total is {total}",
                        reference,
                        order_id=order_id,
                        expected=total,
                        received=amount,
                    )
                    # An already linked row is an accepted payment; leave it as it is
                    existing = await find_transaction(session, reference)
                    if existing is None or existing.order_id is None:
                        match await self._upsert_transaction(
                            session, reference, None, status, amount, payload, hints, now,
                            review_reason=ReviewReason.AMOUNT_MISMATCH,
                        ):
                            case Error(err):
                                return Error(err)
                            case Ok(_):
                                await session.commit()

                elif settled_by is not None:
                    match await self._upsert_transaction(
                        session, reference, order_id, status, amount, payload, hints, now,
                        review_reason=ReviewReason.DUPLICATE_PAYMENT,
                    ):
                        case Error(err):
                            return Error(err)
                        case Ok(_):
                            await session.commit()

                elif status == TransactionStatus.SUCCESS:
                    match await self._upsert_transaction(
                        session, reference, order_id, status, amount, payload, hints, now
                    ):
                        case Error(err):
                            return Error(err)
                        case Ok(_):
                            pass
                    await session.execute(
                        update(OrderRow)
                        .where(OrderRow.id == order_id)
                        .values(
                            payment_status=PaymentStatus.PAID.value,
                            paid_at=func.coalesce(OrderRow.paid_at, now),
                            verified_at=now,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )

                    if current == OrderStatus.PENDING:
                        match await self._machine.apply(
                            session, order_id, OrderStatus.CONFIRMED, self._policy.actor_id
                        ):
                            case Ok(applied):
                                event = applied.event
                            case Error(err):
                                # Note: payment stays recorded; the status is left for an admin
                                self._logger.warning(
                                    "payment_confirm_skipped",
                                    order_id=order_id,
                                    reason=err.kind.name,
                                )
                    elif current in _REFUSED_FOR_PAYMENT:
                        incident = AuditEvent(
                            kind=AuditKind.INCIDENT,
                            action="payment_on_terminal_order",
                            order_id=order_id,
                            actor_id=self._policy.actor_id,
                            severity=Severity.HIGH,
                            reference=reference,
                            details={"status": current.value, "amount": str(amount)},
                        )
                    await session.commit()

                else:
                    match await self._upsert_transaction(
                        session, reference, order_id, status, amount, payload, hints, now
                    ):
                        case Error(err):
                            return Error(err)
                        case Ok(_):
                            pass
                    if status == TransactionStatus.FAILED:
                        await session.execute(
                            update(OrderRow)
                            .where(
                                OrderRow.id == order_id,
                                OrderRow.payment_status != PaymentStatus.PAID.value,
                            )
                            .values(payment_status=PaymentStatus.FAILED.value, updated_at=now)
                            .execution_options(synchronize_session=False)
                        )
                    await session.commit()

                fresh = await load_order(session, order_id)
        except SQLAlchemyError as e:
            return Error(self._store_error(reference, e, order_id))

        if mismatch is not None:
            return await self._hold_mismatch(mismatch)

        if settled_by is not None:
            self._logger.error(
                "payment_duplicate",
                provider_reference=reference,
                order_id=order_id,
                settled_by=settled_by,
            )
            await record_quietly(self._audit, AuditEvent(
                kind=AuditKind.INCIDENT,
                action="duplicate_payment",
                order_id=order_id,
                actor_id=self._policy.actor_id,
                severity=Severity.HIGH,
                reference=reference,
                details={"settled_by": settled_by, "amount": str(amount)},
            ))
            return Ok(Reconciliation(
                outcome=ReconcileOutcome.ALREADY_PROCESSED,
                provider_reference=reference,
                order_id=order_id,
                matched_by=matched_by,
                order=Order.from_row(fresh) if fresh is not None else None,
                review_reason=ReviewReason.DUPLICATE_PAYMENT,
            ))

        if event is not None:
            await self._machine.publish(event)
        if incident is not None:
            self._logger.warning("payment_on_terminal_order", order_id=order_id, provider_reference=reference)
            await record_quietly(self._audit, incident)

        outcome = (
            ReconcileOutcome.RECONCILED
            if status == TransactionStatus.SUCCESS
            else ReconcileOutcome.RECORDED
        )
        self._logger.info(
            "payment_reconciled",
            provider_reference=reference,
            order_id=order_id,
            outcome=outcome.value,
            matched_by=matched_by.value,
            status_advanced=event is not None,
        )
        return Ok(Reconciliation(
            outcome=outcome,
            provider_reference=reference,
            order_id=order_id,
            matched_by=matched_by,
            status_advanced=event is not None,
            order=Order.from_row(fresh) if fresh is not None else None,
        ))

    async def _hold_mismatch(self, mismatch: ReconcileError) -> Result[Reconciliation, ReconcileError]:
        """
        Raise the mismatch incident. Unlike other audit writes this one must
        land: if it does not, the caller gets a retryable STORE_ERROR so the
        gateway delivers the report again.
        """
        reference = mismatch.provider_reference
        self._logger.error(
            "payment_amount_mismatch",
            provider_reference=reference,
            order_id=mismatch.order_id,
            expected=str(mismatch.expected),
            received=str(mismatch.received),
        )
        match await self._audit.record(AuditEvent(
            kind=AuditKind.INCIDENT,
            action="payment_amount_mismatch",
            order_id=mismatch.order_id,
            actor_id=self._policy.actor_id,
            severity=Severity.CRITICAL,
            reference=reference,
            details={
                "expected": str(mismatch.expected),
                "received": str(mismatch.received),
                "tolerance": str(self._policy.amount_tolerance),
            },
        )):
            case Error(err):
                self._logger.error("payment_mismatch_unrecorded", provider_reference=reference, error=err.message)
                return Error(ReconcileError(
                    ReconcileErrorKind.STORE_ERROR,
                    f"Amount mismatch on {reference} could not be recorded: {err.message}",
                    reference,
                    order_id=mismatch.order_id,
                ))
            case Ok(_):
                return Error(mismatch)

    # ═══════════════════════════════════════════════════════════════════════════
    # Orphans
    # ═══════════════════════════════════════════════════════════════════════════

    async def _orphan(
        self,
        reference: str,
        status: TransactionStatus,
        amount: Decimal,
        payload: dict[str, Any],
        hints: PaymentMetadata,
    ) -> Result[Reconciliation, ReconcileError]:
        """Keep the transaction, unlinked, so the batch job can retry it."""
        try:
            async with self._session_factory() as session:
                match await self._upsert_transaction(
                    session, reference, None, status, amount, payload, hints, self._clock()
                ):
                    case Error(err):
                        return Error(err)
                    case Ok(created):
                        await session.commit()
        except SQLAlchemyError as e:
            return Error(self._store_error(reference, e))

        self._logger.warning("payment_orphaned", provider_reference=reference, first_seen=created)
        if created:
            await record_quietly(self._audit, AuditEvent(
                kind=AuditKind.INCIDENT,
                action="payment_orphaned",
                actor_id=self._policy.actor_id,
                severity=Severity.MEDIUM,
                reference=reference,
                details={"status": status.value, "amount": str(amount), **hints.to_dict()},
            ))
        return Error(ReconcileError(
            ReconcileErrorKind.ORPHANED,
            f"No order matches {reference}",
            reference,
        ))

    # ═══════════════════════════════════════════════════════════════════════════
    # Helpers
    # ═══════════════════════════════════════════════════════════════════════════

    async def _replay_of(
        self,
        session: AsyncSession,
        reference: str,
        status: TransactionStatus,
        amount: Decimal,
    ) -> Reconciliation | None:
        """Same report already applied? Read-only."""
        transaction = await find_transaction(session, reference)
        if transaction is None or transaction.order_id is None:
            return None
        if transaction.status != status.value:
            return None
        if abs(Decimal(transaction.amount) - amount) > self._policy.amount_tolerance:
            return None

        order = await load_order(session, transaction.order_id)
        if order is None:
            return None
        if status == TransactionStatus.SUCCESS and order.payment_status != PaymentStatus.PAID.value:
            return None

        return Reconciliation(
            outcome=ReconcileOutcome.ALREADY_PROCESSED,
            provider_reference=reference,
            order_id=order.id,
            matched_by=MatchStrategy.LINKED,
            order=Order.from_row(order),
            review_reason=ReviewReason(transaction.review_reason) if transaction.review_reason else None,
        )

    async def _settled_by(self, session: AsyncSession, order_id: str, reference: str) -> str | None:
        """Reference of another successful transaction already linked to the order."""
        return (await session.execute(
            select(PaymentTransactionRow.provider_reference)
            .where(
                PaymentTransactionRow.order_id == order_id,
                PaymentTransactionRow.status == TransactionStatus.SUCCESS.value,
                PaymentTransactionRow.provider_reference != reference,
                PaymentTransactionRow.review_reason.is_(None),
            )
            .order_by(PaymentTransactionRow.created_at.asc())
            .limit(1)
        )).scalar_one_or_none()

    async def _upsert_transaction(
        self,
        session: AsyncSession,
        reference: str,
        order_id: str | None,
        status: TransactionStatus,
        amount: Decimal,
        payload: dict[str, Any],
        hints: PaymentMetadata,
        now: datetime,
        *,
        review_reason: ReviewReason | None = None,
    ) -> Result[bool, ReconcileError]:
        """
        Insert-or-update keyed by provider_reference. Ok(True) if inserted.

        Never relinks; never downgrades a success. A success report sets
        review_reason, so a clean one clears an earlier hold.
        """
        cursor = cast(CursorResult[Any], await session.execute(
            insert_for(session, PaymentTransactionRow.__table__)
            .values(
                id=str(uuid.uuid4()),
                provider_reference=reference,
                order_id=order_id,
                amount=amount,
                status=status.value,
                metadata=hints.to_dict(),
                gateway_payload=payload,
                review_reason=review_reason.value if review_reason else None,
                paid_at=now if status == TransactionStatus.SUCCESS else None,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["provider_reference"])
        ))
        if cursor.rowcount > 0:
            return Ok(True)

        row = await find_transaction(session, reference)
        if row is None:
            return Error(ReconcileError(
                ReconcileErrorKind.STORE_ERROR,
                f"Transaction {reference} conflicted on insert but could not be read back",
                reference,
                order_id=order_id,
            ))

        if row.order_id is None and order_id is not None:
            row.order_id = order_id
        if row.status == TransactionStatus.SUCCESS.value and status != TransactionStatus.SUCCESS:
            self._logger.info("stale_payment_status_ignored", provider_reference=reference, reported=status.value)
        else:
            row.status = status.value
            row.amount = amount
            if status == TransactionStatus.SUCCESS:
                row.review_reason = review_reason.value if review_reason else None
                if row.paid_at is None:
                    row.paid_at = now
        row.hints = {**(row.hints or {}), **hints.to_dict()}
        row.gateway_payload = payload
        row.updated_at = now
        await session.flush()
        return Ok(False)

    def _store_error(
        self, reference: str, e: SQLAlchemyError, order_id: str | None = None
    ) -> ReconcileError:
        self._logger.error("reconcile_store_error", provider_reference=reference, error=str(e))
        return ReconcileError(ReconcileErrorKind.STORE_ERROR, str(e), reference, order_id=order_id)


__all__ = ("ReconciliationEngine",)
