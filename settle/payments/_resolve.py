"""
Reference resolution — gateway reference (+ metadata hints) → order.

Lookup order, first match wins:

    0. transaction row already linked          (never relinked)
    1. metadata.order_id, if it is a UUID
    2. orders.payment_reference == reference
    3. alias: pay_<x> ↔ txn_<x>, then step 2 again
    4. metadata.order_number

Note: step 3 is a heuristic. An alias hit never lands on an order that is
already paid, so it cannot turn a real orphan into a false match.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from settle.db import OrderRow, PaymentTransactionRow
from settle.orders import PaymentStatus
from settle.payments._types import MatchStrategy, PaymentMetadata


ALIAS_PREFIXES: tuple[tuple[str, str], ...] = (
    ("pay_", "txn_"),
    ("txn_", "pay_"),
)


@dataclass(frozen=True, slots=True)
class Resolution:
    order: OrderRow
    matched_by: MatchStrategy


def is_uuid(value: str | None) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def alias_candidates(reference: str) -> list[str]:
    """Alternate forms of a reference, e.g. pay_abc → [txn_abc]."""
    return [
        replacement + reference[len(prefix):]
        for prefix, replacement in ALIAS_PREFIXES
        if reference.startswith(prefix) and len(reference) > len(prefix)
    ]


async def find_transaction(session: AsyncSession, reference: str) -> PaymentTransactionRow | None:
    return (await session.execute(
        select(PaymentTransactionRow)
        .where(PaymentTransactionRow.provider_reference == reference)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


async def resolve_order(
    session: AsyncSession,
    reference: str,
    metadata: PaymentMetadata,
) -> Resolution | None:
    transaction = await find_transaction(session, reference)
    if transaction is not None and transaction.order_id is not None:
        linked = await _order_by(session, OrderRow.id == transaction.order_id)
        if linked is not None:
            return Resolution(linked, MatchStrategy.LINKED)

    if is_uuid(metadata.order_id):
        by_id = await _order_by(session, OrderRow.id == metadata.order_id)
        if by_id is not None:
            return Resolution(by_id, MatchStrategy.METADATA_ORDER_ID)

    by_reference = await _order_by(session, OrderRow.payment_reference == reference)
    if by_reference is not None:
        return Resolution(by_reference, MatchStrategy.PAYMENT_REFERENCE)

    for alias in alias_candidates(reference):
        by_alias = await _order_by(
            session,
            OrderRow.payment_reference == alias,
            OrderRow.payment_status != PaymentStatus.PAID.value,
        )
        if by_alias is not None:
            return Resolution(by_alias, MatchStrategy.ALIAS)

    if metadata.order_number:
        by_number = await _order_by(session, OrderRow.order_number == metadata.order_number)
        if by_number is not None:
            return Resolution(by_number, MatchStrategy.ORDER_NUMBER)

    return None


async def _order_by(session: AsyncSession, *conditions: object) -> OrderRow | None:
    return (await session.execute(
        select(OrderRow)
        .where(*conditions)  # type: ignore[arg-type]
        .order_by(OrderRow.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()


__all__ = (
    "ALIAS_PREFIXES",
    "Resolution",
    "is_uuid",
    "alias_candidates",
    "find_transaction",
    "resolve_order",
)
