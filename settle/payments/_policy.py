"""
Reconciliation policy.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from decimal import Decimal


@dataclass(frozen=True, slots=True)
class ReconcilePolicy:
    """
    Example:
        policy = (
            ReconcilePolicy()
            .with_tolerance("0.01")
            .with_batch(size=200, concurrency=8)
        )

    Note: amount_tolerance is absolute, in currency units.
    """

    amount_tolerance: Decimal = Decimal("0.01")
    actor_id: str = "payment-gateway"
    batch_size: int = 100
    batch_concurrency: int = 4
    batch_interval: timedelta = timedelta(minutes=5)

    def with_tolerance(self, tolerance: Decimal | str) -> ReconcilePolicy:
        return replace(self, amount_tolerance=Decimal(str(tolerance)))

    def with_actor(self, actor_id: str) -> ReconcilePolicy:
        return replace(self, actor_id=actor_id)

    def with_batch(
        self,
        *,
        size: int | None = None,
        concurrency: int | None = None,
        interval_seconds: float | None = None,
    ) -> ReconcilePolicy:
        return replace(
            self,
            batch_size=size or self.batch_size,
            batch_concurrency=concurrency or self.batch_concurrency,
            batch_interval=(
                timedelta(seconds=interval_seconds) if interval_seconds else self.batch_interval
            ),
        )


__all__ = ("ReconcilePolicy",)
