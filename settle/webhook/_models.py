"""
Webhook models — the validated envelope the core accepts from the gateway.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from settle.errors import ErrorCode
from settle.payments import PaymentMetadata, TransactionStatus


_SUCCESS = frozenset({"success", "successful", "succeeded", "completed", "paid"})
_FAILED = frozenset({"failed", "failure", "abandoned", "reversed", "declined"})
_CENT = Decimal("0.01")


class GatewayMetadata(BaseModel):
    """Order hints echoed back by the gateway. Anything else is ignored."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    order_id: str | None = None
    order_number: str | None = None

    def hints(self) -> PaymentMetadata:
        return PaymentMetadata(order_id=self.order_id, order_number=self.order_number)


class GatewayEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider_reference: str = Field(min_length=1, max_length=100)
    status: TransactionStatus
    amount: Decimal = Field(ge=0, decimal_places=2)
    metadata: GatewayMetadata = Field(default_factory=GatewayMetadata)
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("provider_reference", mode="before")
    @classmethod
    def strip_reference(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _SUCCESS:
                return TransactionStatus.SUCCESS
            if lowered in _FAILED:
                return TransactionStatus.FAILED
            return TransactionStatus.PENDING
        return value

    @classmethod
    def from_charge(cls, body: Mapping[str, Any]) -> GatewayEvent | None:
        """
        Build from a `charge.*` notification. None for other event types.

            {"event": "charge.success",
             "data": {"reference": "pay_7Hq2", "amount": 500000,   # minor units
                      "metadata": {"order_id": "..."}}}
        """
        event = body.get("event")
        if event not in ("charge.success", "charge.failed"):
            return None

        data = body.get("data") or {}
        return cls(
            provider_reference=data.get("reference", ""),
            status=TransactionStatus.SUCCESS if event == "charge.success" else TransactionStatus.FAILED,
            amount=(Decimal(str(data.get("amount", 0))) / 100).quantize(_CENT),
            metadata=GatewayMetadata.model_validate(data.get("metadata") or {}),
            payload=dict(body),
        )


class Acknowledgement(BaseModel):
    """
    What the gateway gets back.

    accepted=True means "durably recorded, do not resend", even when the
    event is held for review (code=PAYMENT_REVIEW). accepted=False with
    retry=True asks the gateway to deliver again later.
    """

    model_config = ConfigDict(frozen=True)

    accepted: bool
    provider_reference: str
    outcome: str
    order_id: str | None = None
    code: ErrorCode | None = None
    retry: bool = False
    replayed: bool = False


__all__ = (
    "GatewayMetadata",
    "GatewayEvent",
    "Acknowledgement",
)
