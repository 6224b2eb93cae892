"""
Webhook handler — idempotent entry point for gateway payment events.

    gateway ──► handle(key, event)
                   │ idempotency: same key + same body → cached ack
                   ▼
                engine.reconcile(...)
                   ├─ reconciled / recorded / already processed  → accepted
                   ├─ orphaned / amount mismatch (held for review) → accepted
                   └─ busy / store error                           → not cached,
                                                                     retry=True

Once an event is durably recorded the gateway always gets accepted=True,
even when the payment needs a human. Resending would only add noise.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from kungfu import Result, Ok, Error

from settle.errors import ErrorCode, public_code
from settle.idempotency import (
    IdempotencyError,
    IdempotencyErrorKind,
    IdempotencyResult,
    Policy,
    Store,
    fingerprint,
    idempotent,
)
from settle.payments import ReconcileError, ReconciliationEngine
from settle.webhook._models import Acknowledgement, GatewayEvent


@dataclass(frozen=True, slots=True)
class WebhookDelivery:
    idempotency_key: str
    event: GatewayEvent


class WebhookHandler:
    def __init__(
        self,
        engine: ReconciliationEngine,
        store: Store,
        policy: Policy = Policy(),
    ) -> None:
        self._engine = engine
        self._logger = structlog.get_logger().bind(component="webhook_handler")
        self._executor = (
            idempotent(self._process)
            .key(lambda d: d.idempotency_key)
            .fingerprint(lambda d: fingerprint(d.event.model_dump(mode="json", exclude={"payload"})))
            .store(store)
            .policy(policy)
            .build()
        )

    async def handle(self, idempotency_key: str, event: GatewayEvent) -> Acknowledgement:
        log = self._logger.bind(idempotency_key=idempotency_key, reference=event.provider_reference)

        match await self._executor.run(WebhookDelivery(idempotency_key, event)):
            case Ok(IdempotencyResult(value=value, from_cache=True)):
                log.info("webhook_replayed")
                return Acknowledgement.model_validate(value).model_copy(update={"replayed": True})

            case Ok(IdempotencyResult(value=value)):
                return Acknowledgement.model_validate(value)

            case Error(IdempotencyError(
                kind=IdempotencyErrorKind.EXECUTION,
                original_error=ReconcileError() as err,
            )):
                log.warning("webhook_deferred", reason=err.kind.name, error=err.message)
                return Acknowledgement(
                    accepted=False,
                    provider_reference=event.provider_reference,
                    outcome=err.kind.name.lower(),
                    order_id=err.order_id,
                    code=public_code(err),
                    retry=True,
                )

            case Error(IdempotencyError() as err):
                if err.kind is IdempotencyErrorKind.EXECUTION:
                    log.error("webhook_processing_failed", error=err.message)
                else:
                    log.warning("webhook_rejected", reason=err.kind.name, error=err.message)
                return Acknowledgement(
                    accepted=False,
                    provider_reference=event.provider_reference,
                    outcome=err.kind.name.lower(),
                    code=public_code(err),
                    retry=err.kind is not IdempotencyErrorKind.INPUT_MISMATCH,
                )

            case unexpected:
                raise TypeError(f"Unexpected idempotency result: {unexpected!r}")

    async def _process(self, delivery: WebhookDelivery) -> Result[dict[str, Any], ReconcileError]:
        """
        Reconcile and build the ack to cache.

        Note: returns a JSON-ready dict, the shape the store hands back on replay.
        """
        event = delivery.event
        result = await self._engine.reconcile(
            event.provider_reference,
            event.status,
            event.amount,
            event.payload,
            event.metadata.hints(),
        )

        match result:
            case Ok(rec):
                ack = Acknowledgement(
                    accepted=True,
                    provider_reference=rec.provider_reference,
                    outcome=rec.outcome.value,
                    order_id=rec.order_id,
                    code=ErrorCode.PAYMENT_REVIEW if rec.review_reason else None,
                )
            case Error(err) if err.retryable:
                return Error(err)
            case Error(err):
                self._logger.warning(
                    "webhook_held_for_review",
                    reference=err.provider_reference,
                    reason=err.kind.name,
                )
                ack = Acknowledgement(
                    accepted=True,
                    provider_reference=err.provider_reference,
                    outcome=err.kind.name.lower(),
                    order_id=err.order_id,
                    code=public_code(err),
                )

        return Ok(ack.model_dump(mode="json"))


__all__ = (
    "WebhookDelivery",
    "WebhookHandler",
)
