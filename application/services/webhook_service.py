"""
Webhook processing for gateway-pushed payment outcomes.

The signature is checked against the exact bytes received before anything
is parsed. Dedupe record and state change share one unit of work, so a
replayed body either finds its record or the whole delivery rolled back.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import ValidationError

from application.dtos.payments import WebhookAck, WebhookPayload
from application.ports.events import EventPublisher
from application.services.entitlements import grant_plan
from application.services.event_dispatch import publish_committed
from core.logging_config import get_logger
from domain.common.exceptions import (
    DomainValidationException,
    InvalidTransactionTransition,
    WebhookSignatureException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.transaction.service import TransactionDomainService
from domain.webhook.entity import WebhookEvent, webhook_event_key


logger = get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, raw_body: bytes, signature: Optional[str]) -> bool:
    """Accepts bare hex or the `sha256=<hex>` form."""
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = compute_signature(secret, raw_body).encode("ascii")
    # str compare_digest rejects non-ASCII input with TypeError
    return hmac.compare_digest(expected, provided.lower().encode("utf-8"))


class WebhookProcessor:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        secret: str,
        *,
        publisher: Optional[EventPublisher] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._secret = secret
        self.publisher = publisher

    @staticmethod
    def _parse(raw_body: bytes) -> WebhookPayload:
        try:
            body = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DomainValidationException("Webhook body is not valid JSON", field="body") from exc
        try:
            return WebhookPayload.model_validate(body)
        except ValidationError as exc:
            raise DomainValidationException(
                "Webhook body is missing required fields",
                field="body",
                details={"errors": exc.errors(include_url=False)},
            ) from exc

    async def process(self, raw_body: bytes, signature: Optional[str]) -> WebhookAck:
        if not verify_signature(self._secret, raw_body, signature):
            logger.warning(
                "webhook_signature_rejected",
                has_signature=bool(signature),
                body_bytes=len(raw_body),
            )
            raise WebhookSignatureException()

        payload = self._parse(raw_body)
        event_type = payload.event_type
        order_id = payload.hostedpage_id
        now = datetime.now(timezone.utc)
        logger.info("webhook_received", event_type=event_type, gateway_order_id=order_id)

        async with self._uow_factory() as uow:
            fresh = await uow.webhook_event_repository.record(
                WebhookEvent(
                    event_key=webhook_event_key(raw_body),
                    event_type=event_type,
                    gateway_order_id=order_id,
                    received_at=now,
                )
            )
            if not fresh:
                logger.info("webhook_duplicate", event_type=event_type, gateway_order_id=order_id)
                return WebhookAck(duplicate=True, event_type=event_type)

            if event_type not in (PAYMENT_SUCCEEDED, PAYMENT_FAILED):
                logger.info("webhook_event_ignored", event_type=event_type)
                return WebhookAck(event_type=event_type)

            transaction = await uow.transaction_repository.get_by_gateway_order_id(order_id) if order_id else None
            if transaction is None:
                logger.warning("webhook_unknown_order", event_type=event_type, gateway_order_id=order_id)
                return WebhookAck(event_type=event_type)

            domain_service = TransactionDomainService(uow.transaction_repository)
            if event_type == PAYMENT_SUCCEEDED:
                try:
                    transaction, transitioned = await domain_service.complete(
                        transaction.transaction_id,
                        source="webhook",
                        gateway_payment_id=payload.payment_id,
                        webhook_verified=True,
                        now=now,
                    )
                except InvalidTransactionTransition:
                    logger.error(
                        "payment_received_for_cancelled_transaction",
                        transaction_id=transaction.transaction_id,
                        gateway_payment_id=payload.payment_id,
                    )
                    return WebhookAck(event_type=event_type, transaction_id=transaction.transaction_id)
                if transitioned:
                    await grant_plan(uow, transaction, now)
                    logger.info("transaction_completed", transaction_id=transaction.transaction_id, source="webhook")
            else:
                transaction, transitioned = await domain_service.fail(
                    transaction.transaction_id,
                    payload.failure_reason or "gateway_reported_failure",
                    webhook_verified=True,
                    now=now,
                )
                if transitioned:
                    logger.warning(
                        "transaction_failed",
                        transaction_id=transaction.transaction_id,
                        reason=transaction.failure_reason,
                        source="webhook",
                    )
            events = domain_service.clear_events()

        await publish_committed(self.publisher, events)
        return WebhookAck(event_type=event_type, transaction_id=transaction.transaction_id)
