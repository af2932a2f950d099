"""
Verification use-case: the client returns from checkout and asks us to
confirm the payment. The gateway is queried for the authoritative status;
whatever the client sends is only a hint.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from application.dtos.payments import GatewayPaymentStatus, VerifyPayment, VerifyPaymentResult
from application.ports.events import EventPublisher
from application.ports.payment_gateway import PaymentGateway, PaymentProviderError
from application.services.entitlements import grant_plan
from application.services.event_dispatch import publish_committed
from core.logging_config import get_logger
from domain.common.exceptions import (
    PaymentGatewayException,
    PaymentVerificationFailedException,
    TransactionNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.transaction.entity import Transaction
from domain.transaction.retry import RetryPolicy
from domain.transaction.service import TransactionDomainService
from domain.user.entity import User


logger = get_logger(__name__)


class VerificationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        *,
        publisher: Optional[EventPublisher] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self.publisher = publisher
        self.retry_policy = retry_policy or RetryPolicy()

    async def _load_owned(self, user: User, transaction_id: str) -> Transaction:
        async with self._uow_factory(readonly=True) as uow:
            transaction = await uow.transaction_repository.get_by_transaction_id(transaction_id)
        if transaction is None or transaction.user_id != user.id:
            raise TransactionNotFoundException(transaction_id)
        return transaction

    async def verify(self, user: User, req: VerifyPayment) -> VerifyPaymentResult:
        transaction = await self._load_owned(user, req.transaction_id)
        logger.info(
            "payment_verify_request",
            transaction_id=transaction.transaction_id,
            user_id=user.id,
            client_payment_id=req.payment_id,
            has_signature=bool(req.signature),
        )
        if transaction.is_paid:
            return VerifyPaymentResult(
                transaction_id=transaction.transaction_id,
                status=transaction.status.value,
                already_completed=True,
            )
        if not transaction.gateway_order_id:
            raise PaymentVerificationFailedException(transaction.transaction_id, None)

        try:
            status = await self.gateway.get_session_status(transaction.gateway_order_id)
        except PaymentProviderError as exc:
            logger.error(
                "payment_verify_gateway_failed",
                transaction_id=transaction.transaction_id,
                error=exc.message,
            )
            await self._record_failure(
                transaction.transaction_id,
                reason="gateway_error",
                error_code=str(exc.code),
                error_message=exc.message,
            )
            raise PaymentGatewayException(
                "Unable to verify payment with gateway",
                details={"transaction_id": transaction.transaction_id},
            ) from exc

        if status.is_paid:
            return await self._complete(transaction.transaction_id, status)

        failed = await self._record_failure(
            transaction.transaction_id,
            reason=f"gateway_status:{status.raw_status or status.status}",
        )
        if failed.is_paid:
            # a webhook finalized it while we were talking to the gateway
            return VerifyPaymentResult(
                transaction_id=failed.transaction_id,
                status=failed.status.value,
                already_completed=True,
            )
        raise PaymentVerificationFailedException(failed.transaction_id, status.raw_status or status.status)

    async def _complete(self, transaction_id: str, status: GatewayPaymentStatus) -> VerifyPaymentResult:
        async with self._uow_factory() as uow:
            domain_service = TransactionDomainService(uow.transaction_repository, retry_policy=self.retry_policy)
            transaction, transitioned = await domain_service.complete(
                transaction_id,
                source="verification",
                gateway_payment_id=status.payment_id,
                gateway_transaction_id=status.gateway_transaction_id,
            )
            if transitioned:
                await grant_plan(uow, transaction)
            events = domain_service.clear_events()

        if transitioned:
            logger.info(
                "transaction_completed",
                transaction_id=transaction_id,
                source="verification",
                gateway_payment_id=transaction.gateway_payment_id,
            )
        await publish_committed(self.publisher, events)
        return VerifyPaymentResult(
            transaction_id=transaction.transaction_id,
            status=transaction.status.value,
            already_completed=not transitioned,
        )

    async def _record_failure(
        self,
        transaction_id: str,
        *,
        reason: str,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Transaction:
        now = datetime.now(timezone.utc)
        async with self._uow_factory() as uow:
            domain_service = TransactionDomainService(uow.transaction_repository, retry_policy=self.retry_policy)
            transaction, transitioned = await domain_service.fail(
                transaction_id,
                reason,
                error_code=error_code,
                error_message=error_message,
                schedule_retry=True,
                now=now,
            )
            events = domain_service.clear_events()

        if transitioned:
            logger.warning(
                "transaction_failed",
                transaction_id=transaction_id,
                reason=reason,
                retry_count=transaction.retry_count,
                next_retry_at=transaction.next_retry_at.isoformat() if transaction.next_retry_at else None,
            )
            if transaction.next_retry_at is None:
                logger.error(
                    "transaction_retry_exhausted",
                    transaction_id=transaction_id,
                    retry_count=transaction.retry_count,
                    max_retries=transaction.max_retries,
                )
        await publish_committed(self.publisher, events)
        return transaction
