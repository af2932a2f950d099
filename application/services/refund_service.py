"""
Refund use-case (operator initiated).

The refund is recorded as pending before the gateway is called, so the
refundable balance already accounts for it while the call is in flight.
"""
from __future__ import annotations

from typing import Callable, Optional

from application.dtos.payments import GatewayRefundRequest, RefundCreate, TransactionDTO
from application.ports.events import EventPublisher
from application.ports.payment_gateway import PaymentGateway, PaymentProviderError
from application.services.event_dispatch import publish_committed
from core.logging_config import get_logger
from domain.common.exceptions import PaymentGatewayException, TransactionNotRefundableException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.transaction.service import TransactionDomainService


logger = get_logger(__name__)


class RefundService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        *,
        publisher: Optional[EventPublisher] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self.publisher = publisher

    async def refund(self, transaction_id: str, req: RefundCreate) -> TransactionDTO:
        async with self._uow_factory() as uow:
            domain_service = TransactionDomainService(uow.transaction_repository)
            transaction, refund = await domain_service.request_refund(transaction_id, req.amount, req.reason)

        if not transaction.gateway_payment_id:
            # nothing to refund against at the gateway
            await self._resolve(transaction_id, refund.refund_id, succeeded=False, reason="missing_gateway_payment_id")
            raise TransactionNotRefundableException(transaction_id, transaction.status.value)

        logger.info(
            "refund_requested",
            transaction_id=transaction_id,
            refund_id=refund.refund_id,
            amount=str(refund.amount),
        )
        try:
            result = await self.gateway.refund(
                GatewayRefundRequest(
                    payment_id=transaction.gateway_payment_id,
                    refund_reference=refund.refund_id,
                    amount=refund.amount,
                    currency=transaction.currency,
                    reason=req.reason,
                )
            )
        except PaymentProviderError as exc:
            logger.error(
                "refund_failed",
                transaction_id=transaction_id,
                refund_id=refund.refund_id,
                error=exc.message,
            )
            await self._resolve(transaction_id, refund.refund_id, succeeded=False, reason=exc.message)
            raise PaymentGatewayException(
                "Refund rejected by gateway",
                details={"transaction_id": transaction_id, "refund_id": refund.refund_id},
            ) from exc

        transaction = await self._resolve(
            transaction_id, refund.refund_id, succeeded=True, gateway_refund_id=result.refund_id
        )
        logger.info(
            "refund_processed",
            transaction_id=transaction_id,
            refund_id=refund.refund_id,
            status=transaction.status.value,
        )
        return TransactionDTO.from_entity(transaction)

    async def _resolve(
        self,
        transaction_id: str,
        refund_id: str,
        *,
        succeeded: bool,
        gateway_refund_id: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        async with self._uow_factory() as uow:
            domain_service = TransactionDomainService(uow.transaction_repository)
            transaction = await domain_service.resolve_refund(
                transaction_id,
                refund_id,
                succeeded=succeeded,
                gateway_refund_id=gateway_refund_id,
                reason=reason,
            )
            events = domain_service.clear_events()
        await publish_committed(self.publisher, events)
        return transaction
