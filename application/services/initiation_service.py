"""
Initiation use-case: open a pending transaction for a plan and obtain a
hosted-checkout session for it.

The pending row is committed before the gateway is called so that a
gateway failure still leaves a traceable transaction without a session id.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from application.dtos.payments import (
    CheckoutSessionRequest,
    InitiatePayment,
    InitiatePaymentResult,
    TransactionDTO,
)
from application.ports.events import EventPublisher
from application.ports.payment_gateway import (
    PaymentGateway,
    PaymentProviderError,
)
from application.services.event_dispatch import publish_committed
from core.logging_config import get_logger
from domain.common.exceptions import (
    PaymentGatewayException,
    PlanNotFoundException,
    PlanUnavailableException,
    TransactionNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.transaction.entity import Transaction
from domain.transaction.service import TransactionDomainService
from domain.user.entity import User


logger = get_logger(__name__)


class InitiationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        *,
        publisher: Optional[EventPublisher] = None,
        max_retries: int = 3,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self.publisher = publisher
        self.max_retries = max_retries

    async def initiate(self, user: User, req: InitiatePayment) -> InitiatePaymentResult:
        now = datetime.now(timezone.utc)
        async with self._uow_factory() as uow:
            plan = await uow.plan_repository.get_by_id(req.plan_id)
            if plan is None:
                raise PlanNotFoundException(req.plan_id)
            if not plan.is_available(now):
                raise PlanUnavailableException(req.plan_id)
            transaction = await uow.transaction_repository.create(
                Transaction.start(
                    user_id=user.id,
                    plan_id=plan.id,
                    amount=plan.price,
                    currency=plan.currency,
                    payment_method=req.payment_method.value if req.payment_method else None,
                    max_retries=self.max_retries,
                    now=now,
                )
            )

        logger.info(
            "payment_initiate_request",
            transaction_id=transaction.transaction_id,
            user_id=user.id,
            plan_id=plan.id,
            amount=str(transaction.amount),
            currency=transaction.currency,
        )
        try:
            session = await self.gateway.create_checkout_session(
                CheckoutSessionRequest(
                    reference_id=transaction.transaction_id,
                    amount=transaction.amount,
                    currency=transaction.currency,
                    plan_name=plan.name,
                    description=plan.description,
                    customer_id=str(user.id),
                    customer_name=user.name,
                    customer_email=user.email,
                    customer_phone=user.mobile,
                )
            )
        except PaymentProviderError as exc:
            logger.error(
                "payment_initiate_gateway_failed",
                transaction_id=transaction.transaction_id,
                error=exc.message,
            )
            raise PaymentGatewayException(
                "Unable to create checkout session",
                details={"transaction_id": transaction.transaction_id},
            ) from exc

        async with self._uow_factory() as uow:
            domain_service = TransactionDomainService(uow.transaction_repository)
            transaction = await domain_service.attach_checkout_session(
                transaction.transaction_id, session.session_id, session.payment_url
            )

        logger.info(
            "payment_initiate_response",
            transaction_id=transaction.transaction_id,
            gateway_order_id=session.session_id,
        )
        return InitiatePaymentResult(
            transaction_id=transaction.transaction_id,
            payment_url=session.payment_url,
            gateway_order_id=session.session_id,
            amount=transaction.amount,
            currency=transaction.currency,
        )

    async def cancel(self, user: User, transaction_id: str) -> TransactionDTO:
        """User abandoned checkout; only pending/processing transactions can be cancelled."""
        async with self._uow_factory() as uow:
            existing = await uow.transaction_repository.get_by_transaction_id(transaction_id)
            if existing is None or existing.user_id != user.id:
                raise TransactionNotFoundException(transaction_id)
            domain_service = TransactionDomainService(uow.transaction_repository)
            transaction, cancelled = await domain_service.cancel(transaction_id)
            events = domain_service.clear_events()

        if cancelled:
            logger.info("transaction_cancelled", transaction_id=transaction_id, user_id=user.id)
        await publish_committed(self.publisher, events)
        return TransactionDTO.from_entity(transaction)
