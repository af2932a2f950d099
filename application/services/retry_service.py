"""
Retry scheduler: re-queries the gateway for failed transactions on a
linear backoff until the payment turns up or attempts run out.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from application.ports.events import EventPublisher
from application.ports.payment_gateway import PaymentGateway, PaymentProviderError
from application.services.entitlements import grant_plan
from application.services.event_dispatch import publish_committed
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.transaction.entity import Transaction
from domain.transaction.retry import RetryPolicy
from domain.transaction.service import TransactionDomainService


logger = get_logger(__name__)


class RetryScheduler:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        publisher: Optional[EventPublisher] = None,
        batch_size: int = 100,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self.retry_policy = retry_policy or RetryPolicy()
        self.publisher = publisher
        self.batch_size = batch_size

    def _domain_service(self, uow: AbstractUnitOfWork) -> TransactionDomainService:
        return TransactionDomainService(uow.transaction_repository, retry_policy=self.retry_policy)

    @staticmethod
    def _log_schedule(transaction: Transaction, scheduled: bool) -> None:
        if scheduled:
            logger.info(
                "transaction_retry_scheduled",
                transaction_id=transaction.transaction_id,
                retry_count=transaction.retry_count,
                next_retry_at=transaction.next_retry_at.isoformat(),
            )
        else:
            logger.error(
                "transaction_retry_exhausted",
                transaction_id=transaction.transaction_id,
                retry_count=transaction.retry_count,
                max_retries=transaction.max_retries,
            )

    async def schedule(self, transaction_id: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        async with self._uow_factory() as uow:
            transaction, scheduled = await self._domain_service(uow).schedule_retry(transaction_id, now)
        self._log_schedule(transaction, scheduled)
        return scheduled

    async def schedule_pending(self, now: Optional[datetime] = None) -> int:
        """Schedule failures that never got a retry slot (e.g. failed via webhook)."""
        now = now or datetime.now(timezone.utc)
        async with self._uow_factory(readonly=True) as uow:
            candidates = await uow.transaction_repository.list_unscheduled_failures(self.batch_size)
        scheduled = 0
        for candidate in candidates:
            try:
                if await self.schedule(candidate.transaction_id, now):
                    scheduled += 1
            except BusinessException as exc:
                logger.warning("transaction_retry_schedule_failed", transaction_id=candidate.transaction_id, error=exc.message)
        return scheduled

    async def recover_stale(self, now: Optional[datetime] = None, *, stale_after: timedelta = timedelta(minutes=10)) -> int:
        """Fail attempts left in processing by a worker that died mid-retry.

        The interrupted attempt counts against the retry budget and the
        transaction gets its next slot like any other failure.
        """
        now = now or datetime.now(timezone.utc)
        async with self._uow_factory(readonly=True) as uow:
            stale = await uow.transaction_repository.list_stale_processing(now - stale_after, self.batch_size)
        recovered = 0
        for candidate in stale:
            try:
                async with self._uow_factory() as uow:
                    domain_service = self._domain_service(uow)
                    transaction, transitioned = await domain_service.fail(
                        candidate.transaction_id,
                        "retry_interrupted",
                        schedule_retry=True,
                        now=now,
                    )
                    events = domain_service.clear_events()
            except BusinessException as exc:
                logger.warning("transaction_retry_recover_failed", transaction_id=candidate.transaction_id, error=exc.message)
                continue
            await publish_committed(self.publisher, events)
            if transitioned:
                recovered += 1
                logger.warning("transaction_retry_interrupted", transaction_id=candidate.transaction_id)
                self._log_schedule(transaction, transaction.next_retry_at is not None)
        return recovered

    async def run_due(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = now or datetime.now(timezone.utc)
        async with self._uow_factory(readonly=True) as uow:
            due = await uow.transaction_repository.list_retry_due(now, self.batch_size)

        summary = {"due": len(due), "completed": 0, "failed": 0, "skipped": 0}
        for candidate in due:
            try:
                outcome = await self._retry_one(candidate.transaction_id, now)
            except BusinessException as exc:
                logger.warning("transaction_retry_error", transaction_id=candidate.transaction_id, error=exc.message)
                outcome = "skipped"
            summary[outcome] += 1
        logger.info("transaction_retry_sweep", **summary)
        return summary

    async def _retry_one(self, transaction_id: str, now: datetime) -> str:
        async with self._uow_factory() as uow:
            transaction, started = await self._domain_service(uow).begin_retry(transaction_id, now)
        if not started:
            return "skipped"
        logger.info("transaction_retry_started", transaction_id=transaction_id, retry_count=transaction.retry_count)

        reason: str
        error_message: Optional[str] = None
        paid_status = None
        if not transaction.gateway_order_id:
            reason = "missing_checkout_session"
        else:
            try:
                status = await self.gateway.get_session_status(transaction.gateway_order_id)
            except PaymentProviderError as exc:
                reason = "gateway_error"
                error_message = exc.message
            else:
                if status.is_paid:
                    paid_status = status
                reason = f"gateway_status:{status.raw_status or status.status}"

        async with self._uow_factory() as uow:
            domain_service = self._domain_service(uow)
            if paid_status is not None:
                transaction, transitioned = await domain_service.complete(
                    transaction_id,
                    source="retry",
                    gateway_payment_id=paid_status.payment_id,
                    gateway_transaction_id=paid_status.gateway_transaction_id,
                    now=now,
                )
                if transitioned:
                    await grant_plan(uow, transaction, now)
            else:
                transaction, transitioned = await domain_service.fail(
                    transaction_id,
                    reason,
                    error_message=error_message,
                    schedule_retry=True,
                    now=now,
                )
            events = domain_service.clear_events()

        await publish_committed(self.publisher, events)
        if paid_status is not None:
            if transitioned:
                logger.info("transaction_completed", transaction_id=transaction_id, source="retry")
            return "completed"
        if transitioned:
            self._log_schedule(transaction, transaction.next_retry_at is not None)
        return "failed"
