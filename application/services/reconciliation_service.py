"""
Reconciliation worker: mirrors a completed transaction into the accounting
ledger (customer, invoice, payment record).

Each step persists its result before the next ledger call, so a run that
dies half way resumes from the last stored marker instead of creating a
second invoice or payment. Invoices and payments are looked up by
reference number before they are created, which also covers a create
whose response was lost. A durable lease keeps concurrent runs apart and
is renewed before every ledger step. Ledger failures never propagate to
the caller.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from application.dtos.ledger import (
    CustomerDetails,
    LedgerInvoiceRequest,
    LedgerPaymentRequest,
)
from application.ports.ledger import Ledger, LedgerError
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.plan.entity import Plan
from domain.transaction.entity import ReconciliationStatus, Transaction
from domain.user.entity import User


logger = get_logger(__name__)

RESULT_MATCHED = "matched"
RESULT_SKIPPED = "skipped"
RESULT_FAILED = "failed"


class ReconciliationLeaseLost(Exception):
    """Another worker took the lease over while this run was in progress."""


@dataclass
class _Lease:
    transaction_id: str
    until: datetime


class ReconciliationWorker:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        ledger: Ledger,
        *,
        lease_seconds: int = 300,
    ) -> None:
        self._uow_factory = uow_factory
        self.ledger = ledger
        self.lease = timedelta(seconds=lease_seconds)

    async def reconcile(self, transaction_id: str) -> str:
        now = datetime.now(timezone.utc)
        async with self._uow_factory() as uow:
            transaction = await uow.transaction_repository.get_by_transaction_id(transaction_id)
            if transaction is None or not transaction.is_paid:
                logger.info("reconciliation_skipped", transaction_id=transaction_id, reason="not_completed")
                return RESULT_SKIPPED
            if transaction.reconciliation_status == ReconciliationStatus.MATCHED:
                logger.info("reconciliation_skipped", transaction_id=transaction_id, reason="already_matched")
                return RESULT_SKIPPED
            lease = _Lease(transaction_id, now + self.lease)
            claimed = await uow.transaction_repository.claim_reconciliation(transaction_id, now, lease.until)
            if not claimed:
                logger.info("reconciliation_skipped", transaction_id=transaction_id, reason="lease_held")
                return RESULT_SKIPPED
            user = await uow.user_repository.get_by_id(transaction.user_id)
            plan = await uow.plan_repository.get_by_id(transaction.plan_id)

        logger.info("reconciliation_started", transaction_id=transaction_id)
        try:
            if user is None or plan is None:
                raise LedgerError("transaction owner or plan missing", operation="load_context")
            await self._run(transaction, user, plan, lease)
        except ReconciliationLeaseLost:
            # the lease belongs to the new holder; do not release it
            logger.warning("reconciliation_lease_lost", transaction_id=transaction_id)
            return RESULT_SKIPPED
        except LedgerError as exc:
            logger.error(
                "reconciliation_failed",
                transaction_id=transaction_id,
                operation=exc.operation,
                status_code=exc.status_code,
                error=str(exc),
            )
            await self._release(transaction_id)
            return RESULT_FAILED
        except Exception as exc:
            logger.exception("reconciliation_failed", transaction_id=transaction_id, error=str(exc))
            await self._release(transaction_id)
            return RESULT_FAILED
        return RESULT_MATCHED

    async def reconcile_pending(
        self,
        *,
        limit: int = 100,
        grace_seconds: int = 60,
        now: Optional[datetime] = None,
    ) -> dict[str, int]:
        """Sweep paid transactions whose reconciliation never ran or never finished.

        Covers publish failures after commit and inline runs lost on restart.
        Transactions completed within `grace_seconds` are left to the run
        their completion already triggered.
        """
        now = now or datetime.now(timezone.utc)
        async with self._uow_factory(readonly=True) as uow:
            candidates = await uow.transaction_repository.list_unreconciled(
                now, now - timedelta(seconds=grace_seconds), limit
            )
        summary = {"candidates": len(candidates), RESULT_MATCHED: 0, RESULT_FAILED: 0, RESULT_SKIPPED: 0}
        for candidate in candidates:
            summary[await self.reconcile(candidate.transaction_id)] += 1
        logger.info("reconciliation_sweep", **summary)
        return summary

    async def _renew(self, lease: _Lease) -> None:
        until = datetime.now(timezone.utc) + self.lease
        async with self._uow_factory() as uow:
            renewed = await uow.transaction_repository.renew_reconciliation(lease.transaction_id, lease.until, until)
        if not renewed:
            raise ReconciliationLeaseLost(lease.transaction_id)
        lease.until = until

    async def _release(self, transaction_id: str) -> None:
        async with self._uow_factory() as uow:
            await uow.transaction_repository.release_reconciliation(transaction_id)

    async def _run(self, transaction: Transaction, user: User, plan: Plan, lease: _Lease) -> None:
        customer_id = await self._sync_customer(user)
        await self._renew(lease)
        invoice_id = await self._ensure_invoice(transaction, customer_id, plan)

        try:
            await self.ledger.email_invoice(invoice_id, user.email)
        except LedgerError as exc:
            logger.warning(
                "invoice_email_failed",
                transaction_id=transaction.transaction_id,
                invoice_id=invoice_id,
                error=str(exc),
            )

        await self._renew(lease)
        await self._ensure_payment(transaction, customer_id, invoice_id)

        async with self._uow_factory() as uow:
            await uow.transaction_repository.mark_reconciled(
                transaction.transaction_id,
                ReconciliationStatus.MATCHED,
                datetime.now(timezone.utc),
            )
        logger.info(
            "reconciliation_matched",
            transaction_id=transaction.transaction_id,
            invoice_id=invoice_id,
        )

    async def _sync_customer(self, user: User) -> str:
        details = CustomerDetails(name=user.name, email=user.email, mobile=user.mobile)
        existing = await self.ledger.find_customer_by_email(user.email)
        if existing is not None:
            customer = await self.ledger.update_customer(existing.customer_id, details)
        else:
            customer = await self.ledger.create_customer(details)
            logger.info("ledger_customer_created", user_id=user.id, customer_id=customer.customer_id)

        if user.ledger_customer_id != customer.customer_id:
            async with self._uow_factory() as uow:
                await uow.user_repository.set_ledger_customer_id(user.id, customer.customer_id)
        return customer.customer_id

    async def _ensure_invoice(self, transaction: Transaction, customer_id: str, plan: Plan) -> str:
        if transaction.invoice_number:
            return transaction.invoice_number

        invoice = await self.ledger.find_invoice_by_reference(customer_id, transaction.transaction_id)
        if invoice is not None:
            logger.info(
                "ledger_invoice_adopted",
                transaction_id=transaction.transaction_id,
                invoice_id=invoice.invoice_id,
            )
        else:
            invoice = await self.ledger.create_invoice(
                LedgerInvoiceRequest(
                    customer_id=customer_id,
                    reference_number=transaction.transaction_id,
                    item_name=plan.name,
                    description=plan.description,
                    amount=transaction.amount,
                    currency=transaction.currency,
                    invoice_date=(transaction.completed_at or datetime.now(timezone.utc)).date(),
                )
            )
            logger.info(
                "ledger_invoice_created",
                transaction_id=transaction.transaction_id,
                invoice_id=invoice.invoice_id,
                invoice_number=invoice.invoice_number,
            )
        async with self._uow_factory() as uow:
            won = await uow.transaction_repository.set_invoice_number(transaction.transaction_id, invoice.invoice_id)
            if not won:
                stored = await uow.transaction_repository.get_by_transaction_id(transaction.transaction_id)
        if won:
            return invoice.invoice_id
        logger.warning(
            "ledger_invoice_superseded",
            transaction_id=transaction.transaction_id,
            discarded_invoice_id=invoice.invoice_id,
            invoice_id=stored.invoice_number,
        )
        return stored.invoice_number

    async def _ensure_payment(self, transaction: Transaction, customer_id: str, invoice_id: str) -> Optional[str]:
        if transaction.ledger_payment_id:
            return transaction.ledger_payment_id

        reference = transaction.gateway_payment_id or transaction.transaction_id
        payment = await self.ledger.find_payment_by_reference(customer_id, reference)
        if payment is not None:
            logger.info(
                "ledger_payment_adopted",
                transaction_id=transaction.transaction_id,
                payment_id=payment.payment_id,
            )
        else:
            payment = await self.ledger.record_payment(
                LedgerPaymentRequest(
                    customer_id=customer_id,
                    invoice_id=invoice_id,
                    amount=transaction.amount,
                    currency=transaction.currency,
                    payment_date=(transaction.completed_at or datetime.now(timezone.utc)).date(),
                    reference_number=reference,
                    description=f"Payment for {transaction.transaction_id}",
                )
            )
            logger.info(
                "ledger_payment_recorded",
                transaction_id=transaction.transaction_id,
                payment_id=payment.payment_id,
            )
        async with self._uow_factory() as uow:
            await uow.transaction_repository.set_ledger_payment_id(transaction.transaction_id, payment.payment_id)
        return payment.payment_id
