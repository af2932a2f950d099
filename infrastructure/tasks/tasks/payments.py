"""
Payment background jobs: ledger reconciliation, its catch-up sweep and the
retry sweeps.

Each task runs its coroutine with asyncio.run on a fresh event loop, so it
builds its own session factory and HTTP clients and closes them on exit.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from functools import partial

from celery import shared_task

from application.services.reconciliation_service import ReconciliationWorker
from application.services.retry_service import RetryScheduler
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.transaction.retry import RetryPolicy
from infrastructure.database import create_isolated_session_factory
from infrastructure.events.publishers import CeleryReconciliationPublisher
from infrastructure.external.ledger import get_ledger
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork
from ..utils.base_task import BaseTask
from ..utils.dispatcher import TaskDispatcher


logger = get_logger(__name__)


def _uow_factory():
    return partial(SQLAlchemyUnitOfWork, session_factory=create_isolated_session_factory())


def _retry_policy() -> RetryPolicy:
    return RetryPolicy(interval=timedelta(minutes=payment_settings.retry_policy.interval_minutes))


async def _reconcile(transaction_id: str) -> str:
    ledger = get_ledger()
    try:
        worker = ReconciliationWorker(
            _uow_factory(),
            ledger,
            lease_seconds=payment_settings.reconciliation.lease_seconds,
        )
        return await worker.reconcile(transaction_id)
    finally:
        await ledger.aclose()


async def _reconcile_pending() -> dict:
    ledger = get_ledger()
    cfg = payment_settings.reconciliation
    try:
        worker = ReconciliationWorker(_uow_factory(), ledger, lease_seconds=cfg.lease_seconds)
        return await worker.reconcile_pending(limit=cfg.sweep_batch_size, grace_seconds=cfg.sweep_grace_seconds)
    finally:
        await ledger.aclose()


async def _run_retries(sweep: str) -> dict:
    gateway = get_payment_gateway()
    try:
        scheduler = RetryScheduler(
            _uow_factory(),
            gateway,
            retry_policy=_retry_policy(),
            publisher=CeleryReconciliationPublisher(TaskDispatcher()),
            batch_size=payment_settings.retry_policy.sweep_batch_size,
        )
        if sweep == "due":
            return await scheduler.run_due()
        if sweep == "stale":
            stale_after = timedelta(minutes=payment_settings.retry_policy.stale_processing_minutes)
            return {"recovered": await scheduler.recover_stale(stale_after=stale_after)}
        return {"scheduled": await scheduler.schedule_pending()}
    finally:
        await gateway.aclose()


@shared_task(name="payments.reconcile_transaction", bind=True, base=BaseTask)
def reconcile_transaction(self, transaction_id: str) -> str:
    """Ledger failures are swallowed by the worker; the next trigger resumes it."""
    result = asyncio.run(_reconcile(transaction_id))
    logger.info("reconciliation_task_done", transaction_id=transaction_id, result=result)
    return result


@shared_task(name="payments.run_due_retries", bind=True, base=BaseTask)
def run_due_retries(self) -> dict:
    return asyncio.run(_run_retries("due"))


@shared_task(name="payments.schedule_failed_retries", bind=True, base=BaseTask)
def schedule_failed_retries(self) -> dict:
    return asyncio.run(_run_retries("pending"))


@shared_task(name="payments.recover_stale_retries", bind=True, base=BaseTask)
def recover_stale_retries(self) -> dict:
    return asyncio.run(_run_retries("stale"))


@shared_task(name="payments.reconcile_pending", bind=True, base=BaseTask)
def reconcile_pending(self) -> dict:
    """Catch-up for completions whose reconciliation was never enqueued or never finished."""
    return asyncio.run(_reconcile_pending())
