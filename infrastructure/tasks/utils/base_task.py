"""Shared Celery task base for the payment jobs."""
from __future__ import annotations

from celery import Task
from core.logging_config import get_logger

logger = get_logger(__name__)


def _transaction_id(args, kwargs):
    if kwargs and kwargs.get("transaction_id"):
        return kwargs["transaction_id"]
    if args:
        return args[0]
    return None


class BaseTask(Task):
    """Structured lifecycle logging keyed by transaction id when the task has one."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "payment_task_failed",
            task_id=task_id,
            task_name=self.name,
            transaction_id=_transaction_id(args, kwargs),
            error=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.warning(
            "payment_task_retry",
            task_id=task_id,
            task_name=self.name,
            transaction_id=_transaction_id(args, kwargs),
            error=str(exc),
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info(
            "payment_task_succeeded",
            task_id=task_id,
            task_name=self.name,
            transaction_id=_transaction_id(args, kwargs),
            result=retval if isinstance(retval, (str, dict)) else None,
        )
        super().on_success(retval, task_id, args, kwargs)
