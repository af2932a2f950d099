"""Keeps celery_app out of the application layer."""
from __future__ import annotations

from ..config.celery import celery_app


class TaskDispatcher:
    """Schedules payment jobs by task name."""

    def reconcile_transaction(self, transaction_id: str) -> None:
        # send_task bypasses task_always_eager, so an API request never runs the job inline
        celery_app.send_task(
            "payments.reconcile_transaction",
            kwargs={"transaction_id": transaction_id},
        )
