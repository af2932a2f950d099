"""Celery beat schedule configuration.

The retry sweeps run on the same interval: first give unscheduled failures
a retry slot, then work off whatever is due. Stale-attempt recovery and the
reconciliation catch-up run alongside them.
"""
from __future__ import annotations

from core.settings import payment_settings

_SWEEP_SECONDS = payment_settings.retry_policy.sweep_interval_seconds

CELERY_BEAT_SCHEDULE = {
    "payments-schedule-failed-retries": {
        "task": "payments.schedule_failed_retries",
        "schedule": _SWEEP_SECONDS,
    },
    "payments-run-due-retries": {
        "task": "payments.run_due_retries",
        "schedule": _SWEEP_SECONDS,
    },
    "payments-recover-stale-retries": {
        "task": "payments.recover_stale_retries",
        "schedule": _SWEEP_SECONDS,
    },
    "payments-reconcile-pending": {
        "task": "payments.reconcile_pending",
        "schedule": payment_settings.reconciliation.sweep_interval_seconds,
    },
}
