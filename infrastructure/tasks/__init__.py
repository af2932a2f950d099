"""Celery side of the payment service: reconciliation and retry sweeps.

Web processes only need TaskDispatcher; the worker imports celery_app.
"""
from .config.celery import celery_app
from .utils.dispatcher import TaskDispatcher

__all__ = ["celery_app", "TaskDispatcher"]
