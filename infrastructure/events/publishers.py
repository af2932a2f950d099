"""
Domain event publishers.

Only TransactionCompleted has a subscriber today: it starts ledger
reconciliation. Inline mode runs the worker as a detached asyncio task in
the current process; celery mode hands the transaction id to the queue.
"""
from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable, Iterable, Optional, Set

from core.logging_config import get_logger
from domain.transaction.events import TransactionCompleted


logger = get_logger(__name__)


def _log_event(event: object) -> None:
    logger.info(
        "domain_event",
        event_name=type(event).__name__,
        transaction_id=getattr(event, "transaction_id", None),
    )


class InlineReconciliationPublisher:
    """Runs reconciliation in the background of the current event loop."""

    def __init__(self, reconcile: Callable[[str], Awaitable[str]]) -> None:
        self._reconcile = reconcile
        self._tasks: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    async def publish(self, events: Iterable[object]) -> None:
        for event in events:
            _log_event(event)
            if isinstance(event, TransactionCompleted):
                task = asyncio.create_task(self._run(event.transaction_id))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _run(self, transaction_id: str) -> None:
        try:
            result = await self._reconcile(transaction_id)
            logger.info("reconciliation_finished", transaction_id=transaction_id, result=result)
        except Exception as exc:
            logger.exception("reconciliation_crashed", transaction_id=transaction_id, error=str(exc))

    def start_sweep(self, sweep: Callable[[], Awaitable[dict]], interval_seconds: float) -> None:
        """Run `sweep` now and then every `interval_seconds` until drain()."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(sweep, interval_seconds))

    async def _sweep_loop(self, sweep: Callable[[], Awaitable[dict]], interval_seconds: float) -> None:
        while True:
            try:
                await sweep()
            except Exception as exc:
                logger.exception("reconciliation_sweep_crashed", error=str(exc))
            await asyncio.sleep(interval_seconds)

    async def drain(self) -> None:
        """Stop the sweep and wait for reconciliations still in flight (shutdown, tests)."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class CeleryReconciliationPublisher:
    """Enqueues reconciliation on the Celery worker pool."""

    def __init__(self, dispatcher) -> None:
        self._dispatcher = dispatcher

    async def publish(self, events: Iterable[object]) -> None:
        for event in events:
            _log_event(event)
            if isinstance(event, TransactionCompleted):
                # broker I/O is blocking
                await asyncio.to_thread(self._dispatcher.reconcile_transaction, event.transaction_id)
