"""Plan entitlement granted when a transaction completes."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.transaction.entity import Transaction


logger = get_logger(__name__)


async def grant_plan(uow: AbstractUnitOfWork, transaction: Transaction, now: Optional[datetime] = None) -> None:
    """Activate the purchased plan for the buyer.

    Must run inside the unit of work whose completion transition won, so the
    entitlement commits or rolls back together with the status change.
    """
    purchased_at = transaction.completed_at or now or datetime.now(timezone.utc)
    await uow.user_repository.activate_plan(transaction.user_id, transaction.plan_id, purchased_at)
    logger.info(
        "plan_granted",
        transaction_id=transaction.transaction_id,
        user_id=transaction.user_id,
        plan_id=transaction.plan_id,
    )
