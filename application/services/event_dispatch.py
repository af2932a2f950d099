"""
Hand committed domain events to the configured publisher.

The state change is already durable when this runs, so a publisher outage
is logged and left to the reconciliation sweep instead of failing the
request.
"""
from __future__ import annotations

from typing import Optional, Sequence

from application.ports.events import EventPublisher
from core.logging_config import get_logger


logger = get_logger(__name__)


async def publish_committed(publisher: Optional[EventPublisher], events: Sequence[object]) -> bool:
    """Returns False when the publisher raised."""
    if not events or publisher is None:
        return True
    try:
        await publisher.publish(events)
    except Exception as exc:
        logger.error(
            "domain_event_publish_failed",
            events=[type(e).__name__ for e in events],
            transaction_ids=[getattr(e, "transaction_id", None) for e in events],
            error=str(exc),
            exc_info=True,
        )
        return False
    return True
