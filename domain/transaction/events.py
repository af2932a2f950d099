"""
Transaction domain events.

Events are collected by the domain service while a unit of work is open and
dispatched by the application layer only after the commit succeeds.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class TransactionEvent:
    transaction_id: str
    user_id: int
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TransactionCompleted(TransactionEvent):
    amount: str = ""
    currency: str = ""
    source: str = ""


@dataclass
class TransactionFailed(TransactionEvent):
    reason: Optional[str] = None


@dataclass
class TransactionCancelled(TransactionEvent):
    pass


@dataclass
class TransactionRefunded(TransactionEvent):
    refund_id: str = ""
    amount: str = ""
