"""Infrastructure models package exports."""
from .base import Base
from .user import UserModel
from .plan import PlanModel
from .transaction import TransactionModel, RefundModel
from .webhook_event import WebhookEventModel

__all__ = [
    "Base",
    "UserModel",
    "PlanModel",
    "TransactionModel",
    "RefundModel",
    "WebhookEventModel",
]
