"""
Payment specific codes and gateway status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Gateway/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002

    # Transaction lifecycle (61xxx)
    PLAN_NOT_FOUND = 61000
    PLAN_UNAVAILABLE = 61001
    TRANSACTION_NOT_FOUND = 61002
    VERIFICATION_FAILED = 61003
    INVALID_TRANSITION = 61004
    CONCURRENT_MODIFICATION = 61005

    # Refunds (62xxx)
    REFUND_EXCEEDS_BALANCE = 62000
    NOT_REFUNDABLE = 62001


# Gateway status -> internal outcome. Anything unmapped is treated as "unpaid".
PROVIDER_STATUS_TO_INTERNAL = {
    "zoho": {
        "paid": "paid",
        "success": "paid",
        "completed": "paid",
        "pending": "pending",
        "created": "pending",
        "active": "pending",
        "failed": "failed",
        "expired": "failed",
        "cancelled": "failed",
        "canceled": "failed",
    },
}


def map_gateway_status(provider: str, raw_status: str | None) -> str:
    """Normalize a raw gateway status into paid/pending/failed."""
    if not raw_status:
        return "pending"
    table = PROVIDER_STATUS_TO_INTERNAL.get(provider, {})
    return table.get(raw_status.strip().lower(), "failed")
