"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from pydantic.types import condecimal

from domain.transaction.entity import (
    PaymentMethod,
    SUPPORTED_CURRENCIES,
    Transaction,
    Refund,
)


def _validate_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in SUPPORTED_CURRENCIES:
        raise ValueError("unsupported currency")
    return u


# ---- Gateway boundary ----

class CheckoutSessionRequest(BaseModel):
    reference_id: str
    amount: condecimal(ge=0)  # type: ignore[valid-type]
    currency: str = Field(default="INR")
    plan_name: str
    description: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    redirect_url: Optional[str] = None
    cancel_url: Optional[str] = None
    webhook_url: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _validate_currency(v)


class CheckoutSession(BaseModel):
    session_id: str
    payment_url: Optional[str] = None
    provider: str


class GatewayPaymentStatus(BaseModel):
    """Authoritative status of a checkout session as reported by the gateway."""

    session_id: str
    status: Optional[str] = None
    raw_status: Optional[str] = None
    payment_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    provider: str
    raw: Optional[dict[str, Any]] = None

    @property
    def is_paid(self) -> bool:
        return (self.status or "").lower() == "paid"


class GatewayRefundRequest(BaseModel):
    payment_id: str
    refund_reference: str
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    currency: str = Field(default="INR")
    reason: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency_refund(cls, v: str) -> str:
        return _validate_currency(v)


class GatewayRefundResult(BaseModel):
    refund_id: Optional[str] = None
    status: str
    provider: str


# ---- HTTP boundary ----

class InitiatePayment(BaseModel):
    plan_id: int = Field(gt=0)
    payment_method: Optional[PaymentMethod] = None


class InitiatePaymentResult(BaseModel):
    transaction_id: str
    payment_url: Optional[str] = None
    gateway_order_id: Optional[str] = None
    amount: Decimal
    currency: str


class VerifyPayment(BaseModel):
    transaction_id: str = Field(min_length=1)
    payment_id: Optional[str] = None
    signature: Optional[str] = None


class VerifyPaymentResult(BaseModel):
    transaction_id: str
    status: str
    already_completed: bool = False


class RefundCreate(BaseModel):
    amount: condecimal(gt=0, max_digits=15, decimal_places=2)  # type: ignore[valid-type]
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundDTO(BaseModel):
    refund_id: str
    amount: Decimal
    status: str
    reason: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, refund: Refund) -> "RefundDTO":
        return cls(
            refund_id=refund.refund_id,
            amount=refund.amount,
            status=refund.status.value,
            reason=refund.reason,
            gateway_refund_id=refund.gateway_refund_id,
            created_at=refund.created_at,
            processed_at=refund.processed_at,
        )


class TransactionDTO(BaseModel):
    transaction_id: str
    plan_id: int
    amount: Decimal
    currency: str
    status: str
    payment_method: Optional[str] = None
    payment_url: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    invoice_number: Optional[str] = None
    reconciliation_status: str
    total_refunded: Decimal
    refunds: list[RefundDTO] = Field(default_factory=list)
    initiated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, tx: Transaction) -> "TransactionDTO":
        return cls(
            transaction_id=tx.transaction_id,
            plan_id=tx.plan_id,
            amount=tx.amount,
            currency=tx.currency,
            status=tx.status.value,
            payment_method=tx.payment_method,
            payment_url=tx.payment_url,
            gateway_order_id=tx.gateway_order_id,
            gateway_payment_id=tx.gateway_payment_id,
            failure_reason=tx.failure_reason,
            retry_count=tx.retry_count,
            next_retry_at=tx.next_retry_at,
            invoice_number=tx.invoice_number,
            reconciliation_status=tx.reconciliation_status.value,
            total_refunded=tx.total_refunded,
            refunds=[RefundDTO.from_entity(r) for r in tx.refunds],
            initiated_at=tx.initiated_at,
            completed_at=tx.completed_at,
            created_at=tx.created_at,
        )


class WebhookPayload(BaseModel):
    """Gateway webhook body; order id may arrive at top level or nested under data."""

    event_type: str
    payment_id: Optional[str] = None
    hostedpage_id: Optional[str] = None
    status: Optional[str] = None
    failure_reason: Optional[str] = None
    data: Optional[dict[str, Any]] = None

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _lift_nested_fields(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        values = dict(values)
        values.setdefault("event_type", values.get("event") or values.get("type"))
        data = values.get("data")
        if isinstance(data, dict):
            hostedpage = data.get("hostedpage") if isinstance(data.get("hostedpage"), dict) else {}
            values.setdefault("hostedpage_id", data.get("hostedpage_id") or hostedpage.get("hostedpage_id") or hostedpage.get("id"))
            values.setdefault("payment_id", data.get("payment_id") or hostedpage.get("payment_id"))
            values.setdefault("status", data.get("status") or hostedpage.get("status"))
            values.setdefault("failure_reason", data.get("failure_reason") or data.get("reason"))
        return values


class WebhookAck(BaseModel):
    accepted: bool = True
    duplicate: bool = False
    event_type: Optional[str] = None
    transaction_id: Optional[str] = None
