"""
Ledger DTOs (Pydantic v2) exchanged with the accounting-ledger port.
"""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class CustomerDetails(BaseModel):
    name: str
    email: str
    mobile: Optional[str] = None


class LedgerCustomer(BaseModel):
    customer_id: str
    name: Optional[str] = None
    email: Optional[str] = None


class LedgerInvoiceRequest(BaseModel):
    customer_id: str
    reference_number: str
    item_name: str
    description: Optional[str] = None
    amount: Decimal
    currency: str = "INR"
    invoice_date: date


class LedgerInvoice(BaseModel):
    invoice_id: str
    invoice_number: Optional[str] = None
    status: Optional[str] = None


class LedgerPaymentRequest(BaseModel):
    customer_id: str
    invoice_id: str
    amount: Decimal
    currency: str = "INR"
    payment_date: date
    reference_number: str
    payment_mode: str = Field(default="online")
    description: Optional[str] = None


class LedgerPayment(BaseModel):
    payment_id: str
    reference_number: Optional[str] = None
    amount: Optional[Decimal] = None
