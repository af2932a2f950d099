"""
Accounting-ledger port.

Every call may raise LedgerError; the reconciliation worker owns the decision
to swallow it.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from application.dtos.ledger import (
    CustomerDetails,
    LedgerCustomer,
    LedgerInvoice,
    LedgerInvoiceRequest,
    LedgerPayment,
    LedgerPaymentRequest,
)


class LedgerError(Exception):
    """Raised by ledger adapters for any failed ledger operation."""

    def __init__(self, message: str, *, operation: str, status_code: Optional[int] = None):
        self.operation = operation
        self.status_code = status_code
        super().__init__(message)


@runtime_checkable
class Ledger(Protocol):

    async def find_customer_by_email(self, email: str) -> Optional[LedgerCustomer]: ...

    async def create_customer(self, details: CustomerDetails) -> LedgerCustomer: ...

    async def update_customer(self, customer_id: str, details: CustomerDetails) -> LedgerCustomer: ...

    async def find_invoice_by_reference(self, customer_id: str, reference_number: str) -> Optional[LedgerInvoice]: ...

    async def create_invoice(self, req: LedgerInvoiceRequest) -> LedgerInvoice: ...

    async def email_invoice(self, invoice_id: str, to_email: str) -> None: ...

    async def find_payment_by_reference(self, customer_id: str, reference_number: str) -> Optional[LedgerPayment]: ...

    async def record_payment(self, req: LedgerPaymentRequest) -> LedgerPayment: ...

    async def aclose(self) -> None: ...
