"""
Zoho Books ledger adapter.

Every endpoint is scoped by organization_id. A 401 triggers one OAuth
refresh-token exchange and a replay of the request. Responses carry
`code == 0` on success; anything else becomes a LedgerError. Creating
POSTs are not replayed after a timeout; callers look the record up by
reference number before creating it.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx

from application.dtos.ledger import (
    CustomerDetails,
    LedgerCustomer,
    LedgerInvoice,
    LedgerInvoiceRequest,
    LedgerPayment,
    LedgerPaymentRequest,
)
from application.ports.ledger import Ledger, LedgerError
from core.logging_config import get_logger
from core.settings import LedgerSettings, PaymentRetry
from infrastructure.external.api_clients.base import APIError, BaseAPIClient


logger = get_logger(__name__)

INVOICE_EMAIL_SUBJECT = "Your invoice"
INVOICE_EMAIL_BODY = "Thank you for your purchase. Please find your invoice attached."


class ZohoBooksClient(BaseAPIClient, Ledger):
    def __init__(
        self,
        cfg: LedgerSettings,
        *,
        timeout: httpx.Timeout | float = 10.0,
        retry: Optional[PaymentRetry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        retry = retry or PaymentRetry()
        super().__init__(
            cfg.base_url,
            timeout=timeout,
            max_retries=retry.max,
            retry_delay=retry.base_backoff,
            transport=transport,
        )
        self.cfg = cfg
        self._refresh_lock = asyncio.Lock()
        if cfg.access_token:
            self.set_auth_token(cfg.access_token, prefix="Zoho-oauthtoken")

    async def refresh_auth(self) -> bool:
        if not (self.cfg.refresh_token and self.cfg.client_id and self.cfg.client_secret):
            return False
        async with self._refresh_lock:
            response = await self.client.post(
                self.cfg.token_url,
                params={
                    "refresh_token": self.cfg.refresh_token,
                    "client_id": self.cfg.client_id,
                    "client_secret": self.cfg.client_secret,
                    "grant_type": "refresh_token",
                },
            )
            if response.status_code != 200:
                logger.error("ledger_token_refresh_failed", status_code=response.status_code)
                return False
            token = response.json().get("access_token")
            if not token:
                logger.error("ledger_token_refresh_failed", reason="missing_access_token")
                return False
            self.set_auth_token(token, prefix="Zoho-oauthtoken")
            logger.info("ledger_token_refreshed")
            return True

    async def _call(
        self,
        operation: str,
        method: str,
        endpoint: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        query = {"organization_id": self.cfg.organization_id, **(params or {})}
        try:
            response = await self._request(method, endpoint, params=query, json_data=json_data)
        except APIError as exc:
            raise LedgerError(str(exc), operation=operation, status_code=exc.status_code) from exc
        body = response.data if isinstance(response.data, dict) else {}
        if body.get("code") != 0:
            raise LedgerError(
                body.get("message") or f"{operation} rejected by ledger",
                operation=operation,
                status_code=response.status_code,
            )
        return body

    @staticmethod
    def _contact_payload(details: CustomerDetails) -> dict[str, Any]:
        person = {"first_name": details.name, "email": details.email, "is_primary_contact": True}
        if details.mobile:
            person["mobile"] = details.mobile
        return {
            "contact_name": details.name,
            "contact_type": "customer",
            "contact_persons": [person],
        }

    @staticmethod
    def _to_customer(contact: dict[str, Any]) -> LedgerCustomer:
        return LedgerCustomer(
            customer_id=str(contact["contact_id"]),
            name=contact.get("contact_name"),
            email=contact.get("email"),
        )

    async def find_customer_by_email(self, email: str) -> Optional[LedgerCustomer]:
        body = await self._call("find_customer", "GET", "/contacts", params={"email": email})
        contacts = body.get("contacts") or []
        return self._to_customer(contacts[0]) if contacts else None

    async def create_customer(self, details: CustomerDetails) -> LedgerCustomer:
        body = await self._call("create_customer", "POST", "/contacts", json_data=self._contact_payload(details))
        return self._to_customer(body["contact"])

    async def update_customer(self, customer_id: str, details: CustomerDetails) -> LedgerCustomer:
        body = await self._call(
            "update_customer", "PUT", f"/contacts/{customer_id}", json_data=self._contact_payload(details)
        )
        return self._to_customer(body["contact"])

    async def find_invoice_by_reference(self, customer_id: str, reference_number: str) -> Optional[LedgerInvoice]:
        body = await self._call(
            "find_invoice",
            "GET",
            "/invoices",
            params={"customer_id": customer_id, "reference_number": reference_number},
        )
        for invoice in body.get("invoices") or []:
            if invoice.get("reference_number") == reference_number:
                return LedgerInvoice(
                    invoice_id=str(invoice["invoice_id"]),
                    invoice_number=invoice.get("invoice_number"),
                    status=invoice.get("status"),
                )
        return None

    async def create_invoice(self, req: LedgerInvoiceRequest) -> LedgerInvoice:
        line_item: dict[str, Any] = {
            "name": req.item_name,
            "description": req.description or req.item_name,
            "rate": float(req.amount),
            "quantity": 1,
        }
        if self.cfg.item_rate_tax_id:
            line_item["tax_id"] = self.cfg.item_rate_tax_id
        body = await self._call(
            "create_invoice",
            "POST",
            "/invoices",
            json_data={
                "customer_id": req.customer_id,
                "reference_number": req.reference_number,
                "date": req.invoice_date.isoformat(),
                "line_items": [line_item],
            },
        )
        invoice = body["invoice"]
        return LedgerInvoice(
            invoice_id=str(invoice["invoice_id"]),
            invoice_number=invoice.get("invoice_number"),
            status=invoice.get("status"),
        )

    async def email_invoice(self, invoice_id: str, to_email: str) -> None:
        await self._call(
            "email_invoice",
            "POST",
            f"/invoices/{invoice_id}/email",
            json_data={
                "to_mail_ids": [to_email],
                "subject": INVOICE_EMAIL_SUBJECT,
                "body": INVOICE_EMAIL_BODY,
            },
        )

    async def find_payment_by_reference(self, customer_id: str, reference_number: str) -> Optional[LedgerPayment]:
        body = await self._call(
            "find_payment",
            "GET",
            "/customerpayments",
            params={"customer_id": customer_id, "reference_number": reference_number},
        )
        for payment in body.get("customerpayments") or []:
            if payment.get("reference_number") == reference_number:
                return LedgerPayment(
                    payment_id=str(payment["payment_id"]),
                    reference_number=reference_number,
                    amount=payment.get("amount"),
                )
        return None

    async def record_payment(self, req: LedgerPaymentRequest) -> LedgerPayment:
        body = await self._call(
            "record_payment",
            "POST",
            "/customerpayments",
            json_data={
                "customer_id": req.customer_id,
                "payment_mode": req.payment_mode,
                "amount": float(req.amount),
                "date": req.payment_date.isoformat(),
                "reference_number": req.reference_number,
                "description": req.description,
                "invoices": [{"invoice_id": req.invoice_id, "amount_applied": float(req.amount)}],
            },
        )
        payment = body["payment"]
        return LedgerPayment(
            payment_id=str(payment["payment_id"]),
            reference_number=payment.get("reference_number"),
            amount=payment.get("amount"),
        )
