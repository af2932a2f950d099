"""
Zoho hosted-checkout adapter.

Sessions are created with POST /checkout/session and polled with
GET /checkout/session/{id}; the gateway has returned both a flat shape
(session_id, checkout_url, status) and a nested `hostedpage` shape, so both
are accepted. Refunds go through POST /refunds.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from application.dtos.payments import (
    CheckoutSession,
    CheckoutSessionRequest,
    GatewayPaymentStatus,
    GatewayRefundRequest,
    GatewayRefundResult,
)
from application.ports.payment_gateway import PaymentGateway, PaymentProviderError
from core.settings import GatewaySettings, PaymentRetry, PaymentTimeouts
from infrastructure.external.payments.base import BasePaymentClient


class ZohoCheckoutClient(BasePaymentClient, PaymentGateway):
    provider = "zoho"

    def __init__(
        self,
        cfg: GatewaySettings,
        *,
        timeouts: Optional[PaymentTimeouts] = None,
        retry: Optional[PaymentRetry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(base_url=cfg.base_url, timeouts=timeouts, retry=retry, transport=transport)
        if not cfg.api_key:
            raise RuntimeError("PAYMENT__GATEWAY__API_KEY not configured")
        self.cfg = cfg

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["Authorization"] = f"Zoho-oauthtoken {self.cfg.api_key}"
        return headers

    @staticmethod
    def _hostedpage(body: dict[str, Any]) -> dict[str, Any]:
        page = body.get("hostedpage")
        return page if isinstance(page, dict) else body

    async def create_checkout_session(self, req: CheckoutSessionRequest) -> CheckoutSession:
        payload = {
            "amount": float(req.amount),
            "currency": req.currency,
            "reference_id": req.reference_id,
            "customer_details": {
                "customer_id": req.customer_id,
                "name": req.customer_name,
                "email": req.customer_email,
                "phone": req.customer_phone,
            },
            "product_details": {
                "name": req.plan_name,
                "description": req.description or req.plan_name,
                "type": "service",
            },
            "redirect_url": req.redirect_url or self.cfg.redirect_url,
            "cancel_url": req.cancel_url or self.cfg.cancel_url,
            "webhook_url": req.webhook_url or self.cfg.webhook_url,
            "notes": {"transaction_id": req.reference_id},
        }
        body = await self._request("POST", "/checkout/session", json=payload)
        page = self._hostedpage(body)
        session_id = page.get("hostedpage_id") or page.get("session_id") or page.get("id")
        if not session_id:
            raise PaymentProviderError("checkout session id missing in gateway response", provider=self.provider)
        self._log("checkout_session_created", reference_id=req.reference_id, session_id=session_id)
        return CheckoutSession(
            session_id=str(session_id),
            payment_url=page.get("url") or page.get("checkout_url"),
            provider=self.provider,
        )

    async def get_session_status(self, session_id: str) -> GatewayPaymentStatus:
        body = await self._request("GET", f"/checkout/session/{session_id}")
        page = self._hostedpage(body)
        raw_status = page.get("status") or body.get("status")
        payment_id = page.get("payment_id") or body.get("payment_id")
        self._log("checkout_session_polled", session_id=session_id, status=raw_status)
        return GatewayPaymentStatus(
            session_id=session_id,
            status=self._map_status(raw_status),
            raw_status=raw_status,
            payment_id=str(payment_id) if payment_id else None,
            gateway_transaction_id=page.get("transaction_id") or body.get("transaction_id"),
            provider=self.provider,
            raw=body,
        )

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult:
        body = await self._request(
            "POST",
            "/refunds",
            json={
                "payment_id": req.payment_id,
                "amount": float(req.amount),
                "reason": req.reason or "Customer request",
                "reference_id": req.refund_reference,
            },
        )
        refund = body.get("refund") if isinstance(body.get("refund"), dict) else body
        refund_id = refund.get("refund_id")
        self._log("refund_created", payment_id=req.payment_id, refund_id=refund_id)
        return GatewayRefundResult(
            refund_id=str(refund_id) if refund_id else None,
            status=str(refund.get("status") or "processed"),
            provider=self.provider,
        )
