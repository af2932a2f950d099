"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
Adapters report failures with the two exceptions below so callers can tell
"try again later" apart from "the gateway said no".
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    CheckoutSessionRequest,
    CheckoutSession,
    GatewayPaymentStatus,
    GatewayRefundRequest,
    GatewayRefundResult,
)
from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class PaymentProviderError(BusinessException):
    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentProviderError",
            details=full_details,
        )


class PaymentRecoverableError(PaymentProviderError):
    """Timeouts, network failures and 429/5xx: safe to try again later."""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(message, provider=provider, provider_code=provider_code, details=details)
        self.code = PaymentCode.PROVIDER_RECOVERABLE
        self.error_type = "PaymentRecoverableError"


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the hosted-checkout payment provider.

    Implementations should be async and side-effect free beyond IO.
    """

    provider: str

    async def create_checkout_session(self, req: CheckoutSessionRequest) -> CheckoutSession: ...

    async def get_session_status(self, session_id: str) -> GatewayPaymentStatus: ...

    async def refund(self, req: GatewayRefundRequest) -> GatewayRefundResult: ...

    async def aclose(self) -> None: ...
