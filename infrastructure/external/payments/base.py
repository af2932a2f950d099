"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers subclass and implement provider-specific payloads.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger
from core.settings import PaymentRetry, PaymentTimeouts
from application.ports.payment_gateway import (
    PaymentProviderError,
    PaymentRecoverableError,
)
from shared.codes.payment_codes import map_gateway_status


logger = get_logger(__name__)

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}
IDEMPOTENT_METHODS = {"GET", "HEAD", "OPTIONS", "PUT", "DELETE"}
# raised before any byte of the request left this process
UNSENT_EXCEPTIONS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, PaymentRecoverableError) and (exc.details or {}).get("provider_code") == "429"


class BasePaymentClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        base_url: str,
        timeouts: Optional[PaymentTimeouts] = None,
        retry: Optional[PaymentRetry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeouts_cfg = timeouts or PaymentTimeouts()
        self._retry_cfg = retry or PaymentRetry()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg.connect,
            read=self._timeouts_cfg.read,
            write=self._timeouts_cfg.write,
            timeout=self._timeouts_cfg.total,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self.client.request(
            method, f"{self.base_url}/{path.lstrip('/')}", headers=self._headers(), **kwargs
        )
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise PaymentRecoverableError(
                f"{self.provider} responded {response.status_code}",
                provider=self.provider,
                provider_code=str(response.status_code),
            )
        return response

    async def _request(
        self, method: str, path: str, *, idempotent: Optional[bool] = None, **kwargs: Any
    ) -> dict[str, Any]:
        """Send with bounded retries on transport errors and transient statuses.

        Non-idempotent calls (POST by default) are only replayed when the
        request provably never reached the provider or was rate limited.
        """
        if idempotent is None:
            idempotent = method.upper() in IDEMPOTENT_METHODS
        if idempotent:
            retry_on = retry_if_exception_type((httpx.TimeoutException, httpx.TransportError, PaymentRecoverableError))
        else:
            retry_on = retry_if_exception_type(UNSENT_EXCEPTIONS) | retry_if_exception(_is_rate_limited)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(int(self._retry_cfg.max) + 1),
                wait=wait_exponential(multiplier=self._retry_cfg.base_backoff, min=0, max=2.0),
                retry=retry_on,
                reraise=True,
            ):
                with attempt:
                    response = await self._send(method, path, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            self._log("gateway_transport_error", path=path, error=str(exc))
            raise PaymentRecoverableError(
                f"{self.provider} unreachable: {exc.__class__.__name__}",
                provider=self.provider,
            ) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400:
            message = body.get("message") if isinstance(body, dict) else None
            raise PaymentProviderError(
                message or f"{self.provider} request failed",
                provider=self.provider,
                provider_code=str(body.get("code") if isinstance(body, dict) and body.get("code") is not None else response.status_code),
            )
        return body if isinstance(body, dict) else {}

    # Helpers
    def _map_status(self, provider_status: Optional[str]) -> str:
        return map_gateway_status(self.provider, provider_status)

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
