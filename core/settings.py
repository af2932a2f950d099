"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so workers can load payment settings
without the web stack. Environment keys look like
PAYMENT__GATEWAY__API_KEY or PAYMENT__RETRY_POLICY__MAX_RETRIES.
"""
from __future__ import annotations

from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 5.0
    write: float = 5.0
    total: float = 10.0


class PaymentRetry(BaseModel):
    """Transport-level retries for gateway and ledger HTTP calls."""
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    secret: Optional[str] = None
    signature_header: str = "X-Zoho-Webhook-Signature"
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class GatewaySettings(BaseModel):
    provider: str = "zoho"
    base_url: str = "https://www.zoho.com/checkout/api/v1"
    api_key: Optional[str] = None
    redirect_url: Optional[str] = None
    cancel_url: Optional[str] = None
    webhook_url: Optional[str] = None


class LedgerSettings(BaseModel):
    base_url: str = "https://www.zohoapis.in/books/v3"
    organization_id: Optional[str] = None
    access_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    token_url: str = "https://accounts.zoho.com/oauth/v2/token"
    item_rate_tax_id: Optional[str] = None


class RetryPolicySettings(BaseModel):
    """Business-level retry of failed transactions."""
    interval_minutes: int = 30
    max_retries: int = 3
    sweep_batch_size: int = 100
    sweep_interval_seconds: int = 300
    stale_processing_minutes: int = 10  # processing longer than this means the retry worker died


class ReconciliationSettings(BaseModel):
    dispatch: Literal["inline", "celery"] = "inline"
    lease_seconds: int = 300
    sweep_interval_seconds: int = 600
    sweep_grace_seconds: int = 120
    sweep_batch_size: int = 50


class RateLimitSettings(BaseModel):
    user_limit: int = 20
    user_window_seconds: int = 600
    webhook_limit: int = 300
    webhook_window_seconds: int = 300


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    retry_policy: RetryPolicySettings = Field(default_factory=RetryPolicySettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
