"""
Gateway credentials, timeouts, retry policy and reconciliation cadence.

Kept apart from core.config.Settings; env keys are prefixed ``PAYMENT__``,
e.g. ``PAYMENT__STRIPE__SECRET_KEY`` or ``PAYMENT__RETRY__MAX``.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0


class PaymentRetry(BaseModel):
    # attempts for GatewayUnavailable before giving up
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class CallbackSettings(BaseModel):
    max_conflict_retries: int = 5


class ReconciliationSettings(BaseModel):
    batch_size: int = 100
    max_pages: int = 10  # pages of batch_size per task run
    reverify_interval_seconds: int = 300
    backfill_interval_seconds: int = 600


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    display_name: str = "Card (Stripe)"
    currencies: list[str] | None = None  # None: any currency
    max_amount: Optional[int] = None


class HostedSettings(BaseModel):
    base_url: str = "https://checkout.example.com/api/v1"
    api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    return_url: str = "http://localhost:8000/payments/return"
    display_name: str = "Hosted checkout"
    currencies: list[str] | None = None
    max_amount: Optional[int] = None


class PaymentSettings(BaseSettings):
    enabled_processors: list[str] = Field(default_factory=lambda: ["stripe", "hosted"])
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    callbacks: CallbackSettings = Field(default_factory=CallbackSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    hosted: HostedSettings = Field(default_factory=HostedSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
