"""
Factory for payment processor clients.

The registry is built once at process start from settings; each enabled
key maps to exactly one client class known here.
"""
from __future__ import annotations

from typing import Optional

from application.processor_registry import ProcessorRegistry
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings


logger = get_logger(__name__)


def _common(settings: PaymentSettings) -> dict:
    return {
        "timeouts": settings.timeouts.model_dump(),
        "retry": {"max": settings.retry.max, "base": settings.retry.base_backoff},
    }


def build_processor(key: str, settings: PaymentSettings):
    if key == "stripe":
        from .stripe_client import StripeCardClient
        cfg = settings.stripe
        return StripeCardClient(
            secret_key=cfg.secret_key,
            webhook_secret=cfg.webhook_secret,
            tolerance_seconds=settings.webhook.tolerance_seconds,
            display_name=cfg.display_name,
            currencies=cfg.currencies,
            max_amount=cfg.max_amount,
            **_common(settings),
        )
    if key == "hosted":
        from .hosted_client import HostedCheckoutClient
        cfg = settings.hosted
        return HostedCheckoutClient(
            base_url=cfg.base_url,
            api_key=cfg.api_key,
            webhook_secret=cfg.webhook_secret,
            return_url=cfg.return_url,
            tolerance_seconds=settings.webhook.tolerance_seconds,
            display_name=cfg.display_name,
            currencies=cfg.currencies,
            max_amount=cfg.max_amount,
            **_common(settings),
        )
    raise ValueError(f"Unsupported payment processor: {key}")


def build_processor_registry(settings: Optional[PaymentSettings] = None) -> ProcessorRegistry:
    settings = settings or payment_settings
    registry = ProcessorRegistry()
    for key in settings.enabled_processors:
        try:
            registry.register(build_processor(key, settings))
        except RuntimeError as exc:
            # missing credentials: start without this processor
            logger.warning("processor_disabled", processor=key, reason=str(exc))
    return registry
