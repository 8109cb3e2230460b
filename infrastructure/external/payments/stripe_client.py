"""
Stripe PaymentIntents adapter (card flow) using the official stripe-python SDK.

Notes on SDK usage:
- Module-level helpers with ``stripe.api_key``; idempotency keys go through
  the ``idempotency_key`` kwarg.
- The SDK is synchronous: calls run in a worker thread under the total
  deadline, so a hung request surfaces as an ambiguous outcome.
- Cards are authorized with ``capture_method="manual"`` and captured in the
  same buyer request; a card requiring 3DS stays authorized-pending until the
  client confirms and calls the card endpoint again with the same key.
- Webhook verification uses ``stripe.Webhook.construct_event`` with the
  ``Stripe-Signature`` header.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Mapping, Optional

import stripe

from application.ports.payment_processor import InitiationResult, OrderContext, PaymentFlow
from core.logging_config import get_logger
from domain.common.exceptions import (
    DomainValidationException,
    GatewayDeclinedException,
    GatewayUnavailableException,
    RejectedCallbackException,
)
from domain.common.money import Money
from domain.payment.entity import Payment
from domain.payment.events import PaymentEvent, PaymentEventType
from infrastructure.external.payments.base import BaseProcessorClient


logger = get_logger(__name__)

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class StripeCardClient(BaseProcessorClient):
    key = "stripe"
    flow = PaymentFlow.CARD

    def __init__(
        self,
        *,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        tolerance_seconds: int = 300,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if not secret_key:
            raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance_seconds
        # 部分 SDK 调用只读模块级 api_key
        stripe.api_key = secret_key

    async def _call(self, operation: str, fn: Callable[..., Any], **params: Any) -> Any:
        """Run a blocking SDK call with the total deadline and transient-error retry."""

        async def _once():
            try:
                return await self._bounded(operation, asyncio.to_thread(fn, **params))
            except _TRANSIENT_ERRORS as exc:
                self._log("stripe_transient_error", operation=operation, error=str(exc))
                raise GatewayUnavailableException(self.key, f"{operation}: {exc.__class__.__name__}") from exc

        return await self._retry(_once)

    def _event_from_intent(self, pi: Mapping[str, Any]) -> Optional[PaymentEvent]:
        status = pi.get("status")
        currency = str(pi.get("currency", "")).upper()
        if status == "requires_capture":
            event_type = PaymentEventType.AUTHORIZATION_SUCCEEDED
            amount = Money(int(pi["amount_capturable"]), currency)
        elif status == "succeeded":
            event_type = PaymentEventType.CAPTURE_SUCCEEDED
            amount = Money(int(pi["amount_received"]), currency)
        elif status == "canceled":
            event_type = PaymentEventType.AUTHORIZATION_FAILED
            amount = None
        elif status == "requires_payment_method" and pi.get("last_payment_error"):
            event_type = PaymentEventType.AUTHORIZATION_FAILED
            amount = None
        else:
            return None
        error = pi.get("last_payment_error") or {}
        return PaymentEvent(
            gateway=self.key,
            event_type=event_type,
            external_ref=str(pi["id"]),
            amount=amount,
            raw_type=status,
            reason=error.get("message") or pi.get("cancellation_reason"),
        )

    async def initiate(self, payment: Payment, context: OrderContext) -> InitiationResult:
        try:
            pi = await self._call(
                "initiate",
                stripe.PaymentIntent.create,
                amount=payment.amount.minor,
                currency=payment.currency.lower(),
                payment_method=context.payment_token,
                confirm=True,
                capture_method="manual",
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                description=context.description,
                metadata={"payment_id": str(payment.id), "order_id": str(payment.order_id)},
                idempotency_key=self.idempotency_token(payment, "initiate"),
            )
        except stripe.CardError as exc:
            raise GatewayDeclinedException(self.key, exc.user_message or str(exc), provider_code=exc.code) from exc
        except stripe.InvalidRequestError as exc:
            raise GatewayDeclinedException(self.key, str(exc), provider_code=exc.code) from exc

        self._log("stripe_intent_created", payment_id=payment.id, intent_id=pi["id"], status=pi["status"])
        return InitiationResult(
            external_ref=str(pi["id"]),
            client_secret=pi.get("client_secret"),
            event=self._event_from_intent(pi),
        )

    async def capture(self, payment: Payment) -> PaymentEvent:
        try:
            pi = await self._call(
                "capture",
                stripe.PaymentIntent.capture,
                intent=payment.external_ref,
                idempotency_key=self.idempotency_token(payment, "capture"),
            )
        except (stripe.CardError, stripe.InvalidRequestError) as exc:
            return PaymentEvent(
                gateway=self.key,
                event_type=PaymentEventType.CAPTURE_FAILED,
                external_ref=payment.external_ref or "",
                reason=getattr(exc, "user_message", None) or str(exc),
            )
        event = self._event_from_intent(pi)
        if event is None or event.event_type != PaymentEventType.CAPTURE_SUCCEEDED:
            return PaymentEvent(
                gateway=self.key,
                event_type=PaymentEventType.CAPTURE_FAILED,
                external_ref=str(pi["id"]),
                reason=f"unexpected intent status {pi.get('status')}",
            )
        return event

    async def refund(self, payment: Payment, amount: Money, refund_key: str) -> Optional[PaymentEvent]:
        try:
            refund = await self._call(
                "refund",
                stripe.Refund.create,
                payment_intent=payment.external_ref,
                amount=amount.minor,
                metadata={"payment_id": str(payment.id), "order_id": str(payment.order_id)},
                idempotency_key=self.idempotency_token(payment, "refund", refund_key),
            )
        except (stripe.CardError, stripe.InvalidRequestError) as exc:
            raise GatewayDeclinedException(self.key, str(exc), provider_code=exc.code) from exc
        if refund.get("status") != "succeeded":
            self._log("stripe_refund_pending", payment_id=payment.id, refund_id=refund["id"], status=refund.get("status"))
            return None
        return PaymentEvent(
            gateway=self.key,
            event_type=PaymentEventType.REFUND_SUCCEEDED,
            external_ref=payment.external_ref or "",
            amount=Money(int(refund["amount"]), str(refund["currency"]).upper()),
            refund_ref=str(refund["id"]),
        )

    async def lookup(self, payment: Payment) -> Optional[PaymentEvent]:
        if payment.external_ref:
            pi = await self._call("lookup", stripe.PaymentIntent.retrieve, id=payment.external_ref)
        else:
            result = await self._call(
                "lookup",
                stripe.PaymentIntent.search,
                query=f"metadata['payment_id']:'{payment.id}'",
            )
            data = result.get("data") or []
            if not data:
                return None
            pi = data[0]
        return self._event_from_intent(pi)

    def verify_callback(self, headers: Mapping[str, str], body: bytes) -> Optional[PaymentEvent]:
        if not self._webhook_secret:
            raise RejectedCallbackException(self.key, "webhook secret not configured")
        lowered = {k.lower(): v for k, v in headers.items()}
        sig = lowered.get("stripe-signature")
        if not sig:
            raise RejectedCallbackException(self.key, "missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(
                payload=body,
                sig_header=sig,
                secret=self._webhook_secret,
                tolerance=self._tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise RejectedCallbackException(self.key, f"signature verification failed: {exc}") from exc
        except ValueError as exc:
            raise RejectedCallbackException(self.key, f"invalid payload: {exc}") from exc

        try:
            payload = json.loads(body)
            return self._event_from_webhook(payload)
        except (ValueError, KeyError, TypeError) as exc:
            raise RejectedCallbackException(self.key, f"malformed payload: {exc}") from exc
        except DomainValidationException as exc:
            raise RejectedCallbackException(self.key, f"invalid event: {exc.message}") from exc

    def _event_from_webhook(self, payload: dict[str, Any]) -> Optional[PaymentEvent]:
        gateway_type = str(payload["type"])
        event_type = self._map_event(gateway_type)
        if event_type is None:
            return None
        obj = payload["data"]["object"]

        if event_type == PaymentEventType.REFUND_SUCCEEDED:
            if obj.get("status") != "succeeded":
                return None
            return PaymentEvent(
                gateway=self.key,
                event_type=event_type,
                external_ref=str(obj["payment_intent"]),
                amount=Money(int(obj["amount"]), str(obj["currency"]).upper()),
                refund_ref=str(obj["id"]),
                gateway_event_id=payload.get("id"),
                raw_type=gateway_type,
            )

        amount = None
        currency = str(obj.get("currency", "")).upper()
        if event_type == PaymentEventType.CAPTURE_SUCCEEDED:
            amount = Money(int(obj["amount_received"]), currency)
        elif event_type == PaymentEventType.AUTHORIZATION_SUCCEEDED:
            amount = Money(int(obj["amount_capturable"]), currency)
        error = obj.get("last_payment_error") or {}
        return PaymentEvent(
            gateway=self.key,
            event_type=event_type,
            external_ref=str(obj["id"]),
            amount=amount,
            gateway_event_id=payload.get("id"),
            raw_type=gateway_type,
            reason=error.get("message") or obj.get("cancellation_reason"),
        )
