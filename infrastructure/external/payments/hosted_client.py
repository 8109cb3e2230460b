"""
Hosted checkout adapter (redirect flow) over an HTTPS JSON API using httpx.

The buyer is redirected to the gateway's checkout page; the result is
reported by webhook. Webhooks are signed with HMAC-SHA256 over
``"{timestamp}.{raw body}"`` and carry the hex digest in ``X-Signature``
and the unix timestamp in ``X-Signature-Timestamp``.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Mapping, Optional

import httpx

from application.ports.payment_processor import InitiationResult, OrderContext, PaymentFlow
from core.logging_config import get_logger
from domain.common.exceptions import (
    DomainValidationException,
    GatewayDeclinedException,
    RejectedCallbackException,
)
from domain.common.money import Money
from domain.payment.entity import Payment
from domain.payment.events import PaymentEvent, PaymentEventType
from infrastructure.external.payments.base import BaseProcessorClient


logger = get_logger(__name__)

SIGNATURE_HEADER = "x-signature"
TIMESTAMP_HEADER = "x-signature-timestamp"

# checkout status reported by lookup → canonical event; open states map to None
_STATUS_TO_EVENT = {
    "authorized": PaymentEventType.AUTHORIZATION_SUCCEEDED,
    "captured": PaymentEventType.CAPTURE_SUCCEEDED,
    "capture_failed": PaymentEventType.CAPTURE_FAILED,
    "failed": PaymentEventType.AUTHORIZATION_FAILED,
    "expired": PaymentEventType.AUTHORIZATION_FAILED,
    "canceled": PaymentEventType.AUTHORIZATION_FAILED,
}


def sign_payload(secret: str, timestamp: int | str, body: bytes) -> str:
    message = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class HostedCheckoutClient(BaseProcessorClient):
    key = "hosted"
    flow = PaymentFlow.REDIRECT

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str],
        webhook_secret: Optional[str],
        return_url: Optional[str] = None,
        tolerance_seconds: int = 300,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._return_url = return_url
        self._tolerance = tolerance_seconds

    def _build_client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return httpx.AsyncClient(base_url=self._base_url, timeout=self.timeouts, headers=headers)

    @staticmethod
    def _decline_reason(resp: httpx.Response) -> tuple[str, Optional[str]]:
        try:
            body = resp.json()
        except ValueError:
            return f"HTTP {resp.status_code}", None
        error = body.get("error") or {}
        return str(error.get("message") or f"HTTP {resp.status_code}"), error.get("code")

    def _event_from_checkout(self, checkout: dict[str, Any], event_type: PaymentEventType) -> PaymentEvent:
        amount = None
        if checkout.get("amount") is not None and checkout.get("currency"):
            amount = Money(int(checkout["amount"]), checkout["currency"])
        return PaymentEvent(
            gateway=self.key,
            event_type=event_type,
            external_ref=str(checkout["id"]),
            amount=amount,
            reason=checkout.get("failure_reason"),
            raw_type=checkout.get("status"),
        )

    async def initiate(self, payment: Payment, context: OrderContext) -> InitiationResult:
        resp = await self._request(
            "initiate",
            "POST",
            "/checkouts",
            json={
                "amount": payment.amount.minor,
                "currency": payment.currency,
                "merchant_reference": self.merchant_reference(payment),
                "description": context.description,
                "customer_reference": context.buyer_ref,
                "return_url": context.return_url or self._return_url,
            },
            headers={"Idempotency-Key": self.idempotency_token(payment, "initiate")},
        )
        if resp.status_code >= 400:
            reason, code = self._decline_reason(resp)
            raise GatewayDeclinedException(self.key, reason, provider_code=code)
        body = resp.json()
        self._log("hosted_checkout_created", payment_id=payment.id, checkout_id=body.get("id"))
        return InitiationResult(external_ref=str(body["id"]), redirect_url=body.get("redirect_url"))

    async def capture(self, payment: Payment) -> PaymentEvent:
        resp = await self._request(
            "capture",
            "POST",
            f"/checkouts/{payment.external_ref}/capture",
            json={"amount": payment.amount.minor},
            headers={"Idempotency-Key": self.idempotency_token(payment, "capture")},
        )
        if resp.status_code >= 400:
            reason, _ = self._decline_reason(resp)
            return PaymentEvent(
                gateway=self.key,
                event_type=PaymentEventType.CAPTURE_FAILED,
                external_ref=payment.external_ref or "",
                reason=reason,
            )
        return self._event_from_checkout(resp.json(), PaymentEventType.CAPTURE_SUCCEEDED)

    async def refund(self, payment: Payment, amount: Money, refund_key: str) -> Optional[PaymentEvent]:
        resp = await self._request(
            "refund",
            "POST",
            f"/checkouts/{payment.external_ref}/refunds",
            json={"amount": amount.minor, "currency": amount.currency, "reference": refund_key},
            headers={"Idempotency-Key": self.idempotency_token(payment, "refund", refund_key)},
        )
        if resp.status_code >= 400:
            reason, code = self._decline_reason(resp)
            raise GatewayDeclinedException(self.key, reason, provider_code=code)
        body = resp.json()
        if body.get("status") != "succeeded":
            return None
        return PaymentEvent(
            gateway=self.key,
            event_type=PaymentEventType.REFUND_SUCCEEDED,
            external_ref=payment.external_ref or "",
            amount=Money(int(body.get("amount", amount.minor)), amount.currency),
            refund_ref=str(body["id"]),
        )

    async def lookup(self, payment: Payment) -> Optional[PaymentEvent]:
        if payment.external_ref:
            resp = await self._request("lookup", "GET", f"/checkouts/{payment.external_ref}")
            if resp.status_code == 404:
                return None
            checkout = resp.json()
        else:
            resp = await self._request(
                "lookup",
                "GET",
                "/checkouts",
                params={"merchant_reference": self.merchant_reference(payment)},
            )
            found = (resp.json().get("data") or []) if resp.status_code < 400 else []
            if not found:
                return None
            checkout = found[0]

        event_type = _STATUS_TO_EVENT.get(str(checkout.get("status")))
        if event_type is None:
            return None
        return self._event_from_checkout(checkout, event_type)

    def verify_callback(self, headers: Mapping[str, str], body: bytes) -> Optional[PaymentEvent]:
        if not self._webhook_secret:
            raise RejectedCallbackException(self.key, "webhook secret not configured")
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get(SIGNATURE_HEADER)
        timestamp = lowered.get(TIMESTAMP_HEADER)
        if not signature or not timestamp:
            raise RejectedCallbackException(self.key, "missing signature headers")
        try:
            ts = int(timestamp)
        except ValueError:
            raise RejectedCallbackException(self.key, "invalid signature timestamp") from None
        if abs(time.time() - ts) > self._tolerance:
            raise RejectedCallbackException(self.key, "signature timestamp outside tolerance")
        expected = sign_payload(self._webhook_secret, ts, body)
        if not hmac.compare_digest(expected, signature):
            raise RejectedCallbackException(self.key, "signature mismatch")

        try:
            payload = json.loads(body)
            event_type = self._map_event(str(payload["type"]))
            if event_type is None:
                return None
            data = payload["data"]
            amount = None
            if data.get("amount") is not None:
                amount = Money(int(data["amount"]), data["currency"])
            return PaymentEvent(
                gateway=self.key,
                event_type=event_type,
                external_ref=str(data["checkout_id"]),
                amount=amount,
                refund_ref=data.get("refund_id"),
                gateway_event_id=payload.get("id"),
                raw_type=payload["type"],
                reason=data.get("reason"),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise RejectedCallbackException(self.key, f"malformed payload: {exc}") from exc
        except DomainValidationException as exc:
            raise RejectedCallbackException(self.key, f"invalid event: {exc.message}") from exc
