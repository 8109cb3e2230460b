"""
Base processor client implementing shared concerns: http, retry, timeouts,
logging and gateway-event mapping.

Error policy shared by every gateway:
- request never left (connect/pool timeout, transport error) or the gateway
  answered 429/5xx → GatewayUnavailableException, retried with backoff;
- request sent but no answer in time (read/write/total timeout)
  → AmbiguousGatewayOutcomeException, never retried here.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from application.ports.payment_processor import PaymentFlow
from core.logging_config import get_logger
from domain.common.exceptions import (
    AmbiguousGatewayOutcomeException,
    GatewayUnavailableException,
)
from domain.common.money import Money
from domain.payment.entity import Payment
from domain.payment.events import PaymentEventType
from shared.codes.payment_codes import GATEWAY_EVENT_TO_CANONICAL


logger = get_logger(__name__)

T = TypeVar("T")


class BaseProcessorClient:
    key: str = "base"
    flow: PaymentFlow = PaymentFlow.REDIRECT

    def __init__(
        self,
        *,
        display_name: Optional[str] = None,
        currencies: Optional[list[str]] = None,
        max_amount: Optional[int] = None,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        self.display_name = display_name or self.key
        self._currencies = {c.upper() for c in currencies} if currencies else None
        self._max_amount = max_amount
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._client: Optional[httpx.AsyncClient] = None

    def supports(self, currency: str, amount: Money) -> bool:
        if self._currencies is not None and currency.upper() not in self._currencies:
            return False
        if self._max_amount is not None and amount.minor > self._max_amount:
            return False
        return True

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            pool=self._timeouts_cfg["connect"],
        )

    @property
    def total_timeout(self) -> float:
        return float(self._timeouts_cfg["total"])

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeouts)

    def http(self) -> httpx.AsyncClient:
        """Lazily created, shared across calls until aclose()."""
        if self._client is None:
            self._client = self._build_client()
        return self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type(GatewayUnavailableException),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _bounded(self, operation: str, coro: Awaitable[T]) -> T:
        """Apply the total deadline; hitting it means the outcome is unknown."""
        try:
            return await asyncio.wait_for(coro, timeout=self.total_timeout)
        except asyncio.TimeoutError as exc:
            raise AmbiguousGatewayOutcomeException(self.key, operation) from exc

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        async def _send() -> httpx.Response:
            call = self.http().request(method, url, json=json, params=params, headers=headers)
            try:
                resp = await self._bounded(operation, call)
            except (httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
                # never reached the gateway
                raise GatewayUnavailableException(self.key, f"{operation}: {exc.__class__.__name__}") from exc
            except httpx.TimeoutException as exc:
                raise AmbiguousGatewayOutcomeException(self.key, operation) from exc
            except httpx.TransportError as exc:
                raise GatewayUnavailableException(self.key, f"{operation}: {exc}") from exc
            if resp.status_code == 429 or resp.status_code >= 500:
                self._log("gateway_unavailable_response", operation=operation, status=resp.status_code)
                raise GatewayUnavailableException(self.key, f"{operation}: HTTP {resp.status_code}")
            return resp

        return await self._retry(_send)

    @staticmethod
    def idempotency_token(payment: Payment, operation: str, suffix: str = "") -> str:
        """Stable per-payment token passed to the gateway for deduplication on its side."""
        base = f"payment-{payment.id}-{operation}"
        return f"{base}-{suffix}" if suffix else base

    @staticmethod
    def merchant_reference(payment: Payment) -> str:
        return f"payment-{payment.id}"

    def _map_event(self, gateway_type: str) -> Optional[PaymentEventType]:
        canonical = GATEWAY_EVENT_TO_CANONICAL.get(self.key, {}).get(gateway_type)
        return PaymentEventType(canonical) if canonical else None

    def _log(self, event: str, **kwargs) -> None:
        logger.info(event, processor=self.key, **kwargs)
