"""
Payment processor port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements one adapter
per gateway and registers it under a stable key in the ProcessorRegistry.
The same key is stored on every Payment, so callback processing resolves
the implementation without depending on code location.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Protocol, runtime_checkable

from domain.common.money import Money
from domain.payment.entity import Payment
from domain.payment.events import PaymentEvent


class PaymentFlow(str, Enum):
    CARD = "card"            # synchronous authorize + capture in the buyer request
    REDIRECT = "redirect"    # buyer is sent to the gateway; completion arrives by webhook


@dataclass(frozen=True)
class OrderContext:
    """Order facts a processor needs to start collection."""

    order_id: int
    total: Money
    description: str
    buyer_ref: Optional[str] = None
    return_url: Optional[str] = None
    payment_token: Optional[str] = None  # card flow only


@dataclass(frozen=True)
class InitiationResult:
    """
    Gateway handle for a started payment.

    ``event`` carries a gateway fact learned synchronously (e.g. the card was
    authorized or declined) and is applied through the callback pipeline.
    """

    external_ref: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    event: Optional[PaymentEvent] = None


@runtime_checkable
class PaymentProcessor(Protocol):
    """Gateway protocol for third-party payment processors.

    Implementations are async for IO and must pass a client-supplied
    idempotency token (derived from the Payment) on every mutating call.
    Timeouts raise AmbiguousGatewayOutcomeException; transient network/5xx
    failures raise GatewayUnavailableException.
    """

    key: str
    display_name: str
    flow: PaymentFlow

    def supports(self, currency: str, amount: Money) -> bool: ...

    async def initiate(self, payment: Payment, context: OrderContext) -> InitiationResult: ...

    async def capture(self, payment: Payment) -> PaymentEvent: ...

    async def refund(self, payment: Payment, amount: Money, refund_key: str) -> Optional[PaymentEvent]:
        """Return the refund_succeeded event, or None when the gateway settles it later by webhook."""
        ...

    def verify_callback(self, headers: Mapping[str, str], body: bytes) -> Optional[PaymentEvent]:
        """Validate signature and payload.

        Raises RejectedCallbackException on an invalid signature or malformed
        payload; returns None for authentic notifications of event types this
        subsystem does not act on.
        """
        ...

    async def lookup(self, payment: Payment) -> Optional[PaymentEvent]:
        """Ask the gateway for the current outcome of ``payment`` (reconciliation)."""
        ...

    async def aclose(self) -> None: ...
