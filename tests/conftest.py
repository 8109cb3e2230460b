"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import json
import os
from typing import Optional

# Settings are read at import time; keep tests off the real database and SDKs
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("PAYMENT__ENABLED_PROCESSORS", "[]")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

from application.dto import OrderDraftDTO
from application.ports.payment_processor import InitiationResult, PaymentFlow
from application.processor_registry import ProcessorRegistry
from domain.common.exceptions import RejectedCallbackException
from domain.common.money import Money
from domain.payment.events import PaymentEvent, PaymentEventType
from infrastructure.container import build_container
from infrastructure.database import build_engine, create_tables
from infrastructure.unit_of_work import uow_factory


WEBHOOK_SECRET = "s3cret"


class FakeGateway:
    """In-process redirect gateway; webhooks are JSON with a shared-secret header."""

    key = "gateway_a"
    display_name = "Gateway A"
    flow = PaymentFlow.REDIRECT

    def __init__(self) -> None:
        self.calls: list[tuple[str, Optional[int]]] = []
        self.fail_next: Optional[Exception] = None
        self.capture_fails = False
        self.refund_settles = True
        self.lookup_event: Optional[PaymentEvent] = None

    def _record(self, operation: str, payment) -> None:
        self.calls.append((operation, payment.id))
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc

    def supports(self, currency: str, amount: Money) -> bool:
        return currency == "USD" and amount.minor <= 1_000_000

    async def initiate(self, payment, context) -> InitiationResult:
        self._record("initiate", payment)
        ref = f"ga_{payment.id}"
        return InitiationResult(external_ref=ref, redirect_url=f"https://gateway-a.test/pay/{ref}")

    async def capture(self, payment) -> PaymentEvent:
        self._record("capture", payment)
        event_type = PaymentEventType.CAPTURE_FAILED if self.capture_fails else PaymentEventType.CAPTURE_SUCCEEDED
        return PaymentEvent(
            gateway=self.key,
            event_type=event_type,
            external_ref=payment.external_ref,
            amount=None if self.capture_fails else payment.amount,
        )

    async def refund(self, payment, amount: Money, refund_key: str) -> Optional[PaymentEvent]:
        self._record("refund", payment)
        if not self.refund_settles:
            return None
        return PaymentEvent(
            gateway=self.key,
            event_type=PaymentEventType.REFUND_SUCCEEDED,
            external_ref=payment.external_ref,
            amount=amount,
            refund_ref=f"rf_{refund_key}",
        )

    def verify_callback(self, headers, body: bytes) -> Optional[PaymentEvent]:
        lowered = {k.lower(): v for k, v in headers.items()}
        if lowered.get("x-gateway-secret") != WEBHOOK_SECRET:
            raise RejectedCallbackException(self.key, "signature mismatch")
        data = json.loads(body)
        try:
            event_type = PaymentEventType(data["type"])
        except ValueError:
            return None
        amount = Money(data["amount"], data.get("currency", "USD")) if data.get("amount") is not None else None
        return PaymentEvent(
            gateway=self.key,
            event_type=event_type,
            external_ref=data["ref"],
            amount=amount,
            refund_ref=data.get("refund_ref"),
            reason=data.get("reason"),
        )

    async def lookup(self, payment) -> Optional[PaymentEvent]:
        self._record("lookup", payment)
        return self.lookup_event

    async def aclose(self) -> None:
        return None


class FakeCardGateway(FakeGateway):
    """Card flow: initiation authorizes synchronously."""

    key = "gateway_card"
    display_name = "Card"
    flow = PaymentFlow.CARD

    async def initiate(self, payment, context) -> InitiationResult:
        self._record("initiate", payment)
        ref = f"gc_{payment.id}"
        return InitiationResult(
            external_ref=ref,
            client_secret=f"{ref}_secret",
            event=PaymentEvent(
                gateway=self.key,
                event_type=PaymentEventType.AUTHORIZATION_SUCCEEDED,
                external_ref=ref,
                amount=payment.amount,
            ),
        )


def webhook_request(event_type: str, ref: str, *, amount: Optional[int] = None, refund_ref: Optional[str] = None,
                    secret: str = WEBHOOK_SECRET, reason: Optional[str] = None) -> tuple[dict, bytes]:
    body = {"type": event_type, "ref": ref, "amount": amount, "currency": "USD", "refund_ref": refund_ref, "reason": reason}
    return {"X-Gateway-Secret": secret}, json.dumps(body).encode("utf-8")


ORDER_LINES = [
    {"product_ref": "sku-1", "description": "Widget", "quantity": 2, "unit_price": 3000},
    {"product_ref": "sku-2", "description": "Gadget", "quantity": 1, "unit_price": 4000},
]


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def make_uow(session_factory):
    return uow_factory(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def card_gateway():
    return FakeCardGateway()


@pytest.fixture
def registry(gateway, card_gateway):
    registry = ProcessorRegistry()
    registry.register(gateway)
    registry.register(card_gateway)
    return registry


@pytest.fixture
def container(registry, session_factory):
    return build_container(registry=registry, session_factory=session_factory)


@pytest.fixture
def webhook():
    return webhook_request


@pytest.fixture
def order_lines():
    return [dict(line) for line in ORDER_LINES]


@pytest_asyncio.fixture
async def order(container, order_lines):
    """A persisted order totalling 10000 (USD minor units)."""
    return await container.orders.create_order(OrderDraftDTO(currency="USD", buyer_ref="buyer-1", lines=order_lines))
