"""
Payment events reported by gateways.

A gateway notification (webhook), a synchronous capture response and a
reconciliation lookup all normalize into the same ``PaymentEvent`` record,
so one pipeline applies them and one dedup key covers every source.
Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException
from domain.common.money import Money
from domain.payment.entity import Payment


class PaymentEventType(str, Enum):
    AUTHORIZATION_SUCCEEDED = "authorization_succeeded"
    AUTHORIZATION_FAILED = "authorization_failed"
    CAPTURE_SUCCEEDED = "capture_succeeded"
    CAPTURE_FAILED = "capture_failed"
    REFUND_SUCCEEDED = "refund_succeeded"


FINANCIAL_EVENT_TYPES = frozenset({
    PaymentEventType.CAPTURE_SUCCEEDED,
    PaymentEventType.REFUND_SUCCEEDED,
})

CAPTURE_EVENT_KEY = PaymentEventType.CAPTURE_SUCCEEDED.value


def refund_event_key(refund_ref: str) -> str:
    return f"{PaymentEventType.REFUND_SUCCEEDED.value}:{refund_ref}"


@dataclass(frozen=True)
class PaymentEvent:
    """
    A validated gateway fact about one payment.

    ``event_key`` is the semantic identity used for deduplication: the event
    type, plus the gateway refund reference for refunds so that each refund
    of the same payment is its own event.
    """

    gateway: str
    event_type: PaymentEventType
    external_ref: str
    amount: Optional[Money] = None
    refund_ref: Optional[str] = None
    gateway_event_id: Optional[str] = None
    raw_type: Optional[str] = None
    reason: Optional[str] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not self.external_ref:
            raise DomainValidationException("事件缺少外部引用", field="external_ref")
        if self.event_type == PaymentEventType.REFUND_SUCCEEDED:
            if not self.refund_ref:
                raise DomainValidationException("退款事件缺少退款引用", field="refund_ref")
            if self.amount is None or not self.amount.is_positive():
                raise DomainValidationException("退款事件缺少有效金额", field="amount")

    @property
    def event_key(self) -> str:
        if self.event_type == PaymentEventType.REFUND_SUCCEEDED:
            return refund_event_key(self.refund_ref or "")
        return self.event_type.value

    @property
    def dedup_key(self) -> str:
        return f"{self.gateway}|{self.external_ref}|{self.event_key}"

    def is_financial(self) -> bool:
        return self.event_type in FINANCIAL_EVENT_TYPES

    def to_payload(self) -> dict[str, Any]:
        """Serialized form; key names are stable for stored records."""
        return {
            "gateway": self.gateway,
            "event_type": self.event_type.value,
            "external_ref": self.external_ref,
            "amount": self.amount.minor if self.amount else None,
            "currency": self.amount.currency if self.amount else None,
            "refund_ref": self.refund_ref,
            "gateway_event_id": self.gateway_event_id,
            "raw_type": self.raw_type,
            "reason": self.reason,
        }


def apply_event(payment: Payment, event: PaymentEvent) -> bool:
    """
    Transition ``payment`` per the event table. Returns True when state
    changed and False when the payment already reached that state.

    authorization_succeeded → authorized
    capture_succeeded → captured
    capture_failed / authorization_failed → failed
    refund_succeeded → refunded (cumulative full) / partially_refunded
    """
    if event.event_type == PaymentEventType.AUTHORIZATION_SUCCEEDED:
        return payment.mark_authorized()
    if event.event_type == PaymentEventType.CAPTURE_SUCCEEDED:
        if event.amount is not None and event.amount != payment.amount:
            raise DomainValidationException(
                f"扣款金额 {event.amount.minor} 与支付金额 {payment.amount.minor} 不一致",
                field="amount",
            )
        return payment.mark_captured()
    if event.event_type in (PaymentEventType.CAPTURE_FAILED, PaymentEventType.AUTHORIZATION_FAILED):
        return payment.mark_failed(event.reason or event.event_type.value)
    if event.event_type == PaymentEventType.REFUND_SUCCEEDED:
        return payment.apply_refund(event.amount)  # type: ignore[arg-type]
    raise DomainValidationException(f"未知事件类型: {event.event_type}", field="event_type")


def event_amount(payment: Payment, event: PaymentEvent) -> Money:
    """Money moved by a financial event (capture uses the payment amount)."""
    if event.event_type == PaymentEventType.REFUND_SUCCEEDED:
        return event.amount  # type: ignore[return-value]
    return payment.amount


__all__ = [
    "PaymentEventType",
    "PaymentEvent",
    "FINANCIAL_EVENT_TYPES",
    "CAPTURE_EVENT_KEY",
    "refund_event_key",
    "apply_event",
    "event_amount",
]
