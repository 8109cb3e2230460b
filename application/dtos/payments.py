"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from pydantic import Field

from application.dto import DTOBase
from domain.payment.entity import Payment
from domain.receipt.entity import Receipt


class CardPaymentRequest(DTOBase):
    processor: str = Field(..., min_length=1, max_length=32)
    idempotency_key: str = Field(..., min_length=1, max_length=64)
    payment_token: str = Field(..., min_length=1, description="Tokenized card (e.g. Stripe PaymentMethod id)")
    amount: Optional[int] = Field(None, gt=0, description="Defaults to the remaining collectible amount")


class RedirectPaymentRequest(DTOBase):
    processor: str = Field(..., min_length=1, max_length=32)
    idempotency_key: str = Field(..., min_length=1, max_length=64)
    amount: Optional[int] = Field(None, gt=0)
    return_url: Optional[str] = None


class RefundRequest(DTOBase):
    amount: int = Field(..., gt=0)
    idempotency_key: str = Field(..., min_length=1, max_length=64)
    reason: Optional[str] = Field(None, max_length=255)


class PaymentDTO(DTOBase):
    id: int
    order_id: int
    processor: str
    state: str
    amount: int
    refunded_amount: int
    currency: str
    external_ref: Optional[str] = None
    idempotency_key: str
    needs_reconciliation: bool = False
    reconciliation_causes: list[str] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, payment: Payment) -> "PaymentDTO":
        return cls(
            id=payment.id,  # type: ignore[arg-type]
            order_id=payment.order_id,
            processor=payment.processor,
            state=payment.state.value,
            amount=payment.amount.minor,
            refunded_amount=payment.refunded_amount.minor,
            currency=payment.currency,
            external_ref=payment.external_ref,
            idempotency_key=payment.idempotency_key,
            needs_reconciliation=payment.needs_reconciliation,
            reconciliation_causes=sorted(c.value for c in payment.reconciliation_causes),
            failure_reason=payment.failure_reason,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            captured_at=payment.captured_at,
        )


class PaymentInitiationDTO(DTOBase):
    """Result of a card or redirect initiation."""
    payment: PaymentDTO
    created: bool
    order_state: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    receipt_id: Optional[int] = None
    reconciliation_error: Optional[str] = None


class CallbackAckDTO(DTOBase):
    """Webhook acknowledgment; acknowledges receipt, not business success."""
    received: bool = True
    gateway: str
    outcome: str
    payment_id: Optional[int] = None
    reason: Optional[str] = None


class LineItemDTO(DTOBase):
    position: int
    description: str
    unit_amount: int
    quantity: int
    line_total: int


class ReceiptDTO(DTOBase):
    id: int
    payment_id: int
    order_id: int
    event_key: str
    kind: str
    total: int
    currency: str
    issued_at: datetime
    line_items: list[LineItemDTO]

    @classmethod
    def from_entity(cls, receipt: Receipt) -> "ReceiptDTO":
        return cls(
            id=receipt.id,  # type: ignore[arg-type]
            payment_id=receipt.payment_id,
            order_id=receipt.order_id,
            event_key=receipt.event_key,
            kind=receipt.kind.value,
            total=receipt.total.minor,
            currency=receipt.total.currency,
            issued_at=receipt.issued_at,
            line_items=[
                LineItemDTO(
                    position=item.position,
                    description=item.description,
                    unit_amount=item.unit_amount.minor,
                    quantity=item.quantity,
                    line_total=item.line_total.minor,
                )
                for item in receipt.line_items
            ],
        )
