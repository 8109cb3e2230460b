"""
Payment specific codes and gateway event mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Initiation errors surfaced to the buyer request (6xxxx)
    INVALID_PROCESSOR = 60000
    AMOUNT_EXCEEDED = 60001
    INVALID_TRANSITION = 60002
    REFUND_EXCEEDED = 60003

    # Callback ingestion
    REJECTED_CALLBACK = 60100
    ORPHAN_CALLBACK = 60101
    DUPLICATE_CALLBACK = 60102
    UNKNOWN_GATEWAY = 60103

    # Gateway IO
    GATEWAY_UNAVAILABLE = 60200
    AMBIGUOUS_OUTCOME = 60201
    GATEWAY_DECLINED = 60202

    # Receipts
    RECONCILIATION_ERROR = 60300


# Gateway event type -> canonical event type
GATEWAY_EVENT_TO_CANONICAL = {
    "stripe": {
        "payment_intent.amount_capturable_updated": "authorization_succeeded",
        "payment_intent.succeeded": "capture_succeeded",
        "payment_intent.payment_failed": "capture_failed",
        "payment_intent.canceled": "authorization_failed",
        "charge.refund.updated": "refund_succeeded",
        "refund.updated": "refund_succeeded",
    },
    "hosted": {
        "checkout.authorized": "authorization_succeeded",
        "checkout.authorization_failed": "authorization_failed",
        "checkout.captured": "capture_succeeded",
        "checkout.capture_failed": "capture_failed",
        "checkout.refunded": "refund_succeeded",
    },
}
