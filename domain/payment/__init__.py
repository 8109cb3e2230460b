from .entity import Payment, PaymentState, ReconciliationCause
from .events import PaymentEvent, PaymentEventType
from .callback import CallbackRecord, CallbackOutcome, CallbackSource
from .refund import RefundRequestRecord, RefundStatus

__all__ = [
    "Payment",
    "PaymentState",
    "ReconciliationCause",
    "PaymentEvent",
    "PaymentEventType",
    "CallbackRecord",
    "CallbackOutcome",
    "CallbackSource",
    "RefundRequestRecord",
    "RefundStatus",
]
