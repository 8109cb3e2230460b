"""领域层业务异常定义，供领域、应用与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional

from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class ConcurrentUpdateException(BusinessException):
    """Optimistic concurrency check lost a race; caller should re-read and retry."""

    def __init__(self, entity: str, entity_id: object):
        super().__init__(
            code=BusinessCode.CONFLICT,
            message=f"{entity} {entity_id} was modified concurrently",
            error_type="ConcurrentUpdate",
            details={"entity": entity, "id": entity_id},
        )


# ----------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------
class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: object):
        super().__init__(
            code=BusinessCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details={"order_id": order_id},
        )


class OrderNotPayableException(BusinessException):
    def __init__(self, order_id: object, state: str):
        super().__init__(
            code=BusinessCode.ORDER_NOT_PAYABLE,
            message=f"Order in state {state} cannot accept payments",
            error_type="OrderNotPayable",
            details={"order_id": order_id, "state": state},
        )


class OrderNotCancellableException(BusinessException):
    def __init__(self, order_id: object, state: str):
        super().__init__(
            code=BusinessCode.ORDER_NOT_CANCELLABLE,
            message=f"Order in state {state} cannot be cancelled",
            error_type="OrderNotCancellable",
            details={"order_id": order_id, "state": state},
        )


# ----------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------
class PaymentNotFoundException(BusinessException):
    def __init__(self, identifier: object):
        super().__init__(
            code=BusinessCode.PAYMENT_NOT_FOUND,
            message="Payment not found",
            error_type="PaymentNotFound",
            details={"payment": identifier},
        )


class InvalidProcessorException(BusinessException):
    def __init__(self, processor: str):
        super().__init__(
            code=PaymentCode.INVALID_PROCESSOR,
            message=f"Processor '{processor}' is not registered",
            error_type="InvalidProcessor",
            details={"processor": processor},
            field="processor",
        )


class AmountExceededException(BusinessException):
    def __init__(self, requested: int, remaining: int, currency: str):
        super().__init__(
            code=PaymentCode.AMOUNT_EXCEEDED,
            message=f"Requested amount {requested} exceeds remaining collectible {remaining}",
            error_type="AmountExceeded",
            details={"requested": requested, "remaining": remaining, "currency": currency},
            field="amount",
        )


class InvalidPaymentTransitionException(BusinessException):
    def __init__(self, payment_id: object, current: str, target: str):
        super().__init__(
            code=PaymentCode.INVALID_TRANSITION,
            message=f"Payment cannot move from {current} to {target}",
            error_type="InvalidPaymentTransition",
            details={"payment_id": payment_id, "current": current, "target": target},
        )


class RefundExceededException(BusinessException):
    def __init__(self, requested: int, refundable: int):
        super().__init__(
            code=PaymentCode.REFUND_EXCEEDED,
            message=f"Refund amount {requested} exceeds refundable {refundable}",
            error_type="RefundExceeded",
            details={"requested": requested, "refundable": refundable},
            field="amount",
        )


# ----------------------------------------------------------------------
# Callbacks
# ----------------------------------------------------------------------
class UnknownGatewayException(BusinessException):
    def __init__(self, gateway: str):
        super().__init__(
            code=PaymentCode.UNKNOWN_GATEWAY,
            message=f"No callback processor registered for gateway '{gateway}'",
            error_type="UnknownGateway",
            details={"gateway": gateway},
        )


class RejectedCallbackException(BusinessException):
    """Inbound notification failed signature or payload validation."""

    def __init__(self, gateway: str, reason: str):
        super().__init__(
            code=PaymentCode.REJECTED_CALLBACK,
            message=f"Callback rejected: {reason}",
            error_type="RejectedCallback",
            details={"gateway": gateway, "reason": reason},
        )
        self.gateway = gateway
        self.reason = reason


class OrphanCallbackException(BusinessException):
    def __init__(self, gateway: str, external_ref: str):
        super().__init__(
            code=PaymentCode.ORPHAN_CALLBACK,
            message="Callback references no known payment",
            error_type="OrphanCallback",
            details={"gateway": gateway, "external_ref": external_ref},
        )
        self.gateway = gateway
        self.external_ref = external_ref


class DuplicateCallbackException(BusinessException):
    """Event was already applied; callers treat this as success, not failure."""

    def __init__(self, dedup_key: str, applied_record_id: Optional[int] = None):
        super().__init__(
            code=PaymentCode.DUPLICATE_CALLBACK,
            message="Callback already applied",
            error_type="DuplicateCallback",
            details={"dedup_key": dedup_key, "applied_record_id": applied_record_id},
        )
        self.dedup_key = dedup_key
        self.applied_record_id = applied_record_id


# ----------------------------------------------------------------------
# Gateway IO
# ----------------------------------------------------------------------
class GatewayUnavailableException(BusinessException):
    """Transient network/5xx failure; the request was not accepted by the gateway."""

    def __init__(self, gateway: str, message: str = "Gateway unavailable"):
        super().__init__(
            code=PaymentCode.GATEWAY_UNAVAILABLE,
            message=message,
            error_type="GatewayUnavailable",
            details={"gateway": gateway},
        )
        self.gateway = gateway


class AmbiguousGatewayOutcomeException(BusinessException):
    """The call timed out after being sent; its effect on the gateway is unknown."""

    def __init__(self, gateway: str, operation: str):
        super().__init__(
            code=PaymentCode.AMBIGUOUS_OUTCOME,
            message=f"Gateway {operation} outcome unknown, pending reconciliation",
            error_type="AmbiguousGatewayOutcome",
            details={"gateway": gateway, "operation": operation},
        )
        self.gateway = gateway
        self.operation = operation


class GatewayDeclinedException(BusinessException):
    def __init__(self, gateway: str, reason: str, *, provider_code: Optional[str] = None):
        super().__init__(
            code=PaymentCode.GATEWAY_DECLINED,
            message=reason,
            error_type="GatewayDeclined",
            details={"gateway": gateway, "provider_code": provider_code},
        )
        self.gateway = gateway
        self.reason = reason


# ----------------------------------------------------------------------
# Receipts
# ----------------------------------------------------------------------
class ReconciliationError(BusinessException):
    def __init__(self, message: str, *, expected: int, computed: int, details: Optional[dict] = None):
        full = {"expected": expected, "computed": computed}
        if details:
            full.update(details)
        super().__init__(
            code=PaymentCode.RECONCILIATION_ERROR,
            message=message,
            error_type="ReconciliationError",
            details=full,
        )
