"""
支付领域实体 - 一次收款/退款尝试
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from domain.common.exceptions import (
    DomainValidationException,
    InvalidPaymentTransitionException,
    RefundExceededException,
)
from domain.common.money import Money


class PaymentState(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"                          # 待支付
    AUTHORIZED = "authorized"                    # 已授权
    CAPTURED = "captured"                        # 已扣款
    FAILED = "failed"                            # 失败
    REFUNDED = "refunded"                        # 已全额退款
    PARTIALLY_REFUNDED = "partially_refunded"    # 部分退款


# Ordering of the collection branch; refunds only follow a capture.
_COLLECTION_RANK = {
    PaymentState.PENDING: 0,
    PaymentState.AUTHORIZED: 1,
    PaymentState.CAPTURED: 2,
    PaymentState.PARTIALLY_REFUNDED: 3,
    PaymentState.REFUNDED: 4,
}

SETTLED_STATES = frozenset({
    PaymentState.CAPTURED,
    PaymentState.PARTIALLY_REFUNDED,
    PaymentState.REFUNDED,
})
IN_FLIGHT_STATES = frozenset({PaymentState.PENDING, PaymentState.AUTHORIZED})


class ReconciliationCause(str, Enum):
    """待复核原因；各原因独立清除，互不覆盖"""
    OUTCOME_UNKNOWN = "outcome_unknown"    # 发起/扣款调用超时，收款结果未知
    REFUND_UNKNOWN = "refund_unknown"      # 退款调用超时，退款结果未知
    DEFERRED_EVENT = "deferred_event"      # 先于前置状态到达的事件已暂存，等待重放
    CONFLICT = "conflict"                  # 网关事实与本地状态矛盾，只能人工处理


def parse_causes(raw: Optional[str]) -> set[ReconciliationCause]:
    return {ReconciliationCause(part) for part in (raw or "").split(",") if part}


def format_causes(causes: set[ReconciliationCause]) -> str:
    return ",".join(sorted(c.value for c in causes))


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Payment:
    """
    支付实体 - 属于一个订单，经由一个处理器收款

    业务规则：
    1. 金额必须大于0，且不超过订单剩余可收金额（由 PaymentBuilder 校验）
    2. 状态只能沿 pending → authorized → captured → (partially_)refunded 前进，
       或在扣款前转为 failed
    3. captured / failed / refunded 对收款分支是终态，重复的扣款请求为空操作
    4. 累计退款不能超过已扣款金额
    5. 状态迁移不清除待复核标记，标记只按原因逐一清除
    """

    id: Optional[int]
    order_id: int
    processor: str
    amount: Money
    idempotency_key: str
    state: PaymentState = PaymentState.PENDING
    external_ref: Optional[str] = None
    refunded_amount: Optional[Money] = None
    reconciliation_causes: set[ReconciliationCause] = field(default_factory=set)
    failure_reason: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.amount.is_positive():
            raise DomainValidationException(f"支付金额必须大于0: {self.amount.minor}", field="amount")
        if not self.idempotency_key:
            raise DomainValidationException("缺少幂等键", field="idempotency_key")
        if self.refunded_amount is None:
            self.refunded_amount = Money.zero(self.amount.currency)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.captured_at = _ensure_utc(self.captured_at)

    # ------------------------------------------------------------------
    # Derived predicates
    # ------------------------------------------------------------------
    @property
    def currency(self) -> str:
        return self.amount.currency

    @property
    def needs_reconciliation(self) -> bool:
        return bool(self.reconciliation_causes)

    def is_settled(self) -> bool:
        return self.state in SETTLED_STATES

    def is_in_flight(self) -> bool:
        return self.state in IN_FLIGHT_STATES

    def is_failed(self) -> bool:
        return self.state == PaymentState.FAILED

    def refundable_amount(self) -> Money:
        if not self.is_settled():
            return Money.zero(self.currency)
        return self.amount - self.refunded_amount

    def _reached(self, target: PaymentState) -> bool:
        if self.state == PaymentState.FAILED:
            return False
        return _COLLECTION_RANK[self.state] >= _COLLECTION_RANK[target]

    def _touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Transitions. Each returns True when state changed, False when the
    # payment already reached (or passed) the target, and raises when the
    # move is impossible (e.g. capturing a failed payment).
    # ------------------------------------------------------------------
    def bind_external_ref(self, external_ref: Optional[str]) -> None:
        if not external_ref:
            return
        if self.external_ref and self.external_ref != external_ref:
            raise DomainValidationException(
                f"支付 {self.id} 已绑定外部引用 {self.external_ref}",
                field="external_ref",
            )
        self.external_ref = external_ref
        self._touch()

    def mark_authorized(self) -> bool:
        if self.state == PaymentState.FAILED:
            raise InvalidPaymentTransitionException(self.id, self.state.value, PaymentState.AUTHORIZED.value)
        if self._reached(PaymentState.AUTHORIZED):
            return False
        self.state = PaymentState.AUTHORIZED
        self._touch()
        return True

    def mark_captured(self) -> bool:
        if self.state == PaymentState.FAILED:
            raise InvalidPaymentTransitionException(self.id, self.state.value, PaymentState.CAPTURED.value)
        if self._reached(PaymentState.CAPTURED):
            return False
        self.state = PaymentState.CAPTURED
        if not self.reconciliation_causes:
            self.failure_reason = None
        self.captured_at = datetime.now(timezone.utc)
        self.updated_at = self.captured_at
        return True

    def mark_failed(self, reason: Optional[str] = None) -> bool:
        if self.state == PaymentState.FAILED:
            return False
        if self.is_settled():
            raise InvalidPaymentTransitionException(self.id, self.state.value, PaymentState.FAILED.value)
        self.state = PaymentState.FAILED
        self.failure_reason = reason
        self._touch()
        return True

    def apply_refund(self, amount: Money) -> bool:
        """应用一笔已成功的退款；累计退完即为 refunded，否则为 partially_refunded"""
        if not self.is_settled():
            raise InvalidPaymentTransitionException(self.id, self.state.value, PaymentState.REFUNDED.value)
        if not amount.is_positive():
            raise DomainValidationException(f"退款金额必须大于0: {amount.minor}", field="amount")
        refundable = self.refundable_amount()
        if amount > refundable:
            raise RefundExceededException(amount.minor, refundable.minor)
        self.refunded_amount = self.refunded_amount + amount
        if self.refunded_amount >= self.amount:
            self.state = PaymentState.REFUNDED
        else:
            self.state = PaymentState.PARTIALLY_REFUNDED
        self._touch()
        return True

    def flag_for_reconciliation(self, reason: str, cause: ReconciliationCause = ReconciliationCause.OUTCOME_UNKNOWN) -> bool:
        """保持当前状态，记下复核原因，等待对账任务或人工处理"""
        if cause in self.reconciliation_causes and self.failure_reason == reason:
            return False
        self.reconciliation_causes.add(cause)
        self.failure_reason = reason
        self._touch()
        return True

    def clear_reconciliation(self, cause: ReconciliationCause) -> bool:
        """只清除指定原因；其他原因引起的待复核标记保留"""
        if cause not in self.reconciliation_causes:
            return False
        self.reconciliation_causes.discard(cause)
        self._touch()
        return True
