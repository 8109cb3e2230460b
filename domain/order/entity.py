"""
订单领域实体 - 订单聚合根
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from domain.common.exceptions import (
    DomainValidationException,
    OrderNotCancellableException,
)
from domain.common.money import Money, sum_money


class OrderState(str, Enum):
    """订单状态枚举"""
    DRAFT = "draft"                              # 草稿（不持久化）
    CREATED = "created"                          # 已创建
    AWAITING_PAYMENT = "awaiting_payment"        # 待支付
    PAID = "paid"                                # 已支付
    PARTIALLY_REFUNDED = "partially_refunded"    # 部分退款
    REFUNDED = "refunded"                        # 已退款
    FAILED = "failed"                            # 支付失败
    CANCELLED = "cancelled"                      # 已取消


# Progress rank; a derived state is only applied when it ranks strictly higher.
_STATE_RANK: dict[OrderState, int] = {
    OrderState.DRAFT: 0,
    OrderState.CREATED: 1,
    OrderState.AWAITING_PAYMENT: 2,
    OrderState.PAID: 3,
    OrderState.FAILED: 3,
    OrderState.CANCELLED: 3,
    OrderState.PARTIALLY_REFUNDED: 4,
    OrderState.REFUNDED: 5,
}

TERMINAL_STATES = frozenset({OrderState.REFUNDED, OrderState.FAILED, OrderState.CANCELLED})
PAYABLE_STATES = frozenset({OrderState.CREATED, OrderState.AWAITING_PAYMENT})


def is_forward_transition(current: OrderState, target: OrderState) -> bool:
    if current in TERMINAL_STATES or target == OrderState.DRAFT:
        return False
    if target == OrderState.CREATED:
        return current == OrderState.DRAFT
    return _STATE_RANK[target] > _STATE_RANK[current]


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class OrderLine:
    """订单行描述（创建时固定）"""

    product_ref: str
    description: str
    quantity: int
    unit_price: Money
    position: int = 0

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise DomainValidationException(f"数量必须大于0: {self.quantity}", field="quantity")
        if self.unit_price.minor < 0:
            raise DomainValidationException(f"单价不能为负: {self.unit_price.minor}", field="unit_price")

    @property
    def line_total(self) -> Money:
        return self.unit_price * self.quantity


@dataclass
class Order:
    """
    订单聚合根

    业务规则：
    1. 订单总额等于所有订单行金额之和
    2. 订单行在创建后不可修改
    3. 只有 created / awaiting_payment 状态的订单可以发起支付
    4. 状态只能前进，不能回退（见 is_forward_transition）
    """

    id: Optional[int]
    currency: str
    lines: list[OrderLine]
    state: OrderState = OrderState.DRAFT
    buyer_ref: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.currency = self.currency.upper()
        if not self.lines:
            raise DomainValidationException("订单至少需要一行", field="lines")
        for line in self.lines:
            if line.unit_price.currency != self.currency:
                raise DomainValidationException(
                    f"订单行币种 {line.unit_price.currency} 与订单币种 {self.currency} 不一致",
                    field="lines",
                )
        if not self.total.is_positive():
            raise DomainValidationException("订单总额必须大于0", field="lines")
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.cancelled_at = _ensure_utc(self.cancelled_at)

    @property
    def total(self) -> Money:
        return sum_money((line.line_total for line in self.lines), self.currency)

    # ------------------------------------------------------------------
    # Derived predicates
    # ------------------------------------------------------------------
    def is_payable(self) -> bool:
        return self.state in PAYABLE_STATES

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition_to(self, target: OrderState) -> bool:
        return target == self.state or is_forward_transition(self.state, target)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def mark_created(self) -> None:
        if self.state != OrderState.DRAFT:
            raise DomainValidationException(f"无法从状态 {self.state.value} 转换为 created", field="state")
        now = datetime.now(timezone.utc)
        self.state = OrderState.CREATED
        self.created_at = now
        self.updated_at = now

    def advance_to(self, target: OrderState) -> bool:
        """Move forward to a derived state; returns False when the move would regress."""
        if not is_forward_transition(self.state, target):
            return False
        self.state = target
        self.updated_at = datetime.now(timezone.utc)
        return True

    def cancel(self, *, has_captured_payment: bool) -> None:
        """取消订单：只有尚无成功扣款的 created / awaiting_payment 订单可以取消"""
        if self.state not in PAYABLE_STATES or has_captured_payment:
            raise OrderNotCancellableException(self.id, self.state.value)
        now = datetime.now(timezone.utc)
        self.state = OrderState.CANCELLED
        self.cancelled_at = now
        self.updated_at = now
