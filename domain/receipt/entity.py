"""
收据领域实体 - 每个资金事件（扣款或一次退款）对应一张收据
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from domain.common.money import Money, sum_money


class ReceiptKind(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"


@dataclass(frozen=True)
class LineItemV2:
    description: str
    unit_amount: Money
    quantity: int
    line_total: Money
    id: Optional[int] = None
    position: int = 0

    @classmethod
    def of(cls, description: str, unit_amount: Money, quantity: int, position: int = 0) -> "LineItemV2":
        return cls(
            description=description,
            unit_amount=unit_amount,
            quantity=quantity,
            line_total=unit_amount * quantity,
            position=position,
        )

    def is_consistent(self) -> bool:
        return self.quantity > 0 and self.unit_amount * self.quantity == self.line_total


@dataclass
class Receipt:
    """
    收据

    业务规则：
    1. 只关联一个支付事件（payment_id + event_key），不直接关联订单
    2. 行项目金额之和 == 收据总额 == 触发事件金额
    """

    id: Optional[int]
    payment_id: int
    order_id: int
    event_key: str
    kind: ReceiptKind
    total: Money
    line_items: list[LineItemV2] = field(default_factory=list)
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def line_items_total(self) -> Money:
        return sum_money((item.line_total for item in self.line_items), self.total.currency)
