"""
回调记录实体 - 每条入站通知（以及同步扣款结果）的审计记录

记录一经写入不再修改，也不会被本子系统删除。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from domain.common.money import Money
from domain.payment.events import PaymentEvent, PaymentEventType


class CallbackOutcome(str, Enum):
    """回调处理结果"""
    APPLIED = "applied"                        # 已应用到支付
    DUPLICATE_IGNORED = "duplicate_ignored"    # 重复投递，已忽略
    REJECTED = "rejected"                      # 签名无效、孤儿回调或金额非法
    IGNORED = "ignored"                        # 过期事件（支付已处于或越过目标状态）或与本地状态矛盾
    DEFERRED = "deferred"                      # 前置状态未到（如先于扣款到达的退款），暂存待重放


class CallbackSource(str, Enum):
    WEBHOOK = "webhook"
    SYNC = "sync"                    # 买家请求内的同步扣款/退款结果
    RECONCILIATION = "reconciliation"


@dataclass
class CallbackRecord:
    id: Optional[int]
    gateway: str
    source: CallbackSource
    outcome: CallbackOutcome
    payload: str
    signature_valid: bool
    external_ref: Optional[str] = None
    event_type: Optional[str] = None
    event_key: Optional[str] = None
    payment_id: Optional[int] = None
    amount: Optional[Money] = None
    reason: Optional[str] = None
    dedup_key: Optional[str] = None  # only set when outcome == applied
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_event(
        cls,
        event: PaymentEvent,
        *,
        source: CallbackSource,
        outcome: CallbackOutcome,
        payload: str,
        payment_id: Optional[int] = None,
        amount: Optional[Money] = None,
        reason: Optional[str] = None,
    ) -> "CallbackRecord":
        return cls(
            id=None,
            gateway=event.gateway,
            source=source,
            outcome=outcome,
            payload=payload,
            signature_valid=True,
            external_ref=event.external_ref,
            event_type=event.event_type.value,
            event_key=event.event_key,
            payment_id=payment_id,
            amount=amount,
            reason=reason,
            dedup_key=event.dedup_key if outcome == CallbackOutcome.APPLIED else None,
        )

    @classmethod
    def rejected_signature(cls, gateway: str, payload: str, reason: str) -> "CallbackRecord":
        return cls(
            id=None,
            gateway=gateway,
            source=CallbackSource.WEBHOOK,
            outcome=CallbackOutcome.REJECTED,
            payload=payload,
            signature_valid=False,
            reason=reason,
        )

    def to_event(self) -> PaymentEvent:
        """由暂存记录重建事件，用于 deferred 重放"""
        refund_ref = None
        if self.event_key and ":" in self.event_key:
            refund_ref = self.event_key.split(":", 1)[1]
        return PaymentEvent(
            gateway=self.gateway,
            event_type=PaymentEventType(self.event_type),
            external_ref=self.external_ref or "",
            amount=self.amount,
            refund_ref=refund_ref,
        )
