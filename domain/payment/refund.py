"""
退款请求实体 - 记录客户端退款幂等键与网关结果

同一支付的同一幂等键只对应一条记录：重放请求直接返回当前支付，
不会再次调用网关。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from domain.common.money import Money


class RefundStatus(str, Enum):
    REQUESTED = "requested"      # 已落库，网关调用进行中
    SUBMITTED = "submitted"      # 网关已受理，结果由 webhook 回传
    SUCCEEDED = "succeeded"
    FAILED = "failed"            # 网关未受理（不可用或拒绝），可用同一幂等键重试
    UNKNOWN = "unknown"          # 调用超时，等待对账用同一幂等键重新提交


@dataclass
class RefundRequestRecord:
    id: Optional[int]
    payment_id: int
    refund_key: str
    amount: Money
    status: RefundStatus = RefundStatus.REQUESTED
    refund_ref: Optional[str] = None
    reason: Optional[str] = None
    version: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_retryable(self) -> bool:
        return self.status == RefundStatus.FAILED

    def transition(self, status: RefundStatus, *, refund_ref: Optional[str] = None, reason: Optional[str] = None) -> bool:
        # succeeded is terminal
        if self.status == RefundStatus.SUCCEEDED or (self.status == status and not refund_ref):
            return False
        self.status = status
        if refund_ref:
            self.refund_ref = refund_ref
        if reason is not None:
            self.reason = reason
        self.updated_at = datetime.now(timezone.utc)
        return True
