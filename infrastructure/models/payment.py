"""
payments 与 payment_callbacks 表

金额一律存最小货币单位整数；状态迁移规则在 domain.payment.entity。
"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Text, Boolean,
    Index, ForeignKey, UniqueConstraint,
)
from datetime import datetime, timezone

from .base import Base


class PaymentModel(Base):
    """version 列用于乐观锁，每次更新 +1"""
    __tablename__ = "payments"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 订单信息
    order_id = Column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="订单ID"
    )

    # 支付渠道信息
    processor = Column(String(50), nullable=False, index=True, comment="处理器注册键: stripe/hosted/...")
    external_ref = Column(String(200), nullable=True, comment="网关分配的支付ID")
    idempotency_key = Column(String(128), nullable=False, comment="幂等键")

    # 金额信息（最小货币单位整数）
    amount_minor = Column(BigInteger, nullable=False, comment="支付金额")
    refunded_minor = Column(BigInteger, nullable=False, default=0, comment="已退款金额")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")

    # 状态
    state = Column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/authorized/captured/failed/refunded/partially_refunded"
    )
    needs_reconciliation = Column(Boolean, nullable=False, default=False, index=True, comment="待复核（reconciliation_causes 非空）")
    reconciliation_causes = Column(String(200), nullable=False, default="", comment="待复核原因，逗号分隔")
    failure_reason = Column(Text, nullable=True, comment="失败/待复核原因")
    version = Column(Integer, nullable=False, default=0, comment="乐观锁版本号")

    # 时间戳
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )
    captured_at = Column(DateTime(timezone=True), nullable=True, comment="扣款完成时间")

    # 索引
    __table_args__ = (
        UniqueConstraint("order_id", "idempotency_key", name="uq_payments_order_idempotency_key"),
        Index("ix_payments_processor_external_ref", "processor", "external_ref"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, order_id={self.order_id}, "
            f"processor='{self.processor}', amount={self.amount_minor}, state='{self.state}')>"
        )


class CallbackRecordModel(Base):
    """
    回调记录模型（只追加）

    dedup_key 仅在 outcome=applied 时写入并唯一，
    保证同一 (网关, 外部引用, 语义事件) 最多只有一条 applied 记录
    """
    __tablename__ = "payment_callbacks"

    id = Column(Integer, primary_key=True)
    gateway = Column(String(50), nullable=False, comment="网关")
    source = Column(String(20), nullable=False, default="webhook", comment="来源: webhook/sync/reconciliation")
    payload = Column(Text, nullable=False, comment="原始报文")
    signature_valid = Column(Boolean, nullable=False, default=True, comment="签名校验结果")
    external_ref = Column(String(200), nullable=True, comment="报文引用的网关支付ID")
    event_type = Column(String(50), nullable=True, comment="规范化事件类型")
    event_key = Column(String(255), nullable=True, comment="语义事件键")
    payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="关联的支付ID"
    )
    amount_minor = Column(BigInteger, nullable=True, comment="事件金额")
    currency = Column(String(3), nullable=True, comment="货币代码")
    outcome = Column(String(32), nullable=False, index=True, comment="处理结果: applied/duplicate_ignored/rejected/ignored/deferred")
    reason = Column(Text, nullable=True, comment="结果原因")
    dedup_key = Column(String(512), nullable=True, unique=True, comment="去重键（仅 applied）")
    received_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
        comment="接收时间"
    )

    __table_args__ = (
        Index("ix_payment_callbacks_lookup", "gateway", "external_ref", "event_key"),
    )

    def __repr__(self):
        return (
            f"<CallbackRecordModel(id={self.id}, gateway='{self.gateway}', "
            f"event_key='{self.event_key}', outcome='{self.outcome}')>"
        )


class RefundRequestModel(Base):
    """退款请求：客户端幂等键 → 网关退款结果"""
    __tablename__ = "payment_refunds"

    id = Column(Integer, primary_key=True)
    payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )
    refund_key = Column(String(128), nullable=False, comment="客户端幂等键")
    amount_minor = Column(BigInteger, nullable=False, comment="退款金额")
    currency = Column(String(3), nullable=False, comment="货币代码")
    status = Column(String(20), nullable=False, default="requested", comment="状态: requested/submitted/succeeded/failed/unknown")
    refund_ref = Column(String(200), nullable=True, comment="网关退款ID")
    reason = Column(Text, nullable=True, comment="失败原因")
    version = Column(Integer, nullable=False, default=0, comment="乐观锁版本号")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint("payment_id", "refund_key", name="uq_payment_refunds_payment_key"),
    )

    def __repr__(self):
        return (
            f"<RefundRequestModel(id={self.id}, payment_id={self.payment_id}, "
            f"refund_key='{self.refund_key}', status='{self.status}')>"
        )
