"""
收据数据库模型 - SQLAlchemy ORM模型
"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


class ReceiptModel(Base):
    """
    收据模型

    (payment_id, event_key) 唯一：支付事件到收据的稳定引用
    """
    __tablename__ = "receipts"

    id = Column(Integer, primary_key=True)
    payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )
    order_id = Column(Integer, nullable=False, index=True, comment="订单ID（冗余，便于查询）")
    event_key = Column(String(255), nullable=False, comment="触发收据的支付事件键")
    kind = Column(String(20), nullable=False, comment="收据类型: payment/refund")
    total_minor = Column(BigInteger, nullable=False, comment="收据总额")
    currency = Column(String(3), nullable=False, comment="货币代码")
    issued_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="开具时间"
    )

    line_items = relationship(
        "LineItemV2Model",
        back_populates="receipt",
        order_by="LineItemV2Model.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("payment_id", "event_key", name="uq_receipts_payment_event"),
    )

    def __repr__(self):
        return f"<ReceiptModel(id={self.id}, payment_id={self.payment_id}, event_key='{self.event_key}')>"


class LineItemV2Model(Base):
    """收据行项目"""
    __tablename__ = "receipt_line_items"

    id = Column(Integer, primary_key=True)
    receipt_id = Column(
        Integer,
        ForeignKey("receipts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的收据ID"
    )
    position = Column(Integer, nullable=False, default=0, comment="行序号")
    description = Column(String(300), nullable=False, comment="描述")
    unit_amount_minor = Column(BigInteger, nullable=False, comment="单价")
    quantity = Column(Integer, nullable=False, comment="数量")
    line_total_minor = Column(BigInteger, nullable=False, comment="行合计")
    currency = Column(String(3), nullable=False, comment="货币代码")

    receipt = relationship("ReceiptModel", back_populates="line_items")
