"""orders 与 order_lines 表"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, ForeignKey, Index,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


class OrderModel(Base):
    """
    订单数据库模型

    所有业务规则都在 domain.order.entity.Order 中
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    buyer_ref = Column(String(100), nullable=True, index=True, comment="买家标识")
    currency = Column(String(3), nullable=False, comment="货币代码 ISO-4217")
    total_minor = Column(BigInteger, nullable=False, comment="订单总额（最小货币单位）")
    state = Column(
        String(32),
        nullable=False,
        default="created",
        index=True,
        comment="订单状态: created/awaiting_payment/paid/partially_refunded/refunded/failed/cancelled",
    )
    version = Column(Integer, nullable=False, default=0, comment="乐观锁版本号")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )
    cancelled_at = Column(DateTime(timezone=True), nullable=True, comment="取消时间")

    lines = relationship(
        "OrderLineModel",
        back_populates="order",
        order_by="OrderLineModel.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<OrderModel(id={self.id}, state='{self.state}', total={self.total_minor} {self.currency})>"


class OrderLineModel(Base):
    """订单行（创建时固定，不再修改）"""
    __tablename__ = "order_lines"

    id = Column(Integer, primary_key=True)
    order_id = Column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的订单ID"
    )
    position = Column(Integer, nullable=False, default=0, comment="行序号")
    product_ref = Column(String(100), nullable=False, comment="商品引用")
    description = Column(String(255), nullable=False, comment="描述")
    quantity = Column(Integer, nullable=False, comment="数量")
    unit_price_minor = Column(BigInteger, nullable=False, comment="单价（最小货币单位）")
    currency = Column(String(3), nullable=False, comment="货币代码")

    order = relationship("OrderModel", back_populates="lines")

    __table_args__ = (
        Index("ix_order_lines_order_position", "order_id", "position", unique=True),
    )
