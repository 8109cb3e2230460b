"""ORM 表映射；导入本包即注册全部表到 Base.metadata"""
from .base import Base
from .order import OrderModel, OrderLineModel
from .payment import PaymentModel, CallbackRecordModel, RefundRequestModel
from .receipt import ReceiptModel, LineItemV2Model

__all__ = [
    "Base",
    "OrderModel",
    "OrderLineModel",
    "PaymentModel",
    "CallbackRecordModel",
    "RefundRequestModel",
    "ReceiptModel",
    "LineItemV2Model",
]
