"""
Unit of Work：一个实例就是一次数据库事务

支付状态、回调记录与订单状态必须在同一事务内落库；
收据另开事务，失败不影响已确认的回调。
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.order.repository import OrderRepository
from domain.payment.repository import CallbackRepository, PaymentRepository, RefundRequestRepository
from domain.receipt.repository import ReceiptRepository


class AbstractUnitOfWork(ABC):
    order_repository: OrderRepository
    payment_repository: PaymentRepository
    callback_repository: CallbackRepository
    refund_repository: RefundRequestRepository
    receipt_repository: ReceiptRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self.readonly = readonly
        self._done = False

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        # 异常回滚；正常退出且未显式提交时自动提交（只读不提交）
        if exc is not None:
            await self.rollback()
        elif not self.readonly and not self._done:
            await self.commit()

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...
