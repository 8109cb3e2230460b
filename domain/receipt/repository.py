"""
收据仓储接口
"""
from abc import ABC, abstractmethod
from typing import Optional, List

from .entity import Receipt


class ReceiptRepository(ABC):

    @abstractmethod
    async def create(self, receipt: Receipt) -> Receipt:
        """写入收据及其行项目；同一支付事件已有收据时抛出 ConcurrentUpdateException"""
        pass

    @abstractmethod
    async def get_for_event(self, payment_id: int, event_key: str) -> Optional[Receipt]:
        pass

    @abstractmethod
    async def list_by_payment(self, payment_id: int) -> List[Receipt]:
        pass

    @abstractmethod
    async def list_by_order(self, order_id: int) -> List[Receipt]:
        pass
