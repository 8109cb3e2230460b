"""
订单仓储接口 - 定义订单数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from typing import Optional

from .entity import Order


class OrderRepository(ABC):
    """订单仓储抽象接口"""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """持久化一个 created 状态的订单（含订单行）"""
        pass

    @abstractmethod
    async def get_by_id(self, order_id: int, *, for_update: bool = False) -> Optional[Order]:
        """根据ID获取订单；for_update 时对订单行加排他锁"""
        pass

    @abstractmethod
    async def update_state(self, order: Order) -> Order:
        """更新订单状态（订单行不可变）"""
        pass
