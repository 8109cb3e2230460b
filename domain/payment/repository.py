"""
支付仓储接口 - 定义支付、回调记录与退款请求数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from typing import Optional, List

from .entity import Payment
from .callback import CallbackRecord
from .refund import RefundRequestRecord


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录；同一订单的幂等键冲突时抛出 ConcurrentUpdateException"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        pass

    @abstractmethod
    async def get_by_idempotency_key(self, order_id: int, idempotency_key: str) -> Optional[Payment]:
        """根据订单与幂等键获取支付"""
        pass

    @abstractmethod
    async def get_by_external_ref(self, processor: str, external_ref: str) -> Optional[Payment]:
        """根据处理器与网关引用获取支付"""
        pass

    @abstractmethod
    async def list_by_order(self, order_id: int) -> List[Payment]:
        """获取订单的全部支付（每次重新读取，不使用缓存）"""
        pass

    @abstractmethod
    async def list_needing_reconciliation(self, limit: int = 100, after_id: int = 0) -> List[Payment]:
        """
        按ID顺序获取可自动复核的支付（id > after_id）；
        只剩 conflict 原因的支付需要人工处理，不在其中
        """
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        """
        乐观锁更新：仅当版本号未变时写入并递增版本；
        版本冲突时抛出 ConcurrentUpdateException
        """
        pass


class CallbackRepository(ABC):
    """回调记录仓储 - 只追加，不修改"""

    @abstractmethod
    async def add(self, record: CallbackRecord) -> CallbackRecord:
        """
        追加回调记录；applied 记录的去重键唯一，
        冲突时抛出 ConcurrentUpdateException
        """
        pass

    @abstractmethod
    async def get_applied(self, dedup_key: str) -> Optional[CallbackRecord]:
        """获取某个语义事件已应用的记录"""
        pass

    @abstractmethod
    async def list_applied_financial(self, limit: int = 100, after_id: int = 0) -> List[CallbackRecord]:
        """按ID顺序获取已应用、但尚未生成收据的扣款/退款事件（id > after_id）"""
        pass

    @abstractmethod
    async def list_unresolved_deferred(self, payment_id: int) -> List[CallbackRecord]:
        """获取支付暂存的事件中，之后没有同一语义事件的非 deferred 记录的那些"""
        pass

    @abstractmethod
    async def list_by_payment(self, payment_id: int) -> List[CallbackRecord]:
        """获取支付的全部回调记录"""
        pass


class RefundRequestRepository(ABC):
    """退款请求仓储 - (payment_id, refund_key) 唯一"""

    @abstractmethod
    async def add(self, refund: RefundRequestRecord) -> RefundRequestRecord:
        """新增退款请求；幂等键冲突时抛出 ConcurrentUpdateException"""
        pass

    @abstractmethod
    async def get(self, payment_id: int, refund_key: str) -> Optional[RefundRequestRecord]:
        pass

    @abstractmethod
    async def get_by_ref(self, payment_id: int, refund_ref: str) -> Optional[RefundRequestRecord]:
        pass

    @abstractmethod
    async def list_unknown(self, payment_id: int) -> List[RefundRequestRecord]:
        """获取调用超时、结果未知的退款请求"""
        pass

    @abstractmethod
    async def update(self, refund: RefundRequestRecord) -> RefundRequestRecord:
        """乐观锁更新；版本冲突时抛出 ConcurrentUpdateException"""
        pass
