"""
支付领域服务 - PaymentBuilder：创建支付并绑定处理器
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Container, Optional

from domain.common.exceptions import (
    AmountExceededException,
    InvalidProcessorException,
    OrderNotFoundException,
    OrderNotPayableException,
)
from domain.common.money import Money
from domain.order.repository import OrderRepository
from domain.order.state import recompute, remaining_collectible
from .entity import Payment, PaymentState
from .repository import PaymentRepository


class PaymentBuilder:
    """
    为订单创建支付

    业务规则：
    1. 处理器标识必须已注册
    2. 订单必须处于 created / awaiting_payment
    3. 同一订单同一幂等键只创建一笔支付，重复请求返回已有支付
    4. 金额不能超过订单剩余可收金额（未指定时取剩余全部）
    5. 创建后立即重算订单状态（created → awaiting_payment）
    """

    def __init__(
        self,
        order_repository: OrderRepository,
        payment_repository: PaymentRepository,
        registered_processors: Container[str],
    ):
        self.order_repository = order_repository
        self.payment_repository = payment_repository
        self.registered_processors = registered_processors

    async def build(
        self,
        order_id: int,
        processor: str,
        idempotency_key: str,
        amount_minor: Optional[int] = None,
    ) -> tuple[Payment, bool]:
        """返回 (支付, 是否新建)"""
        if processor not in self.registered_processors:
            raise InvalidProcessorException(processor)

        order = await self.order_repository.get_by_id(order_id, for_update=True)
        if order is None:
            raise OrderNotFoundException(order_id)

        existing = await self.payment_repository.get_by_idempotency_key(order_id, idempotency_key)
        if existing is not None:
            return existing, False

        if not order.is_payable():
            raise OrderNotPayableException(order_id, order.state.value)

        payments = await self.payment_repository.list_by_order(order_id)
        remaining = remaining_collectible(order, payments)
        amount = remaining if amount_minor is None else Money(amount_minor, order.currency)
        if not amount.is_positive() or amount > remaining:
            raise AmountExceededException(amount.minor, remaining.minor, order.currency)

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=None,
            order_id=order_id,
            processor=processor,
            amount=amount,
            idempotency_key=idempotency_key,
            state=PaymentState.PENDING,
            created_at=now,
            updated_at=now,
        )
        # a concurrent insert with the same key raises ConcurrentUpdateException;
        # the caller retries in a fresh transaction and gets the winner above
        created = await self.payment_repository.create(payment)

        if recompute(order, [*payments, created]):
            await self.order_repository.update_state(order)
        return created, True
