"""
订单应用服务（application/services）- 草稿预览、创建、取消与状态重算
"""
from typing import Callable, List

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from application.dto import OrderDraftDTO, OrderResponseDTO, PaymentMethodDTO
from application.processor_registry import ProcessorRegistry
from core.logging_config import get_logger
from domain.common.exceptions import ConcurrentUpdateException, OrderNotFoundException
from domain.common.money import Money
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import Order, OrderLine
from domain.order.state import recompute, remaining_collectible


logger = get_logger(__name__)


class OrderApplicationService:
    """订单应用服务 - 处理应用层逻辑"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        registry: ProcessorRegistry,
        *,
        max_conflict_retries: int = 5,
    ):
        self._uow_factory = uow_factory
        self._registry = registry
        self._max_conflict_retries = max(1, max_conflict_retries)

    @staticmethod
    def _build_draft(draft: OrderDraftDTO) -> Order:
        return Order(
            id=None,
            currency=draft.currency,
            buyer_ref=draft.buyer_ref,
            lines=[
                OrderLine(
                    product_ref=line.product_ref,
                    description=line.description,
                    quantity=line.quantity,
                    unit_price=Money(line.unit_price, draft.currency),
                    position=i,
                )
                for i, line in enumerate(draft.lines)
            ],
        )

    def preview_order(self, draft: OrderDraftDTO) -> OrderResponseDTO:
        """草稿预览：只计算，不落库"""
        return OrderResponseDTO.from_entity(self._build_draft(draft))

    async def create_order(self, draft: OrderDraftDTO) -> OrderResponseDTO:
        """创建订单：持久化后状态为 created，此后订单行不可修改"""
        order = self._build_draft(draft)
        order.mark_created()
        async with self._uow_factory() as uow:
            saved = await uow.order_repository.create(order)
        return OrderResponseDTO.from_entity(saved)

    async def get_order(self, order_id: int) -> OrderResponseDTO:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        return OrderResponseDTO.from_entity(order)

    async def cancel_order(self, order_id: int) -> OrderResponseDTO:
        """取消尚无成功扣款的订单；未完成的支付保留给网关结算"""

        async def _cancel() -> Order:
            async with self._uow_factory() as uow:
                order = await uow.order_repository.get_by_id(order_id, for_update=True)
                if order is None:
                    raise OrderNotFoundException(order_id)
                payments = await uow.payment_repository.list_by_order(order_id)
                order.cancel(has_captured_payment=any(p.is_settled() for p in payments))
                await uow.order_repository.update_state(order)
                in_flight = [p.id for p in payments if p.is_in_flight()]
                if in_flight:
                    logger.warning("order_cancelled_with_pending_payments", order_id=order_id, payment_ids=in_flight)
                return order

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_conflict_retries),
            retry=retry_if_exception_type(ConcurrentUpdateException),
            reraise=True,
        ):
            with attempt:
                order = await _cancel()
        logger.info("order_cancelled", order_id=order_id)
        return OrderResponseDTO.from_entity(order)

    async def list_payment_methods(self, order_id: int) -> List[PaymentMethodDTO]:
        """按订单上下文筛选已启用的处理器（币种、金额限制）"""
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get_by_id(order_id)
            if order is None:
                raise OrderNotFoundException(order_id)
            payments = await uow.payment_repository.list_by_order(order_id)

        if not order.is_payable():
            return []
        remaining = remaining_collectible(order, payments)
        if not remaining.is_positive():
            return []
        return [
            PaymentMethodDTO(key=p.key, display_name=p.display_name, flow=p.flow.value)
            for p in self._registry
            if p.supports(order.currency, remaining)
        ]

    async def recompute_order_state(self, order_id: int) -> OrderResponseDTO:
        """从当前支付状态重新推导订单状态；对未变化的支付重复执行结果不变"""

        async def _recompute() -> Order:
            async with self._uow_factory() as uow:
                order = await uow.order_repository.get_by_id(order_id, for_update=True)
                if order is None:
                    raise OrderNotFoundException(order_id)
                payments = await uow.payment_repository.list_by_order(order_id)
                if recompute(order, payments):
                    await uow.order_repository.update_state(order)
                    logger.info("order_state_recomputed", order_id=order_id, state=order.state.value)
                return order

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_conflict_retries),
            retry=retry_if_exception_type(ConcurrentUpdateException),
            reraise=True,
        ):
            with attempt:
                order = await _recompute()
        return OrderResponseDTO.from_entity(order)
