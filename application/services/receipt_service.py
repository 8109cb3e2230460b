"""
收据应用服务（Receipt Builder）- 为每个资金事件生成恰好一张收据

每张收据在独立事务中写入（收据 + 行项目，要么全部成功要么全部不写）。
以 (payment_id, event_key) 作为事件到收据的稳定引用，重复调用为空操作。
"""
from typing import Callable, List, Optional, Tuple

from domain.common.exceptions import (
    BusinessException,
    ConcurrentUpdateException,
    OrderNotFoundException,
    PaymentNotFoundException,
    ReconciliationError,
)
from domain.common.money import Money
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.events import PaymentEventType
from domain.receipt import Receipt, ReceiptKind, derive_line_items, reconcile
from core.logging_config import get_logger


logger = get_logger(__name__)


def receipt_kind_for(event_type: str) -> ReceiptKind:
    if event_type == PaymentEventType.REFUND_SUCCEEDED.value:
        return ReceiptKind.REFUND
    if event_type == PaymentEventType.CAPTURE_SUCCEEDED.value:
        return ReceiptKind.PAYMENT
    raise ValueError(f"event type {event_type} does not produce a receipt")


class ReceiptBuilder:
    """收据构建器"""

    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork]):
        self._uow_factory = uow_factory

    async def issue_for_event(
        self,
        payment_id: int,
        event_key: str,
        event_type: str,
        amount: Money,
    ) -> Tuple[Receipt, bool]:
        """
        为支付事件出具收据，返回 (收据, 是否新建)

        Raises:
            ReconciliationError: 行项目无法与事件金额精确对齐，此时不写入任何记录
        """
        kind = receipt_kind_for(event_type)
        try:
            return await self._issue_once(payment_id, event_key, kind, amount)
        except ConcurrentUpdateException:
            # 并发构建同一事件：另一方已写入，读取其结果
            async with self._uow_factory(readonly=True) as uow:
                existing = await uow.receipt_repository.get_for_event(payment_id, event_key)
            if existing is None:
                raise
            logger.info("receipt_already_issued", payment_id=payment_id, event_key=event_key)
            return existing, False

    async def _issue_once(
        self,
        payment_id: int,
        event_key: str,
        kind: ReceiptKind,
        amount: Money,
    ) -> Tuple[Receipt, bool]:
        async with self._uow_factory() as uow:
            existing = await uow.receipt_repository.get_for_event(payment_id, event_key)
            if existing is not None:
                return existing, False

            payment = await uow.payment_repository.get_by_id(payment_id)
            if payment is None:
                raise PaymentNotFoundException(payment_id)
            order = await uow.order_repository.get_by_id(payment.order_id)
            if order is None:
                raise OrderNotFoundException(payment.order_id)

            try:
                items = derive_line_items(order.lines, order.total, amount, kind)
                reconcile(items, amount)
            except ReconciliationError as exc:
                logger.error(
                    "receipt_reconciliation_failed",
                    payment_id=payment_id,
                    order_id=order.id,
                    event_key=event_key,
                    amount=amount.minor,
                    details=exc.details,
                )
                raise

            receipt = Receipt(
                id=None,
                payment_id=payment_id,
                order_id=order.id,  # type: ignore[arg-type]
                event_key=event_key,
                kind=kind,
                total=amount,
                line_items=items,
            )
            created = await uow.receipt_repository.create(receipt)
            return created, True

    async def backfill_missing(self, limit: int = 100, *, max_pages: int = 10) -> dict:
        """
        为已应用但缺少收据的扣款/退款事件补出收据

        按记录ID游标分页：持续失败（需人工处理）的记录不会挡住后面的记录；
        单条记录的业务异常只计入 failed，不中断整批。
        """
        scanned, issued, failed = 0, 0, 0
        after_id = 0
        for _ in range(max(1, max_pages)):
            async with self._uow_factory(readonly=True) as uow:
                records = await uow.callback_repository.list_applied_financial(limit, after_id=after_id)
            if not records:
                break
            for record in records:
                scanned += 1
                after_id = record.id  # type: ignore[assignment]
                if record.amount is None or record.payment_id is None:
                    logger.error("receipt_backfill_missing_amount", record_id=record.id)
                    failed += 1
                    continue
                try:
                    await self.issue_for_event(record.payment_id, record.event_key, record.event_type, record.amount)
                    issued += 1
                except BusinessException as exc:
                    logger.error(
                        "receipt_backfill_failed",
                        record_id=record.id,
                        payment_id=record.payment_id,
                        code=exc.code,
                        error=exc.message,
                    )
                    failed += 1
            if len(records) < limit:
                break
        if scanned:
            logger.info("receipt_backfill_done", scanned=scanned, issued=issued, failed=failed)
        return {"scanned": scanned, "issued": issued, "failed": failed}

    async def list_for_order(self, order_id: int) -> List[Receipt]:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get_by_id(order_id)
            if order is None:
                raise OrderNotFoundException(order_id)
            return await uow.receipt_repository.list_by_order(order_id)

    async def get_for_event(self, payment_id: int, event_key: str) -> Optional[Receipt]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.receipt_repository.get_for_event(payment_id, event_key)
