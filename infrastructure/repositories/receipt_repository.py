"""
收据仓储实现
"""
from typing import Optional, List

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.exceptions import ConcurrentUpdateException
from domain.common.money import Money
from domain.receipt.entity import Receipt, LineItemV2, ReceiptKind
from domain.receipt.repository import ReceiptRepository
from infrastructure.models.receipt import ReceiptModel, LineItemV2Model
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyReceiptRepository(ReceiptRepository):
    """收据仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: ReceiptModel) -> Receipt:
        return Receipt(
            id=model.id,
            payment_id=model.payment_id,
            order_id=model.order_id,
            event_key=model.event_key,
            kind=ReceiptKind(model.kind),
            total=Money(int(model.total_minor), model.currency),
            line_items=[
                LineItemV2(
                    id=item.id,
                    position=item.position,
                    description=item.description,
                    unit_amount=Money(int(item.unit_amount_minor), item.currency),
                    quantity=item.quantity,
                    line_total=Money(int(item.line_total_minor), item.currency),
                )
                for item in model.line_items
            ],
            issued_at=model.issued_at,
        )

    async def create(self, receipt: Receipt) -> Receipt:
        db_receipt = ReceiptModel(
            payment_id=receipt.payment_id,
            order_id=receipt.order_id,
            event_key=receipt.event_key,
            kind=receipt.kind.value,
            total_minor=receipt.total.minor,
            currency=receipt.total.currency,
            issued_at=receipt.issued_at,
            line_items=[
                LineItemV2Model(
                    position=item.position,
                    description=item.description,
                    unit_amount_minor=item.unit_amount.minor,
                    quantity=item.quantity,
                    line_total_minor=item.line_total.minor,
                    currency=item.line_total.currency,
                )
                for item in receipt.line_items
            ],
        )
        self.session.add(db_receipt)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise ConcurrentUpdateException("receipt", f"{receipt.payment_id}:{receipt.event_key}") from e
        await self.session.refresh(db_receipt, attribute_names=["line_items"])
        logger.info(
            "receipt_created",
            receipt_id=db_receipt.id,
            payment_id=db_receipt.payment_id,
            event_key=db_receipt.event_key,
            total=db_receipt.total_minor,
        )
        return self._to_entity(db_receipt)

    async def get_for_event(self, payment_id: int, event_key: str) -> Optional[Receipt]:
        result = await self.session.execute(
            select(ReceiptModel).where(
                ReceiptModel.payment_id == payment_id,
                ReceiptModel.event_key == event_key,
            )
        )
        db_receipt = result.scalar_one_or_none()
        return self._to_entity(db_receipt) if db_receipt else None

    async def list_by_payment(self, payment_id: int) -> List[Receipt]:
        result = await self.session.execute(
            select(ReceiptModel).where(ReceiptModel.payment_id == payment_id).order_by(ReceiptModel.id)
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def list_by_order(self, order_id: int) -> List[Receipt]:
        result = await self.session.execute(
            select(ReceiptModel).where(ReceiptModel.order_id == order_id).order_by(ReceiptModel.id)
        )
        return [self._to_entity(r) for r in result.scalars().all()]
