"""
订单仓储实现 - 使用SQLAlchemy实现数据访问
"""
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.exceptions import ConcurrentUpdateException
from domain.common.money import Money
from domain.order.entity import Order, OrderLine, OrderState
from domain.order.repository import OrderRepository
from infrastructure.models.order import OrderModel, OrderLineModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        """将数据库模型转换为领域实体"""
        return Order(
            id=model.id,
            currency=model.currency,
            lines=[
                OrderLine(
                    product_ref=line.product_ref,
                    description=line.description,
                    quantity=line.quantity,
                    unit_price=Money(int(line.unit_price_minor), line.currency),
                    position=line.position,
                )
                for line in model.lines
            ],
            state=OrderState(model.state),
            buyer_ref=model.buyer_ref,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
            cancelled_at=model.cancelled_at,
        )

    def _to_model(self, entity: Order) -> OrderModel:
        """将领域实体转换为数据库模型"""
        return OrderModel(
            id=entity.id,
            buyer_ref=entity.buyer_ref,
            currency=entity.currency,
            total_minor=entity.total.minor,
            state=entity.state.value,
            version=entity.version,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            cancelled_at=entity.cancelled_at,
            lines=[
                OrderLineModel(
                    position=i,
                    product_ref=line.product_ref,
                    description=line.description,
                    quantity=line.quantity,
                    unit_price_minor=line.unit_price.minor,
                    currency=line.unit_price.currency,
                )
                for i, line in enumerate(entity.lines)
            ],
        )

    async def create(self, order: Order) -> Order:
        """持久化订单及订单行"""
        db_order = self._to_model(order)
        self.session.add(db_order)
        await self.session.flush()
        await self.session.refresh(db_order, attribute_names=["lines"])
        logger.info(
            "order_created",
            order_id=db_order.id,
            total=db_order.total_minor,
            currency=db_order.currency,
        )
        return self._to_entity(db_order)

    async def get_by_id(self, order_id: int, *, for_update: bool = False) -> Optional[Order]:
        """根据ID获取订单"""
        query = select(OrderModel).where(OrderModel.id == order_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query.execution_options(populate_existing=True))
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def update_state(self, order: Order) -> Order:
        """按版本号更新订单状态，冲突时抛出 ConcurrentUpdateException"""
        result = await self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order.id, OrderModel.version == order.version)
            .values(
                state=order.state.value,
                version=order.version + 1,
                updated_at=order.updated_at,
                cancelled_at=order.cancelled_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrentUpdateException("order", order.id)
        order.version += 1
        logger.info("order_state_updated", order_id=order.id, state=order.state.value)
        return order
