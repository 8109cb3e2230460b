"""AbstractUnitOfWork 的 SQLAlchemy 实现"""
from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.order_repository import SQLAlchemyOrderRepository
from infrastructure.repositories.payment_repository import (
    SQLAlchemyCallbackRepository,
    SQLAlchemyPaymentRepository,
    SQLAlchemyRefundRequestRepository,
)
from infrastructure.repositories.receipt_repository import SQLAlchemyReceiptRepository

SessionFactory = Callable[[], AsyncSession]


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    def __init__(self, session_factory: SessionFactory = AsyncSessionLocal, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        session = self._session_factory()
        self.session = session
        self.order_repository = SQLAlchemyOrderRepository(session)
        self.payment_repository = SQLAlchemyPaymentRepository(session)
        self.callback_repository = SQLAlchemyCallbackRepository(session)
        self.refund_repository = SQLAlchemyRefundRequestRepository(session)
        self.receipt_repository = SQLAlchemyReceiptRepository(session)
        if not self.readonly:
            await session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            if self.session is not None:
                await self.session.close()
                self.session = None

    async def commit(self) -> None:
        if not self.readonly and self.session is not None and self.session.in_transaction():
            await self.session.commit()
        self._done = True

    async def rollback(self) -> None:
        if self.session is not None and self.session.in_transaction():
            await self.session.rollback()
        self._done = True


def uow_factory(session_factory: SessionFactory = AsyncSessionLocal):
    """每次调用返回一个新的 UoW（新事务）"""

    def make(*, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory, readonly=readonly)

    return make
