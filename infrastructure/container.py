"""
组合根：在进程启动时一次性装配处理器注册表、回调处理器与应用服务

API（lifespan）、Celery 任务与测试共用同一装配逻辑。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from application.processor_registry import ProcessorRegistry
from application.services.callback_service import CallbackDispatcher, PaymentEventApplier
from application.services.order_service import OrderApplicationService
from application.services.payment_service import PaymentApplicationService
from application.services.receipt_service import ReceiptBuilder
from core.settings import PaymentSettings, payment_settings
from infrastructure.database import AsyncSessionLocal
from infrastructure.external.payments import build_processor_registry
from infrastructure.unit_of_work import uow_factory


@dataclass
class ServiceContainer:
    registry: ProcessorRegistry
    receipts: ReceiptBuilder
    applier: PaymentEventApplier
    callbacks: CallbackDispatcher
    orders: OrderApplicationService
    payments: PaymentApplicationService

    async def aclose(self) -> None:
        await self.registry.aclose()


def build_container(
    *,
    registry: Optional[ProcessorRegistry] = None,
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    settings: Optional[PaymentSettings] = None,
) -> ServiceContainer:
    settings = settings or payment_settings
    registry = registry if registry is not None else build_processor_registry(settings)
    make_uow = uow_factory(session_factory)
    retries = settings.callbacks.max_conflict_retries

    receipts = ReceiptBuilder(make_uow)
    applier = PaymentEventApplier(make_uow, receipts, max_conflict_retries=retries)
    return ServiceContainer(
        registry=registry,
        receipts=receipts,
        applier=applier,
        callbacks=CallbackDispatcher(registry, applier),
        orders=OrderApplicationService(make_uow, registry, max_conflict_retries=retries),
        payments=PaymentApplicationService(make_uow, registry, applier, max_conflict_retries=retries),
    )
