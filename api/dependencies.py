"""
API依赖项 - 从应用状态获取在 lifespan 中装配好的服务
"""
from fastapi import Request

from application.services.callback_service import CallbackDispatcher
from application.services.order_service import OrderApplicationService
from application.services.payment_service import PaymentApplicationService
from application.services.receipt_service import ReceiptBuilder
from infrastructure.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_order_service(request: Request) -> OrderApplicationService:
    return get_container(request).orders


def get_payment_service(request: Request) -> PaymentApplicationService:
    return get_container(request).payments


def get_receipt_builder(request: Request) -> ReceiptBuilder:
    return get_container(request).receipts


def get_callback_dispatcher(request: Request) -> CallbackDispatcher:
    return get_container(request).callbacks
