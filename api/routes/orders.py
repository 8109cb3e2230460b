"""
订单API路由 - FastAPI表现层
"""
from fastapi import APIRouter, Depends

from application.dto import OrderDraftDTO, OrderResponseDTO, PaymentMethodDTO
from application.dtos.payments import PaymentDTO, ReceiptDTO
from application.services.order_service import OrderApplicationService
from application.services.payment_service import PaymentApplicationService
from application.services.receipt_service import ReceiptBuilder
from api.dependencies import get_order_service, get_payment_service, get_receipt_builder
from core.response import success_response, Response as ApiResponse

router = APIRouter(
    prefix="/orders",
    tags=["订单"]
)


@router.post("/preview", summary="订单草稿预览", response_model=ApiResponse[OrderResponseDTO])
async def preview_order(
    draft: OrderDraftDTO,
    service: OrderApplicationService = Depends(get_order_service),
):
    """
    计算订单行金额与订单总额，不落库、无副作用

    - **currency**: ISO-4217 币种
    - **lines**: 订单行（单价为最小货币单位）
    """
    return success_response(data=service.preview_order(draft))


@router.post("", summary="创建订单", response_model=ApiResponse[OrderResponseDTO], status_code=201)
async def create_order(
    draft: OrderDraftDTO,
    service: OrderApplicationService = Depends(get_order_service),
):
    """持久化订单，状态为 created"""
    order = await service.create_order(draft)
    return success_response(data=order, message="Order created")


@router.get("/{order_id}", summary="获取订单", response_model=ApiResponse[OrderResponseDTO])
async def get_order(order_id: int, service: OrderApplicationService = Depends(get_order_service)):
    return success_response(data=await service.get_order(order_id))


@router.post("/{order_id}/cancel", summary="取消订单", response_model=ApiResponse[OrderResponseDTO])
async def cancel_order(order_id: int, service: OrderApplicationService = Depends(get_order_service)):
    return success_response(data=await service.cancel_order(order_id), message="Order cancelled")


@router.get(
    "/{order_id}/payment-methods",
    summary="可用支付方式",
    response_model=ApiResponse[list[PaymentMethodDTO]],
)
async def list_payment_methods(order_id: int, service: OrderApplicationService = Depends(get_order_service)):
    """按订单币种与剩余可收金额筛选已启用的处理器"""
    return success_response(data=await service.list_payment_methods(order_id))


@router.get("/{order_id}/payments", summary="订单支付列表", response_model=ApiResponse[list[PaymentDTO]])
async def list_order_payments(order_id: int, service: PaymentApplicationService = Depends(get_payment_service)):
    return success_response(data=await service.list_order_payments(order_id))


@router.get("/{order_id}/receipts", summary="订单收据", response_model=ApiResponse[list[ReceiptDTO]])
async def list_order_receipts(order_id: int, builder: ReceiptBuilder = Depends(get_receipt_builder)):
    receipts = await builder.list_for_order(order_id)
    return success_response(data=[ReceiptDTO.from_entity(r) for r in receipts])
