"""
Payments API routes.

Card and redirect initiation, refunds, payment reads and per-gateway
webhook ingestion. Keep this thin: no SDK details here.
"""
from __future__ import annotations

import ipaddress

from fastapi import APIRouter, Depends, HTTPException, Request, status

from application.dtos.payments import (
    CallbackAckDTO,
    CardPaymentRequest,
    PaymentDTO,
    PaymentInitiationDTO,
    RedirectPaymentRequest,
    RefundRequest,
)
from application.services.callback_service import CallbackDispatcher
from application.services.payment_service import PaymentApplicationService
from api.dependencies import get_callback_dispatcher, get_payment_service
from api.middleware import get_remote_ip
from core.logging_config import get_logger
from core.response import success_response, Response as ApiResponse
from core.settings import payment_settings


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _ip_permitted(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False


@router.post("/webhooks/{gateway}", summary="Gateway webhook", response_model=ApiResponse[CallbackAckDTO])
async def payments_webhook(
    gateway: str,
    request: Request,
    dispatcher: CallbackDispatcher = Depends(get_callback_dispatcher),
):
    """
    Acknowledge receipt of a gateway notification.

    200 for applied / duplicate / orphan / ignored notifications so the
    gateway stops redelivering; 400 only when signature verification fails;
    404 for an unknown gateway.
    """
    allowlist = payment_settings.webhook.ip_allowlist or []
    if allowlist:
        remote_ip = get_remote_ip(request)
        if not _ip_permitted(remote_ip, allowlist):
            logger.warning("webhook_ip_not_allowed", gateway=gateway, remote_ip=remote_ip)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Source IP not allowed")

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    result = await dispatcher.dispatch(gateway, headers, raw_body)

    return success_response(
        data=CallbackAckDTO(
            gateway=gateway,
            outcome=result.outcome.value,
            payment_id=result.payment_id,
            reason=result.reason,
        ),
        message="Webhook received",
    )


@router.post(
    "/orders/{order_id}/card",
    summary="Pay by card (authorize + capture)",
    response_model=ApiResponse[PaymentInitiationDTO],
)
async def pay_with_card(
    order_id: int,
    payload: CardPaymentRequest,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    result = await service.pay_with_card(order_id, payload)
    return success_response(data=result, message="Card payment processed")


@router.post(
    "/orders/{order_id}/redirect",
    summary="Start redirect payment",
    response_model=ApiResponse[PaymentInitiationDTO],
)
async def start_redirect_payment(
    order_id: int,
    payload: RedirectPaymentRequest,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    result = await service.start_redirect_payment(order_id, payload)
    return success_response(data=result, message="Redirect payment started")


@router.get("/{payment_id}", summary="Get payment", response_model=ApiResponse[PaymentDTO])
async def get_payment(payment_id: int, service: PaymentApplicationService = Depends(get_payment_service)):
    return success_response(data=await service.get_payment(payment_id))


@router.post("/{payment_id}/refunds", summary="Refund payment", response_model=ApiResponse[PaymentDTO])
async def refund_payment(
    payment_id: int,
    payload: RefundRequest,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    return success_response(data=await service.refund_payment(payment_id, payload), message="Refund requested")


@router.post("/{payment_id}/reverify", summary="Re-verify ambiguous payment", response_model=ApiResponse[PaymentDTO])
async def reverify_payment(payment_id: int, service: PaymentApplicationService = Depends(get_payment_service)):
    return success_response(data=await service.reverify_payment(payment_id))
