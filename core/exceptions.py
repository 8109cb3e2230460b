"""
全局异常处理：业务异常按业务码映射 HTTP 状态，统一输出响应信封

网关只看状态码：2xx 表示已确认，其余状态码网关会重投。
"""
import traceback
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status as http_status

from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode

from .response import error_response


logger = get_logger(__name__)


HTTP_STATUS_BY_CODE: dict[int, int] = {
    BusinessCode.PARAM_ERROR: 400,
    BusinessCode.PARAM_VALIDATION_ERROR: 422,
    BusinessCode.BUSINESS_ERROR: 400,
    BusinessCode.NOT_FOUND: 404,
    BusinessCode.ORDER_NOT_FOUND: 404,
    BusinessCode.PAYMENT_NOT_FOUND: 404,
    BusinessCode.ORDER_NOT_PAYABLE: 409,
    BusinessCode.ORDER_NOT_CANCELLABLE: 409,
    BusinessCode.CONFLICT: 409,
    BusinessCode.SYSTEM_ERROR: 500,
    BusinessCode.DATABASE_ERROR: 500,
    BusinessCode.SERVICE_UNAVAILABLE: 503,
    PaymentCode.INVALID_PROCESSOR: 400,
    PaymentCode.AMOUNT_EXCEEDED: 422,
    PaymentCode.INVALID_TRANSITION: 409,
    PaymentCode.REFUND_EXCEEDED: 422,
    PaymentCode.REJECTED_CALLBACK: 400,
    PaymentCode.UNKNOWN_GATEWAY: 404,
    PaymentCode.GATEWAY_UNAVAILABLE: 503,
    PaymentCode.AMBIGUOUS_OUTCOME: 502,
    PaymentCode.GATEWAY_DECLINED: 402,
    PaymentCode.RECONCILIATION_ERROR: 500,
}

_BUSINESS_CODE_BY_HTTP = {
    404: BusinessCode.NOT_FOUND,
    500: BusinessCode.SYSTEM_ERROR,
    503: BusinessCode.SERVICE_UNAVAILABLE,
}


def business_code_to_http_status(code: int) -> int:
    return HTTP_STATUS_BY_CODE.get(code, http_status.HTTP_400_BAD_REQUEST)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or uuid.uuid4().hex


def _envelope(status_code: int, body, headers=None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(BusinessException)
    async def handle_business(request: Request, exc: BusinessException):
        status_code = business_code_to_http_status(exc.code)
        if status_code >= 500:
            logger.error("business_exception", code=exc.code, error_type=exc.error_type, message=exc.message)
        body = error_response(
            code=exc.code,
            message=exc.message,
            error_type=exc.error_type,
            details=exc.details,
            field=exc.field,
            request_id=_request_id(request),
        )
        return _envelope(status_code, body)

    @app.exception_handler(RequestValidationError)
    async def handle_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        body = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first.get('msg', 'unknown')}",
            error_type="ValidationError",
            # 第一段 loc 是 body/query/path
            field=".".join(str(part) for part in first.get("loc", ())[1:]) or None,
            details={"errors": errors},
            request_id=_request_id(request),
        )
        return _envelope(http_status.HTTP_422_UNPROCESSABLE_ENTITY, body)

    @app.exception_handler(HTTPException)
    async def handle_http(request: Request, exc: HTTPException):
        body = error_response(
            code=_BUSINESS_CODE_BY_HTTP.get(exc.status_code, BusinessCode.BUSINESS_ERROR),
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
        )
        return _envelope(exc.status_code, body, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.error("unhandled_exception", request_id=request_id, error=str(exc), exc_info=True)
        details = {"exception": str(exc), "traceback": traceback.format_exc()} if app.debug else None
        body = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )
        return _envelope(http_status.HTTP_500_INTERNAL_SERVER_ERROR, body)
