"""
请求追踪中间件：为每个请求确定 request_id 与来源 IP，并绑定到 structlog 上下文

网关 webhook 的来源 IP 也从这里取，用于白名单校验。
"""
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging_config import bind_context, clear_context


REQUEST_ID_HEADER = "X-Request-ID"


def get_remote_ip(request: Request) -> str:
    """反向代理场景下取第一跳 X-Forwarded-For，其次 X-Real-IP，最后是 socket 对端地址"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or (request.client.host if request.client else "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        request.state.client_ip = get_remote_ip(request)

        # 上一个请求遗留的上下文（如 order_id / payment_id）不能串到本请求
        clear_context()
        bind_context(request_id=request_id, client_ip=request.state.client_ip)

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
