"""
访问日志中间件：每个请求一条 started 与一条结束事件，附带耗时

webhook 原始报文参与验签且可能含网关敏感字段，不记录请求体；
其他请求体仅在配置开启或请求头 X-Log-Body 指定时记录，并对支付凭据脱敏。
"""
import json
import time
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)

QUIET_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json"})
WEBHOOK_PATH_PREFIX = "/api/v1/payments/webhooks/"
REDACTED_KEYS = frozenset({"payment_token", "token", "secret", "api_key", "card_number", "cvc", "client_secret"})
_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: "***" if k.lower() in REDACTED_KEYS else redact(v) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


class LoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        fields: dict[str, Any] = {"method": request.method, "path": path}
        if request.query_params:
            fields["query"] = dict(request.query_params)
        body = await self._body_for_log(request)
        if body is not None:
            fields["body"] = body

        started = time.perf_counter()
        logger.info("request_started", **fields)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed", duration=round(time.perf_counter() - started, 4), **fields)
            raise

        duration = time.perf_counter() - started
        self._log_finished(response, round(duration, 4), fields)
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        return response

    def _wants_body(self, request: Request) -> bool:
        if request.method not in _BODY_METHODS or request.url.path.startswith(WEBHOOK_PATH_PREFIX):
            return False
        override = (request.headers.get("X-Log-Body") or "").lower()
        if override in {"1", "true", "yes"}:
            return True
        if override in {"0", "false", "no"}:
            return False
        return settings.log.request_body and settings.DEBUG

    async def _body_for_log(self, request: Request) -> Any:
        if not self._wants_body(request):
            return None
        raw = await request.body()
        if not raw:
            return None
        text = raw[: settings.log.request_body_max_bytes].decode("utf-8", errors="ignore")
        if "json" not in request.headers.get("content-type", ""):
            return text
        try:
            return redact(json.loads(text))
        except ValueError:
            return text

    @staticmethod
    def _log_finished(response: Response, duration: float, fields: dict) -> None:
        status = response.status_code
        if status >= 500:
            logger.error("request_server_error", status_code=status, duration=duration, **fields)
        elif status >= 400:
            logger.warning("request_client_error", status_code=status, duration=duration, **fields)
        else:
            logger.info("request_completed", status_code=status, duration=duration, **fields)
