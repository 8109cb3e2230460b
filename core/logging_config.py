"""
structlog 配置

标准库 logging（uvicorn、celery、sqlalchemy）与 structlog 共用同一条处理链，
开发环境输出彩色控制台，其他环境输出一行一个 JSON 事件。
"""
import json
import logging
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

from core.config import settings


# 第三方库只保留 warning 以上，网关 SDK 的请求日志会带出卡信息以外的大量噪音
_QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "stripe", "kombu")


def _json_dumps(obj: Any, **kwargs: Any) -> str:
    # structlog 会传入 default= 等参数
    return json.dumps(obj, ensure_ascii=False, **kwargs)


def _pre_chain() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def configure_logging() -> None:
    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if settings.log_as_json:
        renderer: Any = structlog.processors.JSONRenderer(serializer=_json_dumps)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    handler = logging.StreamHandler()
    handler.setFormatter(
        ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(settings.log_level.upper())
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**values: Any) -> None:
    """绑定 request_id / task_id / payment_id 等，当前协程后续日志自动携带"""
    structlog.contextvars.bind_contextvars(**values)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


configure_logging()
