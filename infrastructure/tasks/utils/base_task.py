"""Celery 任务基类与 async 执行入口"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from celery import Task
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.pool import NullPool

from core.config import settings
from core.logging_config import get_logger, bind_context, clear_context
from infrastructure.container import ServiceContainer, build_container
from infrastructure.database import build_engine

logger = get_logger(__name__)

T = TypeVar("T")


class BaseTask(Task):
    """任务日志自动携带 task_id / task_name"""

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        clear_context()
        bind_context(task_id=getattr(self.request, "id", None), task_name=self.name)
        return super().__call__(*args, **kwargs)

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            args=args,
            kwargs=kwargs,
            exc=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info("celery_task_success", task_id=task_id, task_name=self.name, result=retval)
        super().on_success(retval, task_id, args, kwargs)


def run_with_container(fn: Callable[[ServiceContainer], Awaitable[T]]) -> T:
    """Run ``fn`` in a fresh event loop with its own engine and services.

    Each task invocation uses asyncio.run, so pooled connections must not
    outlive the loop that opened them.
    """

    async def _run() -> T:
        engine = build_engine(settings.database.url, poolclass=NullPool)
        container = build_container(session_factory=async_sessionmaker(bind=engine, expire_on_commit=False))
        try:
            return await fn(container)
        finally:
            await container.aclose()
            await engine.dispose()

    return asyncio.run(_run())
