"""
Celery 应用：对账与收据补开等后台任务

任务只接收 JSON 可序列化的 id/limit 参数；执行体在每次调用时自建数据库连接，
所以 acks_late + reject_on_worker_lost 下的重投是安全的（各任务本身幂等）。
"""
from __future__ import annotations

import os

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE


logger = get_logger(__name__)

TASK_PACKAGES = ("infrastructure.tasks.tasks",)

# 订单状态重算紧跟回调，优先级高于周期性对账扫描
PAYMENT_TASK_ROUTES = {
    "payments.recompute_order": {"queue": "high"},
    "payments.reconcile_ambiguous": {"queue": "low"},
    "payments.backfill_receipts": {"queue": "low"},
}

celery_app = Celery("payment_orchestrator")

celery_app.conf.update(
    broker_url=settings.redis.url or os.getenv("CELERY_BROKER_URL"),
    result_backend=settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_queues=(Queue("high"), Queue("default"), Queue("low")),
    task_default_queue="default",
    task_routes=PAYMENT_TASK_ROUTES,
    beat_schedule=CELERY_BEAT_SCHEDULE,
    imports=TASK_PACKAGES,
    # 本地与测试环境不依赖 broker
    task_always_eager=settings.ENVIRONMENT.lower() in {"development", "dev", "test", "testing"},
)

celery_app.autodiscover_tasks(packages=TASK_PACKAGES)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker=sender.conf.broker_url,
        eager=sender.conf.task_always_eager,
        periodic=sorted(sender.conf.beat_schedule),
    )
