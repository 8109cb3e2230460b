"""周期任务：扫描结果未知的支付重新查询网关，补开缺失的收据"""
from __future__ import annotations

from core.settings import payment_settings

_reconciliation = payment_settings.reconciliation

CELERY_BEAT_SCHEDULE = {
    "payments-reconcile-ambiguous": {
        "task": "payments.reconcile_ambiguous",
        "schedule": _reconciliation.reverify_interval_seconds,
        "kwargs": {"limit": _reconciliation.batch_size},
    },
    "payments-backfill-receipts": {
        "task": "payments.backfill_receipts",
        "schedule": _reconciliation.backfill_interval_seconds,
        "kwargs": {"limit": _reconciliation.batch_size},
    },
}
