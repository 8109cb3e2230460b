"""Payment reconciliation Celery tasks.

- re-verify flagged payments (timeouts, parked out-of-order events);
- backfill receipts for applied capture/refund events that lack one;
- recompute an order's state from its payments.

The coroutine bodies take a ServiceContainer so they can run outside Celery.
"""
from __future__ import annotations

from celery import shared_task

from ..utils.base_task import BaseTask, run_with_container
from core.logging_config import get_logger
from core.settings import payment_settings
from infrastructure.container import ServiceContainer

logger = get_logger(__name__)


async def reconcile_ambiguous(container: ServiceContainer, limit: int) -> dict:
    return await container.payments.reconcile_flagged(limit, max_pages=payment_settings.reconciliation.max_pages)


async def backfill_receipts(container: ServiceContainer, limit: int) -> dict:
    return await container.receipts.backfill_missing(limit, max_pages=payment_settings.reconciliation.max_pages)


async def recompute_order(container: ServiceContainer, order_id: int) -> dict:
    order = await container.orders.recompute_order_state(order_id)
    return {"order_id": order_id, "state": order.state}


@shared_task(
    name="payments.reconcile_ambiguous",
    bind=True,
    base=BaseTask,
    autoretry_for=(ConnectionError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def task_reconcile_ambiguous(self, limit: int | None = None) -> dict:
    limit = limit or payment_settings.reconciliation.batch_size
    return run_with_container(lambda c: reconcile_ambiguous(c, limit))


@shared_task(
    name="payments.backfill_receipts",
    bind=True,
    base=BaseTask,
    autoretry_for=(ConnectionError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def task_backfill_receipts(self, limit: int | None = None) -> dict:
    limit = limit or payment_settings.reconciliation.batch_size
    return run_with_container(lambda c: backfill_receipts(c, limit))


@shared_task(name="payments.recompute_order", bind=True, base=BaseTask, max_retries=3, default_retry_delay=5)
def task_recompute_order(self, order_id: int) -> dict:
    return run_with_container(lambda c: recompute_order(c, order_id))
