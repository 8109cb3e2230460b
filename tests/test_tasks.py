import pytest

from application.dtos.payments import RedirectPaymentRequest
from domain.common.exceptions import AmbiguousGatewayOutcomeException
from domain.common.money import Money
from domain.payment.events import PaymentEvent, PaymentEventType
from infrastructure.tasks.config.beat import CELERY_BEAT_SCHEDULE
from infrastructure.tasks.tasks import payments as payment_tasks


@pytest.mark.asyncio
async def test_reconcile_ambiguous(container, gateway, order):
    gateway.fail_next = AmbiguousGatewayOutcomeException("gateway_a", "initiate")
    with pytest.raises(AmbiguousGatewayOutcomeException):
        await container.payments.start_redirect_payment(
            order.id, RedirectPaymentRequest(processor="gateway_a", idempotency_key="checkout-1")
        )
    payment = (await container.payments.list_order_payments(order.id))[0]
    gateway.lookup_event = PaymentEvent(
        gateway="gateway_a",
        event_type=PaymentEventType.AUTHORIZATION_FAILED,
        external_ref=f"ga_{payment.id}",
        reason="expired",
    )

    summary = await payment_tasks.reconcile_ambiguous(container, 10)
    assert summary == {"scanned": 1, "resolved": 1, "escalated": 0}
    assert (await container.orders.get_order(order.id)).state == "failed"


@pytest.mark.asyncio
async def test_backfill_receipts_with_nothing_missing(container):
    assert await payment_tasks.backfill_receipts(container, 10) == {"scanned": 0, "issued": 0, "failed": 0}


@pytest.mark.asyncio
async def test_recompute_order(container, order):
    assert await payment_tasks.recompute_order(container, order.id) == {"order_id": order.id, "state": "created"}


def test_celery_task_runs_with_fresh_container(monkeypatch):
    captured = []

    def fake_run(fn):
        captured.append(fn)
        return {"scanned": 0, "resolved": 0}

    monkeypatch.setattr(payment_tasks, "run_with_container", fake_run)
    assert payment_tasks.task_reconcile_ambiguous(limit=5) == {"scanned": 0, "resolved": 0}
    assert len(captured) == 1


def test_beat_schedule_points_at_registered_tasks():
    tasks = {entry["task"] for entry in CELERY_BEAT_SCHEDULE.values()}
    assert tasks == {payment_tasks.task_reconcile_ambiguous.name, payment_tasks.task_backfill_receipts.name}
