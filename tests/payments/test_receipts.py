import pytest

from application.dtos.payments import RedirectPaymentRequest
from domain.common.exceptions import OrderNotFoundException, ReconciliationError
from domain.common.money import Money
from domain.payment.callback import CallbackOutcome


async def _pending_payment(container, order):
    result = await container.payments.start_redirect_payment(
        order.id, RedirectPaymentRequest(processor="gateway_a", idempotency_key="checkout-1")
    )
    return result.payment


@pytest.mark.asyncio
async def test_issue_for_event_is_idempotent(container, webhook, order):
    payment = await _pending_payment(container, order)
    await container.callbacks.dispatch("gateway_a", *webhook("capture_succeeded", payment.external_ref, amount=10000))

    receipt, created = await container.receipts.issue_for_event(
        payment.id, "capture_succeeded", "capture_succeeded", Money(10000, "USD")
    )
    assert created is False
    assert receipt.kind.value == "payment"
    assert [i.description for i in receipt.line_items] == ["Widget", "Gadget"]


@pytest.mark.asyncio
async def test_reconciliation_error_blocks_receipt_but_keeps_capture(container, webhook, order, monkeypatch):
    payment = await _pending_payment(container, order)
    builder = container.receipts

    async def broken(*args, **kwargs):
        raise ReconciliationError("Line items do not sum to the event amount", expected=10000, computed=9999)

    monkeypatch.setattr(builder, "issue_for_event", broken)
    result = await container.callbacks.dispatch(
        "gateway_a", *webhook("capture_succeeded", payment.external_ref, amount=10000)
    )
    assert result.outcome == CallbackOutcome.APPLIED
    assert result.receipt_id is None
    assert result.reconciliation_error == "Line items do not sum to the event amount"
    assert (await container.payments.get_payment(payment.id)).state == "captured"
    assert await builder.list_for_order(order.id) == []

    monkeypatch.undo()
    summary = await builder.backfill_missing()
    assert summary == {"scanned": 1, "issued": 1, "failed": 0}
    receipts = await builder.list_for_order(order.id)
    assert [r.total.minor for r in receipts] == [10000]

    # nothing left to backfill
    assert (await builder.backfill_missing())["scanned"] == 0


@pytest.mark.asyncio
async def test_refund_larger_than_order_cannot_produce_receipt(container, order):
    payment = await _pending_payment(container, order)
    with pytest.raises(ReconciliationError):
        await container.receipts.issue_for_event(payment.id, "refund_succeeded:x", "refund_succeeded", Money(10001, "USD"))


@pytest.mark.asyncio
async def test_non_financial_event_has_no_receipt(container):
    with pytest.raises(ValueError):
        await container.receipts.issue_for_event(1, "authorization_succeeded", "authorization_succeeded", Money(1, "USD"))


@pytest.mark.asyncio
async def test_backfill_skips_past_records_that_keep_failing(container, webhook, order, monkeypatch):
    payment = await _pending_payment(container, order)
    builder = container.receipts

    async def broken(*args, **kwargs):
        raise ReconciliationError("Line items do not sum to the event amount", expected=0, computed=1)

    monkeypatch.setattr(builder, "issue_for_event", broken)
    ref = payment.external_ref
    await container.callbacks.dispatch("gateway_a", *webhook("capture_succeeded", ref, amount=10000))
    await container.callbacks.dispatch("gateway_a", *webhook("refund_succeeded", ref, amount=4000, refund_ref="re_1"))
    await container.callbacks.dispatch("gateway_a", *webhook("refund_succeeded", ref, amount=6000, refund_ref="re_2"))
    monkeypatch.undo()
    assert await builder.list_for_order(order.id) == []

    original = builder._issue_once

    async def partly_broken(payment_id, event_key, kind, amount):
        if event_key == "capture_succeeded":
            raise ReconciliationError("Line items do not sum to the event amount", expected=10000, computed=9999)
        if event_key == "refund_succeeded:re_1":
            raise OrderNotFoundException(order.id)
        return await original(payment_id, event_key, kind, amount)

    monkeypatch.setattr(builder, "_issue_once", partly_broken)
    # page size 1: the failing records must not hide the last one
    summary = await builder.backfill_missing(limit=1)
    assert summary == {"scanned": 3, "issued": 1, "failed": 2}
    receipts = await builder.list_for_order(order.id)
    assert [(r.event_key, r.total.minor) for r in receipts] == [("refund_succeeded:re_2", 6000)]

    monkeypatch.undo()
    assert await builder.backfill_missing(limit=1) == {"scanned": 2, "issued": 2, "failed": 0}
