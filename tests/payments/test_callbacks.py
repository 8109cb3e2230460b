"""End-to-end callback scenarios against gateway_a on a SQLite database."""
import pytest
from sqlalchemy import func, select

from application.dtos.payments import RedirectPaymentRequest
from domain.common.exceptions import (
    ConcurrentUpdateException,
    RejectedCallbackException,
    UnknownGatewayException,
)
from domain.common.money import Money
from domain.payment.callback import CallbackOutcome, CallbackSource
from domain.payment.events import PaymentEvent, PaymentEventType
from infrastructure.models import CallbackRecordModel


async def _start(container, order_id: int, key: str = "checkout-1", amount=None):
    result = await container.payments.start_redirect_payment(
        order_id, RedirectPaymentRequest(processor="gateway_a", idempotency_key=key, amount=amount)
    )
    return result.payment


async def _captured(container, webhook, order):
    payment = await _start(container, order.id)
    headers, body = webhook("capture_succeeded", payment.external_ref, amount=10000)
    result = await container.callbacks.dispatch("gateway_a", headers, body)
    assert result.outcome == CallbackOutcome.APPLIED
    return payment


async def _records(session_factory, **filters):
    async with session_factory() as session:
        query = select(CallbackRecordModel).filter_by(**filters).order_by(CallbackRecordModel.id)
        return list((await session.execute(query)).scalars().all())


@pytest.mark.asyncio
async def test_redirect_payment_moves_order_to_awaiting(container, order):
    result = await container.payments.start_redirect_payment(
        order.id, RedirectPaymentRequest(processor="gateway_a", idempotency_key="checkout-1")
    )
    assert result.created is True
    assert result.order_state == "awaiting_payment"
    assert result.payment.state == "pending"
    assert result.redirect_url.endswith(result.payment.external_ref)

    # replaying the request returns the same payment and checkout
    again = await container.payments.start_redirect_payment(
        order.id, RedirectPaymentRequest(processor="gateway_a", idempotency_key="checkout-1")
    )
    assert again.created is False
    assert again.payment.id == result.payment.id
    assert again.payment.external_ref == result.payment.external_ref


@pytest.mark.asyncio
async def test_duplicate_capture_applies_once(container, session_factory, webhook, order):
    payment = await _start(container, order.id)
    headers, body = webhook("capture_succeeded", payment.external_ref, amount=10000)

    first = await container.callbacks.dispatch("gateway_a", headers, body)
    second = await container.callbacks.dispatch("gateway_a", headers, body)

    assert first.outcome == CallbackOutcome.APPLIED
    assert first.order_state == "paid"
    assert first.receipt_id is not None
    assert second.outcome == CallbackOutcome.DUPLICATE_IGNORED
    assert second.receipt_id == first.receipt_id

    applied = await _records(session_factory, outcome="applied")
    assert len(applied) == 1
    assert len(await _records(session_factory, outcome="duplicate_ignored")) == 1

    receipts = await container.receipts.list_for_order(order.id)
    assert len(receipts) == 1
    assert receipts[0].total == Money(10000, "USD")
    assert receipts[0].line_items_total == Money(10000, "USD")
    assert (await container.orders.get_order(order.id)).state == "paid"


@pytest.mark.asyncio
async def test_partial_then_full_refund(container, webhook, order):
    payment = await _captured(container, webhook, order)

    headers, body = webhook("refund_succeeded", payment.external_ref, amount=4000, refund_ref="re_1")
    first = await container.callbacks.dispatch("gateway_a", headers, body)
    assert first.outcome == CallbackOutcome.APPLIED
    assert first.order_state == "partially_refunded"
    assert (await container.payments.get_payment(payment.id)).state == "partially_refunded"

    headers, body = webhook("refund_succeeded", payment.external_ref, amount=6000, refund_ref="re_2")
    second = await container.callbacks.dispatch("gateway_a", headers, body)
    assert second.outcome == CallbackOutcome.APPLIED
    assert second.order_state == "refunded"

    receipts = await container.receipts.list_for_order(order.id)
    by_kind = sorted((r.kind.value, r.total.minor) for r in receipts)
    assert by_kind == [("payment", 10000), ("refund", 4000), ("refund", 6000)]
    for receipt in receipts:
        assert receipt.line_items_total == receipt.total

    dto = await container.payments.get_payment(payment.id)
    assert (dto.state, dto.refunded_amount) == ("refunded", 10000)


@pytest.mark.asyncio
async def test_refund_beyond_captured_is_rejected_and_flagged(container, webhook, order):
    payment = await _captured(container, webhook, order)
    headers, body = webhook("refund_succeeded", payment.external_ref, amount=12000, refund_ref="re_9")
    result = await container.callbacks.dispatch("gateway_a", headers, body)
    assert result.outcome == CallbackOutcome.REJECTED
    dto = await container.payments.get_payment(payment.id)
    assert dto.state == "captured"
    assert dto.needs_reconciliation is True


@pytest.mark.asyncio
async def test_capture_failed_fails_order(container, webhook, order):
    payment = await _start(container, order.id)
    headers, body = webhook("capture_failed", payment.external_ref, reason="insufficient funds")
    result = await container.callbacks.dispatch("gateway_a", headers, body)

    assert result.outcome == CallbackOutcome.APPLIED
    assert result.order_state == "failed"
    dto = await container.payments.get_payment(payment.id)
    assert (dto.state, dto.failure_reason) == ("failed", "insufficient funds")
    assert await container.receipts.list_for_order(order.id) == []


@pytest.mark.asyncio
async def test_capture_after_failure_is_ignored_and_flagged(container, webhook, order):
    payment = await _start(container, order.id)
    await container.callbacks.dispatch("gateway_a", *webhook("capture_failed", payment.external_ref))
    result = await container.callbacks.dispatch(
        "gateway_a", *webhook("capture_succeeded", payment.external_ref, amount=10000)
    )
    assert result.outcome == CallbackOutcome.IGNORED
    dto = await container.payments.get_payment(payment.id)
    assert dto.state == "failed"
    assert dto.needs_reconciliation is True
    assert dto.reconciliation_causes == ["conflict"]


@pytest.mark.asyncio
async def test_orphan_callback_is_recorded_and_acknowledged(container, session_factory, webhook, order):
    payment = await _start(container, order.id)
    result = await container.callbacks.dispatch("gateway_a", *webhook("capture_succeeded", "ga_unknown", amount=10000))

    assert result.outcome == CallbackOutcome.REJECTED
    assert result.reason == "orphan"
    assert result.payment_id is None
    assert (await container.payments.get_payment(payment.id)).state == "pending"
    assert (await container.orders.get_order(order.id)).state == "awaiting_payment"

    records = await _records(session_factory, external_ref="ga_unknown")
    assert [(r.outcome, r.dedup_key) for r in records] == [("rejected", None)]


@pytest.mark.asyncio
async def test_bad_signature_is_recorded_and_raised(container, session_factory, webhook, order):
    payment = await _start(container, order.id)
    headers, body = webhook("capture_succeeded", payment.external_ref, amount=10000, secret="wrong")
    with pytest.raises(RejectedCallbackException):
        await container.callbacks.dispatch("gateway_a", headers, body)

    records = await _records(session_factory, signature_valid=False)
    assert len(records) == 1
    assert records[0].outcome == "rejected"
    assert (await container.payments.get_payment(payment.id)).state == "pending"


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(container, webhook):
    result = await container.callbacks.dispatch("gateway_a", *webhook("checkout.viewed", "ga_1"))
    assert result.outcome == CallbackOutcome.IGNORED
    assert result.reason == "unhandled event type"


@pytest.mark.asyncio
async def test_unknown_gateway(container, webhook):
    with pytest.raises(UnknownGatewayException):
        await container.callbacks.dispatch("gateway_z", *webhook("capture_succeeded", "x"))


@pytest.mark.asyncio
async def test_sync_capture_and_webhook_share_dedup_key(container, webhook, order):
    payment = await _start(container, order.id)
    event = PaymentEvent(
        gateway="gateway_a",
        event_type=PaymentEventType.CAPTURE_SUCCEEDED,
        external_ref=payment.external_ref,
        amount=Money(10000, "USD"),
    )
    sync = await container.applier.apply(event, source=CallbackSource.SYNC, payload="{}")
    late = await container.callbacks.dispatch("gateway_a", *webhook("capture_succeeded", payment.external_ref, amount=10000))

    assert sync.outcome == CallbackOutcome.APPLIED
    assert late.outcome == CallbackOutcome.DUPLICATE_IGNORED
    assert len(await container.receipts.list_for_order(order.id)) == 1


@pytest.mark.asyncio
async def test_conflicting_update_is_retried(container, webhook, order, monkeypatch):
    payment = await _start(container, order.id)
    applier = container.applier
    original = applier._apply_once
    attempts = []

    async def flaky(*args, **kwargs):
        attempts.append(1)
        if len(attempts) == 1:
            raise ConcurrentUpdateException("payment", payment.id)
        return await original(*args, **kwargs)

    monkeypatch.setattr(applier, "_apply_once", flaky)
    result = await container.callbacks.dispatch(
        "gateway_a", *webhook("capture_succeeded", payment.external_ref, amount=10000)
    )
    assert len(attempts) == 2
    assert result.outcome == CallbackOutcome.APPLIED


@pytest.mark.asyncio
async def test_stale_version_update_conflicts(container, make_uow, webhook, order):
    payment = await _start(container, order.id)
    async with make_uow(readonly=True) as uow:
        stale = await uow.payment_repository.get_by_id(payment.id)

    await container.callbacks.dispatch("gateway_a", *webhook("capture_succeeded", payment.external_ref, amount=10000))

    stale.flag_for_reconciliation("stale writer")
    with pytest.raises(ConcurrentUpdateException):
        async with make_uow() as uow:
            await uow.payment_repository.update(stale)
    assert (await container.payments.get_payment(payment.id)).needs_reconciliation is False


@pytest.mark.asyncio
async def test_late_capture_on_cancelled_order_keeps_order_cancelled(container, webhook, order):
    payment = await _start(container, order.id)
    await container.orders.cancel_order(order.id)

    result = await container.callbacks.dispatch(
        "gateway_a", *webhook("capture_succeeded", payment.external_ref, amount=10000)
    )
    assert result.outcome == CallbackOutcome.APPLIED
    assert result.order_state == "cancelled"
    assert (await container.payments.get_payment(payment.id)).state == "captured"


@pytest.mark.asyncio
async def test_refund_before_capture_is_replayed_after_capture(container, session_factory, webhook, order):
    payment = await _start(container, order.id)

    early = await container.callbacks.dispatch(
        "gateway_a", *webhook("refund_succeeded", payment.external_ref, amount=4000, refund_ref="rf1")
    )
    assert early.outcome == CallbackOutcome.DEFERRED
    dto = await container.payments.get_payment(payment.id)
    assert (dto.state, dto.reconciliation_causes) == ("pending", ["deferred_event"])

    capture = await container.callbacks.dispatch(
        "gateway_a", *webhook("capture_succeeded", payment.external_ref, amount=10000)
    )
    assert capture.outcome == CallbackOutcome.APPLIED

    dto = await container.payments.get_payment(payment.id)
    assert (dto.state, dto.refunded_amount, dto.needs_reconciliation) == ("partially_refunded", 4000, False)
    assert (await container.orders.get_order(order.id)).state == "partially_refunded"
    receipts = await container.receipts.list_for_order(order.id)
    assert sorted((r.kind.value, r.total.minor) for r in receipts) == [("payment", 10000), ("refund", 4000)]

    records = await _records(session_factory, event_key="refund_succeeded:rf1")
    assert [r.outcome for r in records] == ["deferred", "applied"]
    assert await container.payments.reconcile_flagged() == {"scanned": 0, "resolved": 0, "escalated": 0}


@pytest.mark.asyncio
async def test_redelivered_early_refund_is_applied_once(container, session_factory, webhook, order):
    payment = await _start(container, order.id)
    headers, body = webhook("refund_succeeded", payment.external_ref, amount=4000, refund_ref="rf1")
    first = await container.callbacks.dispatch("gateway_a", headers, body)
    second = await container.callbacks.dispatch("gateway_a", headers, body)
    assert (first.outcome, second.outcome) == (CallbackOutcome.DEFERRED, CallbackOutcome.DEFERRED)

    await container.callbacks.dispatch("gateway_a", *webhook("capture_succeeded", payment.external_ref, amount=10000))

    dto = await container.payments.get_payment(payment.id)
    assert (dto.state, dto.refunded_amount, dto.needs_reconciliation) == ("partially_refunded", 4000, False)
    records = await _records(session_factory, event_key="refund_succeeded:rf1")
    assert [r.outcome for r in records] == ["deferred", "deferred", "applied"]
    assert len(await container.receipts.list_for_order(order.id)) == 2


@pytest.mark.asyncio
async def test_early_refund_on_failed_payment_is_escalated(container, session_factory, webhook, order):
    payment = await _start(container, order.id)
    await container.callbacks.dispatch(
        "gateway_a", *webhook("refund_succeeded", payment.external_ref, amount=4000, refund_ref="rf1")
    )
    await container.callbacks.dispatch("gateway_a", *webhook("capture_failed", payment.external_ref))

    dto = await container.payments.get_payment(payment.id)
    assert (dto.state, dto.refunded_amount) == ("failed", 0)
    assert dto.reconciliation_causes == ["conflict"]
    assert (await container.orders.get_order(order.id)).state == "failed"
    records = await _records(session_factory, event_key="refund_succeeded:rf1")
    assert [r.outcome for r in records] == ["deferred", "ignored"]
    assert await container.receipts.list_for_order(order.id) == []
