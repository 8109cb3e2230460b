import pytest

from application.dtos.payments import CardPaymentRequest, RefundRequest
from domain.common.exceptions import (
    AmbiguousGatewayOutcomeException,
    DomainValidationException,
    GatewayUnavailableException,
)
from domain.payment.callback import CallbackOutcome


async def _paid(container, order):
    result = await container.payments.pay_with_card(
        order.id, CardPaymentRequest(processor="gateway_card", idempotency_key="card-1", payment_token="pm_card_visa")
    )
    assert result.payment.state == "captured"
    return result.payment


def _refund_calls(gateway) -> int:
    return [op for op, _ in gateway.calls].count("refund")


@pytest.mark.asyncio
async def test_refund_replay_does_not_call_gateway_again(container, card_gateway, order):
    payment = await _paid(container, order)
    req = RefundRequest(amount=4000, idempotency_key="rf-1")

    first = await container.payments.refund_payment(payment.id, req)
    again = await container.payments.refund_payment(payment.id, req)

    assert (first.state, first.refunded_amount) == ("partially_refunded", 4000)
    assert (again.state, again.refunded_amount) == ("partially_refunded", 4000)
    assert _refund_calls(card_gateway) == 1
    assert len(await container.receipts.list_for_order(order.id)) == 2


@pytest.mark.asyncio
async def test_full_refund_replay_returns_current_payment(container, card_gateway, order):
    payment = await _paid(container, order)
    req = RefundRequest(amount=10000, idempotency_key="rf-all")

    await container.payments.refund_payment(payment.id, req)
    again = await container.payments.refund_payment(payment.id, req)

    assert (again.state, again.refunded_amount) == ("refunded", 10000)
    assert _refund_calls(card_gateway) == 1


@pytest.mark.asyncio
async def test_refund_key_reused_with_other_amount_is_rejected(container, card_gateway, order):
    payment = await _paid(container, order)
    await container.payments.refund_payment(payment.id, RefundRequest(amount=4000, idempotency_key="rf-1"))

    with pytest.raises(DomainValidationException):
        await container.payments.refund_payment(payment.id, RefundRequest(amount=5000, idempotency_key="rf-1"))
    assert _refund_calls(card_gateway) == 1


@pytest.mark.asyncio
async def test_submitted_refund_replay_waits_for_webhook(container, card_gateway, webhook, order):
    payment = await _paid(container, order)
    card_gateway.refund_settles = False
    req = RefundRequest(amount=4000, idempotency_key="rf-1")

    first = await container.payments.refund_payment(payment.id, req)
    again = await container.payments.refund_payment(payment.id, req)
    assert (first.state, again.state) == ("captured", "captured")
    assert _refund_calls(card_gateway) == 1

    settled = await container.callbacks.dispatch(
        "gateway_card", *webhook("refund_succeeded", payment.external_ref, amount=4000, refund_ref="rf_rf-1")
    )
    assert settled.outcome == CallbackOutcome.APPLIED
    dto = await container.payments.get_payment(payment.id)
    assert (dto.state, dto.refunded_amount) == ("partially_refunded", 4000)


@pytest.mark.asyncio
async def test_refund_not_accepted_by_gateway_can_be_retried(container, card_gateway, order):
    payment = await _paid(container, order)
    req = RefundRequest(amount=4000, idempotency_key="rf-1")

    card_gateway.fail_next = GatewayUnavailableException("gateway_card")
    with pytest.raises(GatewayUnavailableException):
        await container.payments.refund_payment(payment.id, req)

    dto = await container.payments.refund_payment(payment.id, req)
    assert (dto.state, dto.refunded_amount) == ("partially_refunded", 4000)
    assert _refund_calls(card_gateway) == 2


@pytest.mark.asyncio
async def test_timed_out_refund_is_resubmitted_by_reconciliation(container, card_gateway, webhook, order):
    payment = await _paid(container, order)
    req = RefundRequest(amount=4000, idempotency_key="rf-1")

    card_gateway.fail_next = AmbiguousGatewayOutcomeException("gateway_card", "refund")
    with pytest.raises(AmbiguousGatewayOutcomeException):
        await container.payments.refund_payment(payment.id, req)

    # the client retry must not submit a second refund while the first is unresolved
    pending = await container.payments.refund_payment(payment.id, req)
    assert (pending.state, pending.reconciliation_causes) == ("captured", ["refund_unknown"])
    assert _refund_calls(card_gateway) == 1

    summary = await container.payments.reconcile_flagged()
    assert summary == {"scanned": 1, "resolved": 1, "escalated": 0}
    assert _refund_calls(card_gateway) == 2

    dto = await container.payments.get_payment(payment.id)
    assert (dto.state, dto.refunded_amount, dto.needs_reconciliation) == ("partially_refunded", 4000, False)
    assert (await container.orders.get_order(order.id)).state == "partially_refunded"

    # resubmitted under the same key, so the gateway's notification is the same refund
    late = await container.callbacks.dispatch(
        "gateway_card", *webhook("refund_succeeded", payment.external_ref, amount=4000, refund_ref="rf_rf-1")
    )
    assert late.outcome == CallbackOutcome.DUPLICATE_IGNORED
