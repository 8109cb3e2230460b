import pytest
from pydantic import ValidationError

from application.dto import OrderDraftDTO
from application.dtos.payments import RedirectPaymentRequest
from domain.common.exceptions import OrderNotCancellableException, OrderNotFoundException
from domain.order.entity import OrderState


@pytest.mark.asyncio
async def test_preview_computes_total_without_persisting(container, order_lines):
    preview = container.orders.preview_order(OrderDraftDTO(currency="usd", lines=order_lines))
    assert preview.id is None
    assert preview.state == "draft"
    assert preview.currency == "USD"
    assert preview.total == 10000
    assert [line.line_total for line in preview.lines] == [6000, 4000]


def test_draft_requires_lines(order_lines):
    with pytest.raises(ValidationError):
        OrderDraftDTO(currency="USD", lines=[])
    with pytest.raises(ValidationError):
        OrderDraftDTO(currency="US Dollar", lines=order_lines)


@pytest.mark.asyncio
async def test_create_and_get(container, order):
    assert order.state == "created"
    assert order.total == 10000
    fetched = await container.orders.get_order(order.id)
    assert fetched.lines == order.lines

    with pytest.raises(OrderNotFoundException):
        await container.orders.get_order(999)


@pytest.mark.asyncio
async def test_payment_methods_follow_remaining_amount(container, order):
    methods = await container.orders.list_payment_methods(order.id)
    assert sorted(m.key for m in methods) == ["gateway_a", "gateway_card"]

    await container.payments.start_redirect_payment(
        order.id, RedirectPaymentRequest(processor="gateway_a", idempotency_key="checkout-1")
    )
    # the full amount is now committed to a pending payment
    assert await container.orders.list_payment_methods(order.id) == []


@pytest.mark.asyncio
async def test_payment_methods_filter_by_currency(container, order_lines):
    eur = await container.orders.create_order(OrderDraftDTO(currency="EUR", lines=order_lines))
    assert await container.orders.list_payment_methods(eur.id) == []


@pytest.mark.asyncio
async def test_cancel(container, order):
    cancelled = await container.orders.cancel_order(order.id)
    assert cancelled.state == "cancelled"
    assert cancelled.cancelled_at is not None
    with pytest.raises(OrderNotCancellableException):
        await container.orders.cancel_order(order.id)


@pytest.mark.asyncio
async def test_paid_order_cannot_be_cancelled(container, order, webhook):
    result = await container.payments.start_redirect_payment(
        order.id, RedirectPaymentRequest(processor="gateway_a", idempotency_key="checkout-1")
    )
    await container.callbacks.dispatch(
        "gateway_a", *webhook("capture_succeeded", result.payment.external_ref, amount=10000)
    )
    with pytest.raises(OrderNotCancellableException):
        await container.orders.cancel_order(order.id)


@pytest.mark.asyncio
async def test_recompute_converges(container, make_uow, order, webhook):
    result = await container.payments.start_redirect_payment(
        order.id, RedirectPaymentRequest(processor="gateway_a", idempotency_key="checkout-1")
    )
    await container.callbacks.dispatch(
        "gateway_a", *webhook("capture_succeeded", result.payment.external_ref, amount=10000)
    )

    # simulate a crash that lost the order update
    async with make_uow() as uow:
        stored = await uow.order_repository.get_by_id(order.id, for_update=True)
        stored.state = OrderState.AWAITING_PAYMENT
        await uow.order_repository.update_state(stored)

    first = await container.orders.recompute_order_state(order.id)
    second = await container.orders.recompute_order_state(order.id)
    assert first.state == second.state == "paid"
