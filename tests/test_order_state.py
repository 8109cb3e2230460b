from datetime import datetime, timezone

import pytest

from domain.common.exceptions import OrderNotCancellableException
from domain.common.money import Money
from domain.order.entity import Order, OrderLine, OrderState
from domain.order.state import derive_state, recompute, remaining_collectible
from domain.payment.entity import Payment, PaymentState


def _order(state: OrderState = OrderState.AWAITING_PAYMENT) -> Order:
    return Order(
        id=1,
        currency="USD",
        state=state,
        lines=[
            OrderLine("sku-1", "Widget", 2, Money(3000, "USD")),
            OrderLine("sku-2", "Gadget", 1, Money(4000, "USD"), position=1),
        ],
    )


def _payment(amount: int, state: PaymentState, refunded: int = 0, pid: int = 1) -> Payment:
    return Payment(
        id=pid,
        order_id=1,
        processor="gateway_a",
        amount=Money(amount, "USD"),
        idempotency_key=f"k{pid}",
        state=state,
        refunded_amount=Money(refunded, "USD"),
        created_at=datetime.now(timezone.utc),
    )


def test_total_is_sum_of_lines():
    assert _order().total == Money(10000, "USD")


def test_order_without_payments_keeps_state():
    order = _order(OrderState.CREATED)
    assert derive_state(order, []) == OrderState.CREATED


@pytest.mark.parametrize(
    "payments, expected",
    [
        ([_payment(10000, PaymentState.PENDING)], OrderState.AWAITING_PAYMENT),
        ([_payment(10000, PaymentState.CAPTURED)], OrderState.PAID),
        ([_payment(4000, PaymentState.CAPTURED), _payment(6000, PaymentState.AUTHORIZED, pid=2)], OrderState.AWAITING_PAYMENT),
        ([_payment(10000, PaymentState.PARTIALLY_REFUNDED, refunded=4000)], OrderState.PARTIALLY_REFUNDED),
        ([_payment(10000, PaymentState.REFUNDED, refunded=10000)], OrderState.REFUNDED),
        ([_payment(10000, PaymentState.FAILED)], OrderState.FAILED),
    ],
)
def test_derive_state(payments, expected):
    assert derive_state(_order(), payments) == expected


def test_failed_retry_with_second_payment_still_pays():
    payments = [_payment(10000, PaymentState.FAILED), _payment(10000, PaymentState.CAPTURED, pid=2)]
    assert derive_state(_order(), payments) == OrderState.PAID


def test_recompute_never_moves_backwards():
    order = _order(OrderState.PAID)
    # a stale view of payments must not regress a paid order
    assert recompute(order, [_payment(10000, PaymentState.PENDING)]) is False
    assert recompute(order, [_payment(10000, PaymentState.FAILED)]) is False
    assert order.state == OrderState.PAID


def test_recompute_is_idempotent():
    order = _order()
    payments = [_payment(10000, PaymentState.CAPTURED)]
    assert recompute(order, payments) is True
    assert order.state == OrderState.PAID
    assert recompute(order, payments) is False
    assert order.state == OrderState.PAID


def test_cancelled_order_is_not_revived():
    order = _order(OrderState.CANCELLED)
    assert recompute(order, [_payment(10000, PaymentState.CAPTURED)]) is False
    assert order.state == OrderState.CANCELLED


def test_remaining_collectible_ignores_failed_payments():
    order = _order()
    payments = [_payment(4000, PaymentState.FAILED), _payment(3000, PaymentState.PENDING, pid=2)]
    assert remaining_collectible(order, payments) == Money(7000, "USD")


def test_cancel_rejected_after_capture():
    order = _order()
    with pytest.raises(OrderNotCancellableException):
        order.cancel(has_captured_payment=True)
    order.cancel(has_captured_payment=False)
    assert order.state == OrderState.CANCELLED
    assert order.cancelled_at is not None
