"""
Order state derivation.

Order state is never set directly by callers: it is derived from the order
total and the current states/amounts of its payments, then applied only if
it moves the order forward. Both functions are pure, so recomputing on
unchanged payments always converges to the same state.
"""
from __future__ import annotations

from typing import Iterable

from domain.common.money import Money, sum_money
from domain.order.entity import Order, OrderState
from domain.payment.entity import Payment


def captured_total(order: Order, payments: Iterable[Payment]) -> Money:
    return sum_money((p.amount for p in payments if p.is_settled()), order.currency)


def refunded_total(order: Order, payments: Iterable[Payment]) -> Money:
    return sum_money((p.refunded_amount for p in payments if p.is_settled()), order.currency)


def committed_total(order: Order, payments: Iterable[Payment]) -> Money:
    """Amount already collected or being collected (every non-failed payment)."""
    return sum_money((p.amount for p in payments if not p.is_failed()), order.currency)


def remaining_collectible(order: Order, payments: Iterable[Payment]) -> Money:
    remaining = order.total - committed_total(order, payments)
    return remaining if remaining.is_positive() else Money.zero(order.currency)


def derive_state(order: Order, payments: Iterable[Payment]) -> OrderState:
    payments = list(payments)
    if order.state in (OrderState.DRAFT, OrderState.CANCELLED) or not payments:
        return order.state

    captured = captured_total(order, payments)
    refunded = refunded_total(order, payments)

    if captured >= order.total:
        if refunded.is_positive() and refunded >= captured:
            return OrderState.REFUNDED
        if refunded.is_positive():
            return OrderState.PARTIALLY_REFUNDED
        return OrderState.PAID

    if any(p.is_in_flight() for p in payments) or captured.is_positive():
        return OrderState.AWAITING_PAYMENT
    return OrderState.FAILED


def recompute(order: Order, payments: Iterable[Payment]) -> bool:
    """Apply the derived state when it is a forward move. Returns True when the order changed."""
    return order.advance_to(derive_state(order, payments))
