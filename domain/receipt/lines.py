"""
Receipt line derivation and reconciliation.

A full settlement copies the order's line descriptors verbatim. A partial
settlement (partial capture or a refund smaller than the order total)
spreads the event amount over the descriptors in proportion to their line
totals, using largest-remainder allocation so the shares sum exactly.
"""
from __future__ import annotations

from typing import Sequence

from domain.common.exceptions import ReconciliationError
from domain.common.money import Money
from domain.order.entity import OrderLine
from domain.receipt.entity import LineItemV2, ReceiptKind


def _label(line: OrderLine, kind: ReceiptKind) -> str:
    return f"Refund: {line.description}" if kind == ReceiptKind.REFUND else line.description


def derive_line_items(
    lines: Sequence[OrderLine],
    order_total: Money,
    amount: Money,
    kind: ReceiptKind,
) -> list[LineItemV2]:
    if not amount.is_positive():
        raise ReconciliationError("Event amount must be positive", expected=amount.minor, computed=0)
    if amount.currency != order_total.currency:
        raise ReconciliationError(
            "Event currency differs from order currency",
            expected=amount.minor,
            computed=0,
            details={"event_currency": amount.currency, "order_currency": order_total.currency},
        )
    if amount > order_total:
        raise ReconciliationError(
            "Event amount exceeds order total",
            expected=amount.minor,
            computed=order_total.minor,
        )

    if amount == order_total:
        return [
            LineItemV2.of(_label(line, kind), line.unit_price, line.quantity, position=i)
            for i, line in enumerate(lines)
        ]

    weights = [line.line_total.minor for line in lines]
    if sum(weights) <= 0:
        raise ReconciliationError("Order lines carry no amount to allocate", expected=amount.minor, computed=0)
    shares = amount.allocate(weights)

    items: list[LineItemV2] = []
    for line, share in zip(lines, shares):
        if share.is_zero():
            continue
        if share.minor % line.quantity == 0:
            unit = Money(share.minor // line.quantity, share.currency)
            items.append(LineItemV2.of(_label(line, kind), unit, line.quantity, position=len(items)))
        else:
            # share not divisible per unit: collapse into one line carrying the exact share
            label = f"{_label(line, kind)} (x{line.quantity})"
            items.append(LineItemV2.of(label, share, 1, position=len(items)))
    return items


def reconcile(items: Sequence[LineItemV2], amount: Money) -> None:
    """Raise ReconciliationError unless every line is consistent and the lines sum to ``amount``."""
    if not items:
        raise ReconciliationError("Receipt has no line items", expected=amount.minor, computed=0)
    computed = 0
    for item in items:
        if item.line_total.currency != amount.currency or not item.is_consistent():
            raise ReconciliationError(
                "Line item total does not equal unit amount x quantity",
                expected=item.unit_amount.minor * item.quantity,
                computed=item.line_total.minor,
                details={"description": item.description},
            )
        computed += item.line_total.minor
    if computed != amount.minor:
        raise ReconciliationError(
            "Line items do not sum to the event amount",
            expected=amount.minor,
            computed=computed,
        )
