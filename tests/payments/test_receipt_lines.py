import pytest

from domain.common.exceptions import ReconciliationError
from domain.common.money import Money
from domain.order.entity import OrderLine
from domain.receipt import LineItemV2, ReceiptKind, derive_line_items, reconcile


LINES = [
    OrderLine("sku-1", "Widget", 2, Money(3000, "USD")),
    OrderLine("sku-2", "Gadget", 1, Money(4000, "USD"), position=1),
]
TOTAL = Money(10000, "USD")


def _summary(items):
    return [(i.description, i.unit_amount.minor, i.quantity, i.line_total.minor) for i in items]


def test_full_capture_copies_lines_verbatim():
    items = derive_line_items(LINES, TOTAL, TOTAL, ReceiptKind.PAYMENT)
    assert _summary(items) == [("Widget", 3000, 2, 6000), ("Gadget", 4000, 1, 4000)]
    reconcile(items, TOTAL)


def test_partial_refund_is_proportional():
    amount = Money(4000, "USD")
    items = derive_line_items(LINES, TOTAL, amount, ReceiptKind.REFUND)
    assert _summary(items) == [("Refund: Widget", 1200, 2, 2400), ("Refund: Gadget", 1600, 1, 1600)]
    reconcile(items, amount)


def test_indivisible_share_collapses_to_single_line():
    lines = [
        OrderLine("sku-1", "Widget", 3, Money(1000, "USD")),
        OrderLine("sku-2", "Gadget", 1, Money(1000, "USD"), position=1),
    ]
    amount = Money(1001, "USD")
    items = derive_line_items(lines, Money(4000, "USD"), amount, ReceiptKind.REFUND)
    assert _summary(items) == [("Refund: Widget (x3)", 751, 1, 751), ("Refund: Gadget", 250, 1, 250)]
    reconcile(items, amount)


def test_amount_above_order_total_is_rejected():
    with pytest.raises(ReconciliationError) as exc:
        derive_line_items(LINES, TOTAL, Money(10001, "USD"), ReceiptKind.PAYMENT)
    assert exc.value.details["expected"] == 10001


def test_currency_mismatch_is_rejected():
    with pytest.raises(ReconciliationError):
        derive_line_items(LINES, TOTAL, Money(100, "EUR"), ReceiptKind.PAYMENT)


def test_reconcile_detects_sum_mismatch():
    items = [LineItemV2.of("Widget", Money(3000, "USD"), 2)]
    with pytest.raises(ReconciliationError) as exc:
        reconcile(items, TOTAL)
    assert exc.value.details == {"expected": 10000, "computed": 6000}


def test_reconcile_detects_inconsistent_line():
    broken = LineItemV2(description="Widget", unit_amount=Money(3000, "USD"), quantity=2, line_total=Money(6001, "USD"))
    with pytest.raises(ReconciliationError):
        reconcile([broken], Money(6001, "USD"))


def test_reconcile_requires_lines():
    with pytest.raises(ReconciliationError):
        reconcile([], TOTAL)
