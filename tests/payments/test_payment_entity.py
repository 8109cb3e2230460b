import pytest

from domain.common.exceptions import (
    DomainValidationException,
    InvalidPaymentTransitionException,
    RefundExceededException,
)
from domain.common.money import Money
from domain.payment.entity import Payment, PaymentState, ReconciliationCause, format_causes, parse_causes
from domain.payment.events import PaymentEvent, PaymentEventType, apply_event


def _payment() -> Payment:
    return Payment(id=7, order_id=1, processor="gateway_a", amount=Money(10000, "USD"),
                   idempotency_key="k1", external_ref="ga_7")


def _event(event_type: PaymentEventType, **kwargs) -> PaymentEvent:
    return PaymentEvent(gateway="gateway_a", event_type=event_type, external_ref="ga_7", **kwargs)


def test_capture_is_idempotent():
    payment = _payment()
    assert apply_event(payment, _event(PaymentEventType.CAPTURE_SUCCEEDED)) is True
    assert payment.state == PaymentState.CAPTURED
    assert payment.captured_at is not None
    assert apply_event(payment, _event(PaymentEventType.CAPTURE_SUCCEEDED)) is False


def test_late_authorization_after_capture_is_a_no_op():
    payment = _payment()
    apply_event(payment, _event(PaymentEventType.CAPTURE_SUCCEEDED))
    assert apply_event(payment, _event(PaymentEventType.AUTHORIZATION_SUCCEEDED)) is False
    assert payment.state == PaymentState.CAPTURED


def test_capture_of_failed_payment_is_invalid():
    payment = _payment()
    apply_event(payment, _event(PaymentEventType.CAPTURE_FAILED, reason="declined"))
    assert payment.state == PaymentState.FAILED
    assert payment.failure_reason == "declined"
    with pytest.raises(InvalidPaymentTransitionException):
        apply_event(payment, _event(PaymentEventType.CAPTURE_SUCCEEDED))


def test_capture_amount_must_match():
    payment = _payment()
    with pytest.raises(DomainValidationException):
        apply_event(payment, _event(PaymentEventType.CAPTURE_SUCCEEDED, amount=Money(9000, "USD")))


def test_refunds_accumulate():
    payment = _payment()
    apply_event(payment, _event(PaymentEventType.CAPTURE_SUCCEEDED))
    apply_event(payment, _event(PaymentEventType.REFUND_SUCCEEDED, amount=Money(4000, "USD"), refund_ref="r1"))
    assert payment.state == PaymentState.PARTIALLY_REFUNDED
    assert payment.refundable_amount() == Money(6000, "USD")
    apply_event(payment, _event(PaymentEventType.REFUND_SUCCEEDED, amount=Money(6000, "USD"), refund_ref="r2"))
    assert payment.state == PaymentState.REFUNDED
    with pytest.raises(RefundExceededException):
        payment.apply_refund(Money(1, "USD"))


def test_refund_before_capture_is_invalid():
    with pytest.raises(InvalidPaymentTransitionException):
        _payment().apply_refund(Money(100, "USD"))


def test_refund_event_requires_reference_and_amount():
    with pytest.raises(DomainValidationException):
        _event(PaymentEventType.REFUND_SUCCEEDED, amount=Money(100, "USD"))
    with pytest.raises(DomainValidationException):
        _event(PaymentEventType.REFUND_SUCCEEDED, refund_ref="r1")


def test_dedup_keys_distinguish_refunds():
    capture = _event(PaymentEventType.CAPTURE_SUCCEEDED)
    r1 = _event(PaymentEventType.REFUND_SUCCEEDED, amount=Money(100, "USD"), refund_ref="r1")
    r2 = _event(PaymentEventType.REFUND_SUCCEEDED, amount=Money(100, "USD"), refund_ref="r2")
    assert capture.dedup_key == "gateway_a|ga_7|capture_succeeded"
    assert len({capture.dedup_key, r1.dedup_key, r2.dedup_key}) == 3
    assert r1.is_financial() and not _event(PaymentEventType.AUTHORIZATION_SUCCEEDED).is_financial()


def test_transitions_keep_reconciliation_flags():
    payment = _payment()
    payment.flag_for_reconciliation("refund arrived first", ReconciliationCause.DEFERRED_EVENT)
    apply_event(payment, _event(PaymentEventType.CAPTURE_SUCCEEDED))
    assert payment.state == PaymentState.CAPTURED
    assert payment.needs_reconciliation is True
    assert payment.reconciliation_causes == {ReconciliationCause.DEFERRED_EVENT}


def test_clearing_one_cause_keeps_the_others():
    payment = _payment()
    payment.flag_for_reconciliation("capture outcome unknown")
    payment.flag_for_reconciliation("refund exceeds captured", ReconciliationCause.CONFLICT)

    assert payment.clear_reconciliation(ReconciliationCause.OUTCOME_UNKNOWN) is True
    assert payment.clear_reconciliation(ReconciliationCause.OUTCOME_UNKNOWN) is False
    assert payment.needs_reconciliation is True
    assert payment.reconciliation_causes == {ReconciliationCause.CONFLICT}


def test_reconciliation_causes_storage_format():
    causes = {ReconciliationCause.CONFLICT, ReconciliationCause.REFUND_UNKNOWN}
    assert format_causes(causes) == "conflict,refund_unknown"
    assert parse_causes("conflict,refund_unknown") == causes
    assert parse_causes("") == set()
