from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException
from domain.common.money import Money, currency_exponent, sum_money


def test_minor_units_must_be_integers():
    with pytest.raises(DomainValidationException):
        Money(10.5, "USD")  # type: ignore[arg-type]
    with pytest.raises(DomainValidationException):
        Money(True, "USD")  # type: ignore[arg-type]


def test_currency_is_normalized_and_validated():
    assert Money(100, "usd").currency == "USD"
    with pytest.raises(DomainValidationException):
        Money(100, "US")


def test_arithmetic_rejects_mixed_currencies():
    with pytest.raises(DomainValidationException):
        Money(100, "USD") + Money(100, "EUR")
    with pytest.raises(DomainValidationException):
        Money(100, "USD") < Money(100, "EUR")


def test_decimal_conversion_uses_currency_exponent():
    assert currency_exponent("JPY") == 0
    assert currency_exponent("KWD") == 3
    assert Money.from_decimal("12.34", "USD").minor == 1234
    assert Money.from_decimal("1000", "JPY").minor == 1000
    assert Money.from_decimal("1.2345", "KWD").minor == 1235
    assert Money(1234, "USD").to_decimal() == Decimal("12.34")


def test_multiplication_rounds_half_up():
    assert Money(5, "USD") * Decimal("0.5") == Money(3, "USD")
    assert Money(3000, "USD") * 2 == Money(6000, "USD")


def test_allocate_sums_exactly():
    shares = Money(100, "USD").allocate([1, 1, 1])
    assert [s.minor for s in shares] == [34, 33, 33]
    assert sum_money(shares, "USD") == Money(100, "USD")

    shares = Money(1001, "USD").allocate([3000, 1000])
    assert [s.minor for s in shares] == [751, 250]


def test_allocate_rejects_bad_weights():
    with pytest.raises(DomainValidationException):
        Money(100, "USD").allocate([0, 0])
    with pytest.raises(DomainValidationException):
        Money(100, "USD").allocate([2, -1])
