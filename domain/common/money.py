"""
金额值对象 - 以最小货币单位（整数）保存的定点金额
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Sequence

from domain.common.exceptions import DomainValidationException


# ISO-4217 minor unit exponents that differ from the default of 2
_EXPONENT_OVERRIDES = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "CLP": 0,
    "ISK": 0,
    "BHD": 3,
    "KWD": 3,
    "JOD": 3,
    "OMR": 3,
    "TND": 3,
}

ROUNDING = ROUND_HALF_UP


def currency_exponent(currency: str) -> int:
    return _EXPONENT_OVERRIDES.get(currency.upper(), 2)


def _check_currency(currency: str) -> str:
    code = (currency or "").upper()
    if len(code) != 3 or not code.isalpha():
        raise DomainValidationException(f"无效的货币代码: {currency}", field="currency")
    return code


@dataclass(frozen=True)
class Money:
    """
    定点金额

    业务规则：
    1. 金额以最小货币单位的整数保存，避免浮点误差
    2. 不同币种之间不能做加减或比较
    3. 乘以非整数系数时统一按 ROUND_HALF_UP 舍入到最小单位
    """

    minor: int
    currency: str

    def __post_init__(self) -> None:
        if isinstance(self.minor, bool) or not isinstance(self.minor, int):
            raise DomainValidationException(f"金额必须是整数最小单位: {self.minor!r}", field="amount")
        object.__setattr__(self, "currency", _check_currency(self.currency))

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(0, currency)

    @classmethod
    def from_decimal(cls, amount: Decimal | str, currency: str) -> "Money":
        exponent = currency_exponent(currency)
        scaled = (Decimal(str(amount)) * (Decimal(10) ** exponent)).quantize(Decimal(1), rounding=ROUNDING)
        return cls(int(scaled), currency)

    def to_decimal(self) -> Decimal:
        exponent = currency_exponent(self.currency)
        return (Decimal(self.minor) / (Decimal(10) ** exponent)).quantize(Decimal(1).scaleb(-exponent))

    def _same_currency(self, other: "Money") -> None:
        if self.currency != other.currency:
            raise DomainValidationException(
                f"币种不一致: {self.currency} != {other.currency}",
                field="currency",
            )

    def __add__(self, other: "Money") -> "Money":
        self._same_currency(other)
        return Money(self.minor + other.minor, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._same_currency(other)
        return Money(self.minor - other.minor, self.currency)

    def __mul__(self, factor: int | Decimal) -> "Money":
        if isinstance(factor, int):
            return Money(self.minor * factor, self.currency)
        scaled = (Decimal(self.minor) * Decimal(factor)).quantize(Decimal(1), rounding=ROUNDING)
        return Money(int(scaled), self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.minor < other.minor

    def __le__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.minor <= other.minor

    def __gt__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.minor > other.minor

    def __ge__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.minor >= other.minor

    def is_zero(self) -> bool:
        return self.minor == 0

    def is_positive(self) -> bool:
        return self.minor > 0

    def allocate(self, weights: Sequence[int]) -> list["Money"]:
        """按权重拆分金额，余数按最大余数法分配，保证拆分之和严格等于原金额。"""
        total_weight = sum(weights)
        if total_weight <= 0 or any(w < 0 for w in weights):
            raise DomainValidationException("拆分权重必须为非负且总和大于0", field="weights")
        shares = [self.minor * w // total_weight for w in weights]
        remainders = [self.minor * w % total_weight for w in weights]
        leftover = self.minor - sum(shares)
        # largest remainder first, ties broken by position
        order = sorted(range(len(weights)), key=lambda i: (-remainders[i], i))
        for i in order[:leftover]:
            shares[i] += 1
        return [Money(s, self.currency) for s in shares]

    def __str__(self) -> str:
        return f"{self.to_decimal()} {self.currency}"


def sum_money(items: Iterable[Money], currency: str) -> Money:
    total = Money.zero(currency)
    for item in items:
        total = total + item
    return total
