"""
Money - exact decimal amounts bound to a currency.

Amounts are never binary floats. Every value is held at the currency's minor
unit; computed values (fees, proration) are rounded half-even.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Union

from care_billing.core.config import SUPPORTED_CURRENCIES, settings
from care_billing.core.exceptions import ErrorCode, ValidationException

AmountLike = Union[Decimal, int, str]


def minor_unit(currency: str) -> Decimal:
    """Smallest representable step, e.g. Decimal('0.01') for NGN"""
    try:
        digits = SUPPORTED_CURRENCIES[currency]
    except KeyError:
        raise ValidationException(
            f"Unsupported currency: {currency}",
            field="currency",
            error_code=ErrorCode.CURRENCY_MISMATCH,
        ) from None
    return Decimal(1).scaleb(-digits)


def to_decimal(value: AmountLike, field: str = "amount") -> Decimal:
    """Parse an amount. Floats and bools are rejected outright."""
    if isinstance(value, (float, bool)):
        raise ValidationException(
            f"{field} must be a Decimal, int or str, got {type(value).__name__}",
            field=field,
            error_code=ErrorCode.INVALID_AMOUNT,
        )
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValidationException(
            f"{field} is not a valid amount: {value!r}",
            field=field,
            error_code=ErrorCode.INVALID_AMOUNT,
        ) from None
    if not result.is_finite():
        raise ValidationException(
            f"{field} must be finite", field=field, error_code=ErrorCode.INVALID_AMOUNT
        )
    return result


def round_to_minor_unit(value: Decimal, currency: str) -> Decimal:
    return value.quantize(minor_unit(currency), rounding=ROUND_HALF_EVEN)


def exact_amount(value: AmountLike, currency: str, field: str = "amount") -> Decimal:
    """
    Parse an input amount that must already be exact to the minor unit.

    '100.5' is fine for NGN, '100.005' is a ValidationException rather than a
    silent rounding.
    """
    amount = to_decimal(value, field)
    quantized = round_to_minor_unit(amount, currency)
    if quantized != amount:
        raise ValidationException(
            f"{field} has more precision than {currency} allows",
            field=field,
            error_code=ErrorCode.INVALID_AMOUNT,
            details={"value": str(amount)},
        )
    return quantized


@dataclass(frozen=True)
class Money:
    amount: Decimal
    currency: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", exact_amount(self.amount, self.currency))

    @classmethod
    def of(cls, value: AmountLike, currency: str | None = None) -> "Money":
        return cls(to_decimal(value), currency or settings.DEFAULT_CURRENCY)

    @classmethod
    def zero(cls, currency: str | None = None) -> "Money":
        return cls(Decimal(0), currency or settings.DEFAULT_CURRENCY)

    def _check_currency(self, other: "Money") -> None:
        if other.currency != self.currency:
            raise ValidationException(
                f"Currency mismatch: {self.currency} vs {other.currency}",
                field="currency",
                error_code=ErrorCode.CURRENCY_MISMATCH,
            )

    def __add__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._check_currency(other)
        return self.amount >= other.amount

    def multiply(self, factor: AmountLike) -> "Money":
        """Scale by an exact factor, rounding half-even to the minor unit"""
        product = self.amount * to_decimal(factor, "factor")
        return Money(round_to_minor_unit(product, self.currency), self.currency)

    def prorate(self, numerator: int, denominator: int) -> "Money":
        """amount * numerator / denominator, rounded half-even once at the end"""
        if denominator <= 0:
            raise ValidationException("denominator must be positive", field="denominator")
        value = self.amount * Decimal(numerator) / Decimal(denominator)
        return Money(round_to_minor_unit(value, self.currency), self.currency)

    def min(self, other: "Money") -> "Money":
        return self if self <= other else other

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    @property
    def is_positive(self) -> bool:
        return self.amount > 0

    @property
    def is_negative(self) -> bool:
        return self.amount < 0

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"
