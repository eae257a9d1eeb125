"""
Tests for Money and amount parsing
"""
from decimal import Decimal

import pytest

from care_billing.core.exceptions import ErrorCode, ValidationException
from care_billing.core.money import Money, exact_amount, minor_unit, to_decimal


class TestParsing:

    @pytest.mark.unit
    def test_floats_are_rejected(self):
        with pytest.raises(ValidationException) as exc_info:
            to_decimal(10.5)
        assert exc_info.value.error_code == ErrorCode.INVALID_AMOUNT

    @pytest.mark.unit
    def test_bools_are_rejected(self):
        with pytest.raises(ValidationException):
            to_decimal(True)

    @pytest.mark.unit
    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", ""])
    def test_garbage_is_rejected(self, value):
        with pytest.raises(ValidationException) as exc_info:
            to_decimal(value)
        assert exc_info.value.error_code == ErrorCode.INVALID_AMOUNT

    @pytest.mark.unit
    def test_int_and_str_are_parsed_exactly(self):
        assert to_decimal(7) == Decimal("7")
        assert to_decimal("0.10") == Decimal("0.10")

    @pytest.mark.unit
    def test_exact_amount_refuses_sub_minor_precision(self):
        """100.005 NGN is an error, never a silent rounding"""
        with pytest.raises(ValidationException):
            exact_amount("100.005", "NGN")
        assert exact_amount("100.5", "NGN") == Decimal("100.50")

    @pytest.mark.unit
    def test_unknown_currency(self):
        with pytest.raises(ValidationException) as exc_info:
            minor_unit("XYZ")
        assert exc_info.value.error_code == ErrorCode.CURRENCY_MISMATCH


class TestArithmetic:

    @pytest.mark.unit
    def test_default_currency(self):
        assert Money.of("10").currency == "NGN"
        assert Money.zero().is_zero

    @pytest.mark.unit
    def test_add_and_subtract(self):
        total = Money.of("10.10") + Money.of("0.20")
        assert total == Money.of("10.30")
        assert (Money.of("5") - Money.of("7.50")).amount == Decimal("-2.50")

    @pytest.mark.unit
    def test_currency_mismatch_raises(self):
        with pytest.raises(ValidationException) as exc_info:
            Money.of("10", "NGN") + Money.of("10", "USD")
        assert exc_info.value.error_code == ErrorCode.CURRENCY_MISMATCH

        with pytest.raises(ValidationException):
            Money.of("10", "NGN") < Money.of("10", "USD")

    @pytest.mark.unit
    def test_multiply_rounds_half_even(self):
        # 0.125 -> 0.12, 0.135 -> 0.14
        assert Money.of("12.50").multiply("0.01").amount == Decimal("0.12")
        assert Money.of("13.50").multiply("0.01").amount == Decimal("0.14")

    @pytest.mark.unit
    def test_multiply_rejects_float_factor(self):
        with pytest.raises(ValidationException):
            Money.of("10").multiply(0.5)

    @pytest.mark.unit
    def test_prorate(self):
        assert Money.of("300.00").prorate(20, 30) == Money.of("200.00")
        # 100 / 3 = 33.333.. -> 33.33
        assert Money.of("100").prorate(1, 3).amount == Decimal("33.33")

    @pytest.mark.unit
    def test_prorate_rejects_zero_denominator(self):
        with pytest.raises(ValidationException):
            Money.of("100").prorate(1, 0)

    @pytest.mark.unit
    def test_comparisons_and_min(self):
        small, large = Money.of("1.00"), Money.of("2.00")
        assert small < large <= Money.of("2")
        assert large > small >= Money.of("1")
        assert small.min(large) is small
        assert large.min(small) is small

    @pytest.mark.unit
    def test_sign_properties(self):
        assert Money.of("0.01").is_positive
        assert (-Money.of("0.01")).is_negative
        assert not Money.zero().is_positive

    @pytest.mark.unit
    def test_str(self):
        assert str(Money.of("1500")) == "1500.00 NGN"
