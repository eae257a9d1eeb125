"""
Tests for price breakdown, plan change classification and pro-rated refunds
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from care_billing.core.exceptions import ValidationException
from care_billing.core.money import Money
from care_billing.db.models.plan_change import PlanChangeType
from care_billing.db.models.subscription import BillingCycle
from care_billing.domain.services.pricing import (
    calculate_gateway_fees,
    calculate_price_breakdown,
    calculate_prorated_refund,
    classify_plan_change,
    remaining_days,
    total_days,
)

START = datetime(2024, 3, 1, 12, 0, 0)
END = START + timedelta(days=30)


class TestPriceBreakdown:

    @pytest.mark.unit
    def test_monthly_plan(self):
        breakdown = calculate_price_breakdown("5000", BillingCycle.MONTHLY, 2)

        assert breakdown.order_fee.amount == Decimal("40000.00")  # 5000 x 2 x 4 weeks
        assert breakdown.service_charge.amount == Decimal("4000.00")
        assert breakdown.gateway_fees.amount == Decimal("616.00")  # 1.4% of 44000
        assert breakdown.total.amount == Decimal("44616.00")

    @pytest.mark.unit
    def test_weekly_plan(self):
        breakdown = calculate_price_breakdown("5000", BillingCycle.WEEKLY, 2)

        assert breakdown.order_fee.amount == Decimal("10000.00")
        assert breakdown.total.amount == Decimal("11154.00")

    @pytest.mark.unit
    def test_gateway_fees_are_capped(self):
        breakdown = calculate_price_breakdown("100000", BillingCycle.MONTHLY, 7)

        assert breakdown.gateway_fees.amount == Decimal("2000.00")
        assert breakdown.total.amount == Decimal("3082000.00")

    @pytest.mark.unit
    def test_fee_rounding_is_half_even(self):
        # 1.4% of 1234.50 = 17.283
        assert calculate_gateway_fees(Money.of("1234.50")).amount == Decimal("17.28")

    @pytest.mark.unit
    @pytest.mark.parametrize("frequency", [0, 8])
    def test_frequency_out_of_range(self, frequency):
        with pytest.raises(ValidationException):
            calculate_price_breakdown("5000", BillingCycle.MONTHLY, frequency)

    @pytest.mark.unit
    def test_non_positive_price(self):
        with pytest.raises(ValidationException):
            calculate_price_breakdown("0", BillingCycle.MONTHLY, 2)

    @pytest.mark.unit
    def test_float_price(self):
        with pytest.raises(ValidationException):
            calculate_price_breakdown(5000.0, BillingCycle.MONTHLY, 2)


class TestClassifyPlanChange:

    @pytest.mark.unit
    def test_classification(self):
        assert classify_plan_change(Money.of("100"), Money.of("150")) == PlanChangeType.UPGRADE
        assert classify_plan_change(Money.of("100"), Money.of("50")) == PlanChangeType.DOWNGRADE
        assert classify_plan_change(Money.of("100"), Money.of("100")) == PlanChangeType.CHANGE


class TestProratedRefund:

    @pytest.mark.unit
    def test_ten_days_into_thirty_day_period(self):
        """300.00 at day 10 of 30 leaves 20 unused days: 200.00"""
        refund = calculate_prorated_refund(
            Money.of("300.00"), START, END, START + timedelta(days=10)
        )
        assert refund == Money.of("200.00")

    @pytest.mark.unit
    def test_partial_days_are_not_counted(self):
        # 19 days and 12 hours left counts as 19
        refund = calculate_prorated_refund(
            Money.of("300.00"), START, END, START + timedelta(days=10, hours=12)
        )
        assert refund == Money.of("190.00")

    @pytest.mark.unit
    def test_period_over_refunds_nothing(self):
        assert calculate_prorated_refund(Money.of("300.00"), START, END, END).is_zero
        assert calculate_prorated_refund(
            Money.of("300.00"), START, END, END + timedelta(days=3)
        ).is_zero

    @pytest.mark.unit
    def test_never_exceeds_price(self):
        """Terminating before the period starts refunds at most the full price"""
        refund = calculate_prorated_refund(
            Money.of("300.00"), START, END, START - timedelta(days=5)
        )
        assert refund == Money.of("300.00")

    @pytest.mark.unit
    def test_rounding_remainder_stays_with_platform(self):
        # 100 x 1 / 3 = 33.333..
        refund = calculate_prorated_refund(
            Money.of("100.00"), START, START + timedelta(days=3), START + timedelta(days=2)
        )
        assert refund.amount == Decimal("33.33")

    @pytest.mark.unit
    def test_day_helpers(self):
        assert remaining_days(END, START + timedelta(days=10)) == 20
        assert remaining_days(END, END + timedelta(days=1)) == 0
        assert total_days(START, END) == 30
        assert total_days(START, START) == 1
