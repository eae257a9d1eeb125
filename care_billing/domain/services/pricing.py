"""
Pricing and Proration

Per-cycle price breakdown for a care plan, and the time-weighted refund of
the unused part of a billing period.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from care_billing.core.config import settings
from care_billing.core.exceptions import ValidationException
from care_billing.core.money import AmountLike, Money
from care_billing.db.models.plan_change import PlanChangeType
from care_billing.db.models.subscription import BillingCycle


@dataclass(frozen=True)
class PriceBreakdown:
    """What one billing cycle costs and who gets what"""

    billing_cycle: BillingCycle
    frequency_per_week: int
    price_per_visit: Money
    order_fee: Money  # caregiver earnings per cycle
    service_charge: Money
    gateway_fees: Money

    @property
    def total(self) -> Money:
        """pricePerCycle, what the client is charged"""
        return self.order_fee + self.service_charge + self.gateway_fees


def calculate_gateway_fees(amount: Money) -> Money:
    """Card processing fee: GATEWAY_FEE_RATE of amount, capped at GATEWAY_FEE_CAP"""
    fee = amount.multiply(settings.GATEWAY_FEE_RATE)
    cap = Money(settings.GATEWAY_FEE_CAP, amount.currency)
    return fee.min(cap)


def calculate_price_breakdown(
    price_per_visit: AmountLike,
    billing_cycle: BillingCycle,
    frequency_per_week: int,
    currency: str | None = None,
) -> PriceBreakdown:
    """
    order fee = price per visit x visits per week x weeks per cycle
    service charge = SERVICE_CHARGE_RATE of the order fee
    gateway fees = on order fee + service charge
    """
    if not 1 <= frequency_per_week <= 7:
        raise ValidationException(
            "frequency_per_week must be between 1 and 7", field="frequency_per_week"
        )
    visit_price = Money.of(price_per_visit, currency)
    if not visit_price.is_positive:
        raise ValidationException("price_per_visit must be positive", field="price_per_visit")

    order_fee = visit_price.multiply(frequency_per_week * billing_cycle.weeks)
    service_charge = order_fee.multiply(settings.SERVICE_CHARGE_RATE)
    gateway_fees = calculate_gateway_fees(order_fee + service_charge)

    return PriceBreakdown(
        billing_cycle=billing_cycle,
        frequency_per_week=frequency_per_week,
        price_per_visit=visit_price,
        order_fee=order_fee,
        service_charge=service_charge,
        gateway_fees=gateway_fees,
    )


def classify_plan_change(old_total: Money, new_total: Money) -> PlanChangeType:
    if new_total > old_total:
        return PlanChangeType.UPGRADE
    if new_total < old_total:
        return PlanChangeType.DOWNGRADE
    return PlanChangeType.CHANGE


def remaining_days(period_end: datetime, now: datetime) -> int:
    """Whole days left in the period, never negative"""
    return max(0, (period_end - now).days)


def total_days(period_start: datetime, period_end: datetime) -> int:
    """Whole days in the period, at least one"""
    return max(1, (period_end - period_start).days)


def calculate_prorated_refund(
    price_per_cycle: Money,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> Money:
    """
    refund = price_per_cycle x remaining_days / total_days

    Rounded half-even to the minor unit; the rounding remainder stays with
    the platform.
    """
    remaining = remaining_days(period_end, now)
    if remaining == 0:
        return Money.zero(price_per_cycle.currency)
    total = total_days(period_start, period_end)
    return price_per_cycle.prorate(min(remaining, total), total)
