"""
Billing Record Service - one record per payment event
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from care_billing.core.exceptions import BillingRecordNotFoundError, ValidationException
from care_billing.core.logging import get_logger
from care_billing.db.models.billing_record import BillingRecord, BillingRecordKind
from care_billing.db.models.subscription import Subscription

logger = get_logger(__name__)


def cycle_order_id(subscription: Subscription, billing_cycle_number: int) -> str:
    """Order id of a subscription cycle; cycle 1 is the originating order"""
    if billing_cycle_number == 1:
        return subscription.order_id
    return f"{subscription.order_id}-C{billing_cycle_number}"


class BillingRecordService:
    """Snapshots of what was paid, by order and by subscription cycle"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_order_id(self, order_id: str) -> Optional[BillingRecord]:
        result = await self.db.execute(
            select(BillingRecord).where(BillingRecord.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def require_by_order_id(self, order_id: str) -> BillingRecord:
        record = await self.get_by_order_id(order_id)
        if record is None:
            raise BillingRecordNotFoundError(order_id)
        return record

    async def get_for_cycle(
        self, subscription_id: str, billing_cycle_number: int
    ) -> Optional[BillingRecord]:
        result = await self.db.execute(
            select(BillingRecord).where(
                BillingRecord.subscription_id == subscription_id,
                BillingRecord.billing_cycle_number == billing_cycle_number,
            )
        )
        return result.scalar_one_or_none()

    async def record_one_time_payment(
        self,
        *,
        order_id: str,
        client_id: str,
        caregiver_id: str,
        gig_id: str | None,
        amount_paid: Decimal,
        order_fee: Decimal,
        service_charge: Decimal,
        gateway_fees: Decimal,
        currency: str,
        payment_transaction_id: str | None,
    ) -> BillingRecord:
        """Added to the session; the caller commits"""
        if await self.get_by_order_id(order_id) is not None:
            raise ValidationException(
                f"Billing record already exists for order {order_id}", field="order_id"
            )
        record = BillingRecord(
            order_id=order_id,
            client_id=client_id,
            caregiver_id=caregiver_id,
            gig_id=gig_id,
            kind=BillingRecordKind.ONE_TIME,
            amount_paid=amount_paid,
            order_fee=order_fee,
            service_charge=service_charge,
            gateway_fees=gateway_fees,
            currency=currency,
            payment_transaction_id=payment_transaction_id,
        )
        self.db.add(record)
        await self.db.flush()
        return record

    async def record_subscription_cycle(
        self,
        subscription: Subscription,
        *,
        billing_cycle_number: int,
        payment_transaction_id: str | None,
        period_start: datetime,
        period_end: datetime,
        next_charge_date: datetime | None,
        amount_paid: Decimal | None = None,
    ) -> BillingRecord:
        """
        Record for one paid cycle. Returns the existing record when the cycle
        was already recorded, so replays stay single.
        """
        existing = await self.get_for_cycle(subscription.id, billing_cycle_number)
        if existing is not None:
            return existing

        latest = await self.latest_cycle_number(subscription.id)
        if latest is not None and billing_cycle_number <= latest:
            raise ValidationException(
                f"Cycle {billing_cycle_number} is not after recorded cycle {latest}",
                field="billing_cycle_number",
            )

        record = BillingRecord(
            order_id=cycle_order_id(subscription, billing_cycle_number),
            subscription_id=subscription.id,
            contract_id=subscription.contract_id,
            client_id=subscription.client_id,
            caregiver_id=subscription.caregiver_id,
            gig_id=subscription.gig_id,
            kind=(
                BillingRecordKind.SUBSCRIPTION_INITIAL
                if billing_cycle_number == 1
                else BillingRecordKind.SUBSCRIPTION_RECURRING
            ),
            billing_cycle=subscription.billing_cycle.value,
            frequency_per_week=subscription.frequency_per_week,
            amount_paid=amount_paid if amount_paid is not None else subscription.price_per_cycle,
            order_fee=subscription.caregiver_amount,
            service_charge=subscription.service_charge,
            gateway_fees=subscription.gateway_fees,
            currency=subscription.currency,
            payment_transaction_id=payment_transaction_id,
            billing_cycle_number=billing_cycle_number,
            period_start=period_start,
            period_end=period_end,
            next_charge_date=next_charge_date,
        )
        self.db.add(record)
        await self.db.flush()
        logger.info(
            "Billing record created",
            extra_data={
                "order_id": record.order_id,
                "subscription_id": subscription.id,
                "billing_cycle_number": billing_cycle_number,
                "amount_paid": str(record.amount_paid),
            }
        )
        return record

    async def latest_cycle_number(self, subscription_id: str) -> Optional[int]:
        result = await self.db.execute(
            select(BillingRecord.billing_cycle_number)
            .where(BillingRecord.subscription_id == subscription_id)
            .order_by(BillingRecord.billing_cycle_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def mark_refunded(self, order_id: str, amount: Decimal, now: datetime) -> BillingRecord:
        record = await self.require_by_order_id(order_id)
        record.refunded = True
        record.refund_amount = amount
        record.refunded_at = now
        return record

    async def mark_disputed(self, order_id: str, reason: str | None, now: datetime) -> BillingRecord:
        record = await self.require_by_order_id(order_id)
        record.disputed = True
        record.dispute_reason = reason
        record.disputed_at = now
        return record

    async def list_by_subscription(self, subscription_id: str) -> list[BillingRecord]:
        result = await self.db.execute(
            select(BillingRecord)
            .where(BillingRecord.subscription_id == subscription_id)
            .order_by(BillingRecord.billing_cycle_number)
        )
        return list(result.scalars().all())

    async def list_by_client(self, client_id: str, limit: int = 100) -> list[BillingRecord]:
        result = await self.db.execute(
            select(BillingRecord)
            .where(BillingRecord.client_id == client_id)
            .order_by(BillingRecord.created_at.desc(), BillingRecord.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_by_caregiver(self, caregiver_id: str, limit: int = 100) -> list[BillingRecord]:
        result = await self.db.execute(
            select(BillingRecord)
            .where(BillingRecord.caregiver_id == caregiver_id)
            .order_by(BillingRecord.created_at.desc(), BillingRecord.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
