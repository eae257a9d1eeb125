"""
Ledger Service - Append-only earnings ledger

Entries are only ever inserted. Existence checks and the append that follows
them must run under the caller's per-caregiver lock.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from care_billing.core.config import settings
from care_billing.core.exceptions import ErrorCode, ValidationException
from care_billing.core.logging import get_logger
from care_billing.core.money import exact_amount
from care_billing.db.models.ledger_entry import (
    FundsReleaseReason,
    LedgerEntry,
    LedgerEntryKind,
    ServiceType,
)

logger = get_logger(__name__)

ZERO = Decimal("0.00")


def validate_amount_sign(kind: LedgerEntryKind, amount: Decimal) -> None:
    """Credits are positive, debits negative, dispute holds carry no money"""
    if kind in (LedgerEntryKind.ORDER_RECEIVED, LedgerEntryKind.FUNDS_RELEASED):
        valid = amount > 0
        expected = "positive"
    elif kind in (LedgerEntryKind.WITHDRAWAL_COMPLETED, LedgerEntryKind.REFUND):
        valid = amount < 0
        expected = "negative"
    else:
        valid = amount == 0
        expected = "zero"
    if not valid:
        raise ValidationException(
            f"{kind.value} amount must be {expected}, got {amount}",
            field="amount",
            error_code=ErrorCode.INVALID_AMOUNT,
            details={"kind": kind.value, "amount": str(amount)},
        )
    if abs(amount) > settings.MAX_TRANSACTION_AMOUNT:
        raise ValidationException(
            f"amount exceeds the per-posting limit of {settings.MAX_TRANSACTION_AMOUNT}",
            field="amount",
            error_code=ErrorCode.INVALID_AMOUNT,
        )


@dataclass
class LedgerTotals:
    """Wallet figures derived purely from ledger entries"""

    pending_balance: Decimal = ZERO
    withdrawable_balance: Decimal = ZERO
    total_earned: Decimal = ZERO
    total_withdrawn: Decimal = ZERO

    def as_dict(self) -> dict[str, Decimal]:
        return {
            "pending_balance": self.pending_balance,
            "withdrawable_balance": self.withdrawable_balance,
            "total_earned": self.total_earned,
            "total_withdrawn": self.total_withdrawn,
        }


class LedgerService:
    """Durable, append-only record of every balance-affecting event"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        *,
        caregiver_id: str,
        kind: LedgerEntryKind,
        amount: Decimal,
        pending_delta: Decimal,
        withdrawable_delta: Decimal,
        balance_after: Decimal,
        currency: str,
        service_type: ServiceType,
        description: str | None = None,
        related_order_id: str | None = None,
        related_subscription_id: str | None = None,
        billing_cycle_number: int | None = None,
        contract_id: str | None = None,
        withdrawal_request_id: str | None = None,
        release_reason: FundsReleaseReason | None = None,
        created_at: datetime | None = None,
    ) -> LedgerEntry:
        """
        Add one entry to the session (flushed, not committed).

        Raises ValidationException when the sign of amount does not fit kind.
        """
        amount = exact_amount(amount, currency)
        validate_amount_sign(kind, amount)
        if kind == LedgerEntryKind.FUNDS_RELEASED and release_reason is None:
            raise ValidationException("funds_released entries need a release_reason", field="release_reason")

        entry = LedgerEntry(
            caregiver_id=caregiver_id,
            kind=kind,
            amount=amount,
            pending_delta=pending_delta,
            withdrawable_delta=withdrawable_delta,
            balance_after=balance_after,
            currency=currency,
            service_type=service_type,
            description=description,
            related_order_id=related_order_id,
            related_subscription_id=related_subscription_id,
            billing_cycle_number=billing_cycle_number,
            contract_id=contract_id,
            withdrawal_request_id=withdrawal_request_id,
            release_reason=release_reason,
        )
        if created_at is not None:
            entry.created_at = created_at
        self.db.add(entry)
        await self.db.flush()

        logger.info(
            "Ledger entry posted",
            extra_data={
                "entry_id": entry.id,
                "caregiver_id": caregiver_id,
                "kind": kind.value,
                "amount": str(amount),
                "order_id": related_order_id,
                "subscription_id": related_subscription_id,
            }
        )
        return entry

    async def exists(
        self,
        order_id: str,
        kind: LedgerEntryKind,
        caregiver_id: str | None = None,
    ) -> bool:
        query = select(LedgerEntry.id).where(
            LedgerEntry.related_order_id == order_id,
            LedgerEntry.kind == kind,
        )
        if caregiver_id is not None:
            query = query.where(LedgerEntry.caregiver_id == caregiver_id)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none() is not None

    async def get_for_order(
        self, order_id: str, kind: LedgerEntryKind
    ) -> Optional[LedgerEntry]:
        result = await self.db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.related_order_id == order_id, LedgerEntry.kind == kind)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def history(
        self,
        caregiver_id: str,
        limit: int | None = None,
    ) -> list[LedgerEntry]:
        """Entries newest first; unlimited unless limit is given"""
        query = (
            select(LedgerEntry)
            .where(LedgerEntry.caregiver_id == caregiver_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def history_for_subscription(self, subscription_id: str) -> list[LedgerEntry]:
        result = await self.db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.related_subscription_id == subscription_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        )
        return list(result.scalars().all())

    async def sum_for_order(self, order_id: str) -> Decimal:
        """Signed sum of every entry tied to an order"""
        result = await self.db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .where(LedgerEntry.related_order_id == order_id)
        )
        return Decimal(str(result.scalar_one()))

    async def pending_for_order(self, order_id: str, caregiver_id: str) -> Decimal:
        """Money of one order still sitting in the caregiver's pending balance"""
        result = await self.db.execute(
            select(func.coalesce(func.sum(LedgerEntry.pending_delta), 0))
            .where(
                LedgerEntry.related_order_id == order_id,
                LedgerEntry.caregiver_id == caregiver_id,
            )
        )
        return Decimal(str(result.scalar_one())).quantize(ZERO)

    async def totals(self, caregiver_id: str) -> LedgerTotals:
        """Recompute all four wallet figures from the ledger"""
        result = await self.db.execute(
            select(
                LedgerEntry.kind,
                func.coalesce(func.sum(LedgerEntry.amount), 0),
                func.coalesce(func.sum(LedgerEntry.pending_delta), 0),
                func.coalesce(func.sum(LedgerEntry.withdrawable_delta), 0),
            )
            .where(LedgerEntry.caregiver_id == caregiver_id)
            .group_by(LedgerEntry.kind)
        )
        totals = LedgerTotals()
        for kind, amount_sum, pending_sum, withdrawable_sum in result.all():
            totals.pending_balance += Decimal(str(pending_sum))
            totals.withdrawable_balance += Decimal(str(withdrawable_sum))
            if kind == LedgerEntryKind.ORDER_RECEIVED:
                totals.total_earned += Decimal(str(amount_sum))
            elif kind == LedgerEntryKind.WITHDRAWAL_COMPLETED:
                totals.total_withdrawn += -Decimal(str(amount_sum))
        return LedgerTotals(
            pending_balance=totals.pending_balance.quantize(ZERO),
            withdrawable_balance=totals.withdrawable_balance.quantize(ZERO),
            total_earned=totals.total_earned.quantize(ZERO),
            total_withdrawn=totals.total_withdrawn.quantize(ZERO),
        )

    async def pending_one_time_orders(
        self, received_before: datetime, limit: int = 500
    ) -> list[LedgerEntry]:
        """
        One-time OrderReceived entries older than received_before whose order
        still holds pending money and was neither released nor disputed. A
        partial refund leaves the rest of the order eligible.
        """
        settled = (
            select(LedgerEntry.related_order_id)
            .where(
                LedgerEntry.related_order_id.is_not(None),
                LedgerEntry.kind.in_([LedgerEntryKind.FUNDS_RELEASED, LedgerEntryKind.DISPUTE_HOLD]),
            )
        )
        holding = (
            select(LedgerEntry.related_order_id)
            .where(LedgerEntry.related_order_id.is_not(None))
            .group_by(LedgerEntry.related_order_id)
            .having(func.sum(LedgerEntry.pending_delta) > 0)
        )
        result = await self.db.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.kind == LedgerEntryKind.ORDER_RECEIVED,
                LedgerEntry.service_type == ServiceType.ONE_TIME,
                LedgerEntry.created_at <= received_before,
                LedgerEntry.related_order_id.not_in(settled),
                LedgerEntry.related_order_id.in_(holding),
            )
            .order_by(LedgerEntry.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def caregiver_ids(self) -> list[str]:
        result = await self.db.execute(select(LedgerEntry.caregiver_id).distinct())
        return list(result.scalars().all())
