"""
Wallet Service - Caregiver earnings wallet

The only write path for wallet balances. Every operation posts a ledger entry
first and then applies that entry's deltas to the wallet row, all under the
caregiver's lock.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from care_billing.core.config import settings
from care_billing.core.exceptions import (
    ErrorCode,
    FundsOnHoldError,
    InsufficientPendingFundsError,
    InsufficientWithdrawableFundsError,
    OrderRefundedError,
    ValidationException,
)
from care_billing.core.locks import WALLET, retry_on_conflict, wallet_lock
from care_billing.core.logging import get_logger
from care_billing.core.money import AmountLike, exact_amount
from care_billing.db.models.ledger_entry import (
    FundsReleaseReason,
    LedgerEntry,
    LedgerEntryKind,
    ServiceType,
)
from care_billing.db.models.wallet import CaregiverWallet
from care_billing.domain.schemas import ReconciliationReport
from care_billing.domain.services.ledger_service import ZERO, LedgerService

logger = get_logger(__name__)

T = TypeVar("T")


class WalletService:
    """
    Service for managing caregiver wallets.

    Methods take commit=True when they are the whole unit of work. Callers
    composing a larger transaction (subscription activation, recurring
    charges) pass commit=False and commit themselves.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = LedgerService(db)

    async def get_or_create_wallet(
        self,
        caregiver_id: str,
        for_update: bool = False,
        currency: str | None = None,
    ) -> CaregiverWallet:
        """Get existing wallet or create an empty one"""
        query = select(CaregiverWallet).where(CaregiverWallet.caregiver_id == caregiver_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        wallet = result.scalar_one_or_none()

        if not wallet:
            wallet = CaregiverWallet(
                caregiver_id=caregiver_id,
                currency=currency or settings.DEFAULT_CURRENCY,
                pending_balance=ZERO,
                withdrawable_balance=ZERO,
                total_earned=ZERO,
                total_withdrawn=ZERO,
            )
            self.db.add(wallet)
            await self.db.flush()
            logger.info(
                "Wallet created",
                extra_data={"caregiver_id": caregiver_id, "currency": wallet.currency}
            )

        return wallet

    async def _run(
        self,
        caregiver_id: str,
        operation: Callable[[], Awaitable[T]],
        commit: bool,
    ) -> T:
        """Serialize operation on the caregiver; retry lost optimistic races when it owns the commit"""

        async def attempt() -> T:
            async with wallet_lock(caregiver_id):
                result = await operation()
                if commit:
                    await self.db.commit()
                return result

        if not commit:
            return await attempt()
        return await retry_on_conflict(
            attempt, entity=WALLET, entity_id=caregiver_id, rollback=self.db.rollback
        )

    def _amount(self, wallet: CaregiverWallet, amount: AmountLike) -> Decimal:
        value = exact_amount(amount, wallet.currency)
        if value <= 0:
            raise ValidationException(
                "amount must be positive",
                field="amount",
                error_code=ErrorCode.INVALID_AMOUNT,
                details={"amount": str(value)},
            )
        return value

    # ==================== credits ====================

    async def _post_order_received(
        self,
        wallet: CaregiverWallet,
        amount: Decimal,
        *,
        is_recurring: bool,
        order_id: str,
        subscription_id: str | None,
        billing_cycle_number: int | None,
        contract_id: str | None,
        description: str | None,
    ) -> LedgerEntry:
        existing = await self.ledger.get_for_order(order_id, LedgerEntryKind.ORDER_RECEIVED)
        if existing is not None:
            logger.info(
                "Order already credited, skipping",
                extra_data={"caregiver_id": wallet.caregiver_id, "order_id": order_id}
            )
            return existing

        pending_delta = ZERO if is_recurring else amount
        entry = await self.ledger.append(
            caregiver_id=wallet.caregiver_id,
            kind=LedgerEntryKind.ORDER_RECEIVED,
            amount=amount,
            pending_delta=pending_delta,
            withdrawable_delta=ZERO,
            balance_after=wallet.withdrawable_balance,
            currency=wallet.currency,
            service_type=ServiceType.RECURRING if is_recurring else ServiceType.ONE_TIME,
            description=description or f"Payment received for order {order_id}",
            related_order_id=order_id,
            related_subscription_id=subscription_id,
            billing_cycle_number=billing_cycle_number,
            contract_id=contract_id,
        )
        wallet.pending_balance = wallet.pending_balance + pending_delta
        wallet.total_earned = wallet.total_earned + amount
        return entry

    async def _post_withdrawable_credit(
        self,
        wallet: CaregiverWallet,
        amount: Decimal,
        *,
        order_id: str,
        release_reason: FundsReleaseReason,
        subscription_id: str | None,
        billing_cycle_number: int | None,
        contract_id: str | None,
    ) -> LedgerEntry:
        existing = await self.ledger.get_for_order(order_id, LedgerEntryKind.FUNDS_RELEASED)
        if existing is not None:
            logger.info(
                "Funds already released for order, skipping",
                extra_data={"caregiver_id": wallet.caregiver_id, "order_id": order_id}
            )
            return existing

        new_withdrawable = wallet.withdrawable_balance + amount
        entry = await self.ledger.append(
            caregiver_id=wallet.caregiver_id,
            kind=LedgerEntryKind.FUNDS_RELEASED,
            amount=amount,
            pending_delta=ZERO,
            withdrawable_delta=amount,
            balance_after=new_withdrawable,
            currency=wallet.currency,
            service_type=ServiceType.RECURRING,
            description=f"Recurring payment for order {order_id}",
            related_order_id=order_id,
            related_subscription_id=subscription_id,
            billing_cycle_number=billing_cycle_number,
            contract_id=contract_id,
            release_reason=release_reason,
        )
        wallet.withdrawable_balance = new_withdrawable
        return entry

    async def credit_order_received(
        self,
        caregiver_id: str,
        amount: AmountLike,
        *,
        is_recurring: bool,
        order_id: str,
        subscription_id: str | None = None,
        billing_cycle_number: int | None = None,
        contract_id: str | None = None,
        description: str | None = None,
        commit: bool = True,
    ) -> LedgerEntry:
        """
        Post OrderReceived and raise total_earned.

        One-time orders also land in pending_balance; recurring payments are
        credited to withdrawable_balance separately once the charge succeeds.
        """
        async def operation() -> LedgerEntry:
            wallet = await self.get_or_create_wallet(caregiver_id, for_update=True)
            return await self._post_order_received(
                wallet,
                self._amount(wallet, amount),
                is_recurring=is_recurring,
                order_id=order_id,
                subscription_id=subscription_id,
                billing_cycle_number=billing_cycle_number,
                contract_id=contract_id,
                description=description,
            )

        return await self._run(caregiver_id, operation, commit)

    async def credit_recurring_payment(
        self,
        caregiver_id: str,
        amount: AmountLike,
        *,
        order_id: str,
        subscription_id: str | None = None,
        billing_cycle_number: int | None = None,
        contract_id: str | None = None,
        release_reason: FundsReleaseReason = FundsReleaseReason.RECURRING_PAYMENT,
        commit: bool = True,
    ) -> LedgerEntry:
        """Credit a successful recurring cycle straight into withdrawable_balance"""
        async def operation() -> LedgerEntry:
            wallet = await self.get_or_create_wallet(caregiver_id, for_update=True)
            return await self._post_withdrawable_credit(
                wallet,
                self._amount(wallet, amount),
                order_id=order_id,
                release_reason=release_reason,
                subscription_id=subscription_id,
                billing_cycle_number=billing_cycle_number,
                contract_id=contract_id,
            )

        return await self._run(caregiver_id, operation, commit)

    async def credit_recurring_cycle(
        self,
        caregiver_id: str,
        amount: AmountLike,
        *,
        order_id: str,
        subscription_id: str,
        billing_cycle_number: int,
        contract_id: str | None = None,
        release_reason: FundsReleaseReason = FundsReleaseReason.RECURRING_PAYMENT,
        commit: bool = True,
    ) -> tuple[LedgerEntry, LedgerEntry]:
        """OrderReceived (earned) plus the immediate FundsReleased for one paid cycle"""
        async def operation() -> tuple[LedgerEntry, LedgerEntry]:
            wallet = await self.get_or_create_wallet(caregiver_id, for_update=True)
            value = self._amount(wallet, amount)
            received = await self._post_order_received(
                wallet,
                value,
                is_recurring=True,
                order_id=order_id,
                subscription_id=subscription_id,
                billing_cycle_number=billing_cycle_number,
                contract_id=contract_id,
                description=f"Subscription cycle {billing_cycle_number} for order {order_id}",
            )
            released = await self._post_withdrawable_credit(
                wallet,
                value,
                order_id=order_id,
                release_reason=release_reason,
                subscription_id=subscription_id,
                billing_cycle_number=billing_cycle_number,
                contract_id=contract_id,
            )
            return received, released

        return await self._run(caregiver_id, operation, commit)

    async def release_pending_funds(
        self,
        caregiver_id: str,
        amount: AmountLike | None,
        order_id: str,
        *,
        release_reason: FundsReleaseReason = FundsReleaseReason.CLIENT_APPROVED,
        on_released: Callable[[LedgerEntry], Awaitable[None]] | None = None,
        commit: bool = True,
    ) -> LedgerEntry:
        """
        Move an order's money from pending_balance to withdrawable_balance.

        amount=None releases everything the order still holds in pending,
        which after a partial refund is the unrefunded rest. An explicit
        amount may not exceed that.

        Idempotent per order: a second call returns the existing FundsReleased
        entry without touching the balances. on_released runs under the lock,
        and only when this call posted the entry.
        """
        async def operation() -> LedgerEntry:
            wallet = await self.get_or_create_wallet(caregiver_id, for_update=True)
            requested = None if amount is None else self._amount(wallet, amount)

            existing = await self.ledger.get_for_order(order_id, LedgerEntryKind.FUNDS_RELEASED)
            if existing is not None:
                logger.info(
                    "Funds already released for order, skipping",
                    extra_data={"caregiver_id": caregiver_id, "order_id": order_id}
                )
                return existing

            if await self.ledger.exists(order_id, LedgerEntryKind.DISPUTE_HOLD, caregiver_id):
                raise FundsOnHoldError(caregiver_id, order_id)

            held = await self.ledger.pending_for_order(order_id, caregiver_id)
            if held <= 0 and await self.ledger.exists(order_id, LedgerEntryKind.REFUND, caregiver_id):
                raise OrderRefundedError(caregiver_id, order_id)

            value = held if requested is None else requested
            if value <= 0 or value > held or value > wallet.pending_balance:
                raise InsufficientPendingFundsError(
                    caregiver_id, min(held, wallet.pending_balance), value
                )

            new_pending = wallet.pending_balance - value
            new_withdrawable = wallet.withdrawable_balance + value
            entry = await self.ledger.append(
                caregiver_id=caregiver_id,
                kind=LedgerEntryKind.FUNDS_RELEASED,
                amount=value,
                pending_delta=-value,
                withdrawable_delta=value,
                balance_after=new_withdrawable,
                currency=wallet.currency,
                service_type=ServiceType.ONE_TIME,
                description=f"Funds released for order {order_id}",
                related_order_id=order_id,
                release_reason=release_reason,
            )
            wallet.pending_balance = new_pending
            wallet.withdrawable_balance = new_withdrawable
            if on_released is not None:
                await on_released(entry)
            return entry

        return await self._run(caregiver_id, operation, commit)

    # ==================== debits ====================

    async def debit_withdrawal(
        self,
        caregiver_id: str,
        amount: AmountLike,
        *,
        withdrawal_request_id: str | None = None,
        commit: bool = True,
    ) -> LedgerEntry:
        """Post WithdrawalCompleted; rejected when amount exceeds withdrawable_balance"""
        async def operation() -> LedgerEntry:
            wallet = await self.get_or_create_wallet(caregiver_id, for_update=True)
            value = self._amount(wallet, amount)

            if withdrawal_request_id is not None:
                result = await self.db.execute(
                    select(LedgerEntry).where(
                        LedgerEntry.caregiver_id == caregiver_id,
                        LedgerEntry.kind == LedgerEntryKind.WITHDRAWAL_COMPLETED,
                        LedgerEntry.withdrawal_request_id == withdrawal_request_id,
                    )
                )
                existing = result.scalar_one_or_none()
                if existing is not None:
                    return existing

            if value > wallet.withdrawable_balance:
                raise InsufficientWithdrawableFundsError(
                    caregiver_id, wallet.withdrawable_balance, value
                )

            new_withdrawable = wallet.withdrawable_balance - value
            entry = await self.ledger.append(
                caregiver_id=caregiver_id,
                kind=LedgerEntryKind.WITHDRAWAL_COMPLETED,
                amount=-value,
                pending_delta=ZERO,
                withdrawable_delta=-value,
                balance_after=new_withdrawable,
                currency=wallet.currency,
                service_type=ServiceType.ONE_TIME,
                description="Withdrawal completed",
                withdrawal_request_id=withdrawal_request_id,
            )
            wallet.withdrawable_balance = new_withdrawable
            wallet.total_withdrawn = wallet.total_withdrawn + value
            return entry

        return await self._run(caregiver_id, operation, commit)

    async def _post_refund(
        self,
        wallet: CaregiverWallet,
        value: Decimal,
        *,
        from_pending: bool,
        order_id: str | None,
        subscription_id: str | None,
        billing_cycle_number: int | None,
        service_type: ServiceType,
        description: str | None,
    ) -> LedgerEntry:
        if from_pending:
            if value > wallet.pending_balance:
                raise InsufficientPendingFundsError(wallet.caregiver_id, wallet.pending_balance, value)
            pending_delta, withdrawable_delta = -value, ZERO
        else:
            if value > wallet.withdrawable_balance:
                raise InsufficientWithdrawableFundsError(
                    wallet.caregiver_id, wallet.withdrawable_balance, value
                )
            pending_delta, withdrawable_delta = ZERO, -value

        new_withdrawable = wallet.withdrawable_balance + withdrawable_delta
        entry = await self.ledger.append(
            caregiver_id=wallet.caregiver_id,
            kind=LedgerEntryKind.REFUND,
            amount=-value,
            pending_delta=pending_delta,
            withdrawable_delta=withdrawable_delta,
            balance_after=new_withdrawable,
            currency=wallet.currency,
            service_type=service_type,
            description=description or "Refund",
            related_order_id=order_id,
            related_subscription_id=subscription_id,
            billing_cycle_number=billing_cycle_number,
        )
        wallet.pending_balance = wallet.pending_balance + pending_delta
        wallet.withdrawable_balance = new_withdrawable
        return entry

    async def debit_refund(
        self,
        caregiver_id: str,
        amount: AmountLike,
        *,
        order_id: str | None = None,
        subscription_id: str | None = None,
        billing_cycle_number: int | None = None,
        from_pending: bool = False,
        description: str | None = None,
        commit: bool = True,
    ) -> LedgerEntry:
        """
        Post Refund (negative amount).

        Debits withdrawable_balance unless from_pending is set (refund of a
        one-time order whose funds were never released). Never clamps: an
        amount above the available balance raises.
        """
        async def operation() -> LedgerEntry:
            wallet = await self.get_or_create_wallet(caregiver_id, for_update=True)
            return await self._post_refund(
                wallet,
                self._amount(wallet, amount),
                from_pending=from_pending,
                order_id=order_id,
                subscription_id=subscription_id,
                billing_cycle_number=billing_cycle_number,
                service_type=ServiceType.RECURRING if subscription_id else ServiceType.ONE_TIME,
                description=description,
            )

        return await self._run(caregiver_id, operation, commit)

    async def place_dispute_hold(
        self,
        caregiver_id: str,
        order_id: str,
        *,
        reason: str | None = None,
        commit: bool = True,
    ) -> LedgerEntry:
        """Zero-amount DisputeHold entry; blocks any later release of the order"""
        async def operation() -> LedgerEntry:
            wallet = await self.get_or_create_wallet(caregiver_id, for_update=True)
            existing = await self.ledger.get_for_order(order_id, LedgerEntryKind.DISPUTE_HOLD)
            if existing is not None:
                return existing
            return await self.ledger.append(
                caregiver_id=caregiver_id,
                kind=LedgerEntryKind.DISPUTE_HOLD,
                amount=ZERO,
                pending_delta=ZERO,
                withdrawable_delta=ZERO,
                balance_after=wallet.withdrawable_balance,
                currency=wallet.currency,
                service_type=ServiceType.ONE_TIME,
                description=reason or f"Dispute opened for order {order_id}",
                related_order_id=order_id,
            )

        return await self._run(caregiver_id, operation, commit)

    # ==================== reads ====================

    async def has_sufficient_withdrawable_balance(
        self, caregiver_id: str, amount: AmountLike
    ) -> bool:
        """Read-only precheck; the debit itself re-checks under the lock"""
        wallet = await self.get_or_create_wallet(caregiver_id)
        return wallet.withdrawable_balance >= exact_amount(amount, wallet.currency)

    async def get_ledger_history(
        self, caregiver_id: str, limit: Optional[int] = None
    ) -> list[LedgerEntry]:
        return await self.ledger.history(caregiver_id, limit)

    async def reconcile(self, caregiver_id: str, *, fix: bool = False) -> ReconciliationReport:
        """
        Compare the stored wallet with figures recomputed from the ledger.

        With fix=True the wallet is overwritten with the ledger figures.
        """
        async def operation() -> ReconciliationReport:
            wallet = await self.get_or_create_wallet(caregiver_id, for_update=fix)
            totals = await self.ledger.totals(caregiver_id)
            report = ReconciliationReport(
                caregiver_id=caregiver_id,
                stored={
                    "pending_balance": wallet.pending_balance,
                    "withdrawable_balance": wallet.withdrawable_balance,
                    "total_earned": wallet.total_earned,
                    "total_withdrawn": wallet.total_withdrawn,
                },
                from_ledger=totals.as_dict(),
            )
            if report.in_sync:
                return report

            logger.error(
                "Wallet drifted from ledger",
                extra_data={
                    "caregiver_id": caregiver_id,
                    "drift": {k: str(v) for k, v in report.drift.items()},
                    "fix": fix,
                }
            )
            if fix:
                wallet.pending_balance = totals.pending_balance
                wallet.withdrawable_balance = totals.withdrawable_balance
                wallet.total_earned = totals.total_earned
                wallet.total_withdrawn = totals.total_withdrawn
                report.corrected = True
            return report

        return await self._run(caregiver_id, operation, commit=True)
