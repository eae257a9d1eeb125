"""
Earnings Service - one-time orders and the caregiver's pending funds

A paid one-time order lands in the caregiver's pending balance. It moves to
withdrawable when the client approves it, or automatically after
AUTO_RELEASE_DAYS unless a dispute hold was placed. Refunds of unreleased
orders come out of pending; refunds after release come out of withdrawable.
A release moves only what the order still holds, so after a partial refund
the rest is released and a fully refunded order releases nothing.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from care_billing.core.clock import utcnow
from care_billing.core.config import settings
from care_billing.core.exceptions import (
    AppException,
    ErrorCode,
    ForbiddenError,
    NotFoundException,
    ValidationException,
)
from care_billing.core.locks import WALLET, retry_on_conflict
from care_billing.core.logging import get_logger, log_async_operation
from care_billing.core.money import AmountLike, exact_amount
from care_billing.db.models.billing_record import BillingRecord, BillingRecordKind
from care_billing.db.models.ledger_entry import FundsReleaseReason, LedgerEntry, LedgerEntryKind
from care_billing.db.models.outbox_event import DomainEventType
from care_billing.db.models.wallet import CaregiverWallet
from care_billing.domain.schemas import Actor, OneTimeOrderRequest, OperationResult, WalletSummary
from care_billing.domain.services.billing_record_service import BillingRecordService
from care_billing.domain.services.outbox_service import OutboxService
from care_billing.domain.services.wallet_service import WalletService

logger = get_logger(__name__)

T = TypeVar("T")


class EarningsService:
    """Order-level money movement on top of the wallet"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.wallets = WalletService(db)
        self.billing_records = BillingRecordService(db)
        self.outbox = OutboxService(db)

    async def _unit(self, caregiver_id: str, operation: Callable[[], Awaitable[T]]) -> T:
        """One transaction; the wallet calls inside take the caregiver lock themselves"""
        async def attempt() -> T:
            result = await operation()
            await self.db.commit()
            return result

        try:
            return await retry_on_conflict(
                attempt, entity=WALLET, entity_id=caregiver_id, rollback=self.db.rollback
            )
        except AppException:
            await self.db.rollback()
            raise

    async def _order(self, order_id: str) -> tuple[BillingRecord, LedgerEntry]:
        record = await self.billing_records.require_by_order_id(order_id)
        if record.kind != BillingRecordKind.ONE_TIME:
            raise ValidationException(
                f"Order {order_id} belongs to a subscription", field="order_id"
            )
        received = await self.wallets.ledger.get_for_order(order_id, LedgerEntryKind.ORDER_RECEIVED)
        if received is None:
            raise NotFoundException("OrderReceived entry", order_id)
        return record, received

    async def _publish_release(self, entry: LedgerEntry) -> None:
        await self.outbox.publish(
            DomainEventType.FUNDS_RELEASED,
            entry.related_order_id,
            {
                "order_id": entry.related_order_id,
                "caregiver_id": entry.caregiver_id,
                "amount": str(entry.amount),
                "currency": entry.currency,
                "release_reason": entry.release_reason.value if entry.release_reason else None,
            },
        )

    # ==================== one-time orders ====================

    async def record_one_time_order(
        self, request: OneTimeOrderRequest
    ) -> tuple[BillingRecord, LedgerEntry]:
        """Billing record plus the caregiver's pending credit for the order fee. Replays return the originals."""
        existing = await self.billing_records.get_by_order_id(request.order_id)
        if existing is not None:
            entry = await self.wallets.ledger.get_for_order(
                request.order_id, LedgerEntryKind.ORDER_RECEIVED
            )
            if entry is not None:
                return existing, entry

        currency = request.currency or settings.DEFAULT_CURRENCY

        async def operation() -> tuple[BillingRecord, LedgerEntry]:
            record = existing or await self.billing_records.record_one_time_payment(
                order_id=request.order_id,
                client_id=request.client_id,
                caregiver_id=request.caregiver_id,
                gig_id=request.gig_id,
                amount_paid=exact_amount(request.amount_paid, currency, "amount_paid"),
                order_fee=exact_amount(request.order_fee, currency, "order_fee"),
                service_charge=exact_amount(request.service_charge, currency, "service_charge"),
                gateway_fees=exact_amount(request.gateway_fees, currency, "gateway_fees"),
                currency=currency,
                payment_transaction_id=request.payment_transaction_id,
            )
            entry = await self.wallets.credit_order_received(
                request.caregiver_id,
                record.order_fee,
                is_recurring=False,
                order_id=request.order_id,
                description=f"Payment received for order {request.order_id}",
                commit=False,
            )
            return record, entry

        record, entry = await self._unit(request.caregiver_id, operation)
        logger.info(
            "One-time order recorded",
            extra_data={
                "order_id": request.order_id,
                "caregiver_id": request.caregiver_id,
                "order_fee": str(record.order_fee),
            }
        )
        return record, entry

    async def release_order_funds(
        self, order_id: str, actor: Actor
    ) -> OperationResult:
        """Client approval: move what the order still holds from pending to withdrawable"""
        try:
            record, _ = await self._order(order_id)
            if not (actor.is_privileged or actor.user_id == record.client_id):
                raise ForbiddenError(actor.user_id, "release funds for", order_id)

            async def operation() -> LedgerEntry:
                return await self.wallets.release_pending_funds(
                    record.caregiver_id,
                    None,
                    order_id,
                    release_reason=FundsReleaseReason.CLIENT_APPROVED,
                    on_released=self._publish_release,
                    commit=False,
                )

            entry = await self._unit(record.caregiver_id, operation)
        except AppException as e:
            logger.info(
                "Funds release rejected",
                extra_data={"order_id": order_id, "error_code": e.error_code.value, "reason": e.message}
            )
            return OperationResult.rejected(e)

        return OperationResult.ok(details={"order_id": order_id, "ledger_entry_id": entry.id})

    async def refund_order(
        self,
        order_id: str,
        actor: Actor,
        amount: AmountLike | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> OperationResult:
        """
        Refund all or part of a one-time order's fee.

        Unreleased funds are taken from pending, released ones from
        withdrawable; either way an amount above the balance is rejected.
        """
        now = now or utcnow()
        try:
            record, received = await self._order(order_id)
            if not actor.is_privileged:
                raise ForbiddenError(actor.user_id, "refund", order_id)
            if record.refunded:
                raise ValidationException(f"Order {order_id} was already refunded", field="order_id")

            value = received.amount if amount is None else exact_amount(amount, record.currency)
            if value <= 0 or value > received.amount:
                raise ValidationException(
                    "Refund must be positive and at most the order fee",
                    field="amount",
                    error_code=ErrorCode.INVALID_AMOUNT,
                    details={"amount": str(value), "order_fee": str(received.amount)},
                )

            async def operation() -> LedgerEntry:
                released = await self.wallets.ledger.exists(order_id, LedgerEntryKind.FUNDS_RELEASED)
                entry = await self.wallets.debit_refund(
                    record.caregiver_id,
                    value,
                    order_id=order_id,
                    from_pending=not released,
                    description=reason or f"Refund for order {order_id}",
                    commit=False,
                )
                await self.billing_records.mark_refunded(order_id, value, now)
                return entry

            entry = await self._unit(record.caregiver_id, operation)
        except AppException as e:
            logger.info(
                "Order refund rejected",
                extra_data={"order_id": order_id, "error_code": e.error_code.value, "reason": e.message}
            )
            return OperationResult.rejected(e)

        logger.info(
            "Order refunded",
            extra_data={"order_id": order_id, "amount": str(value), "caregiver_id": record.caregiver_id}
        )
        return OperationResult.ok(
            refund_amount=value, details={"order_id": order_id, "ledger_entry_id": entry.id}
        )

    async def dispute_order(
        self,
        order_id: str,
        actor: Actor,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> OperationResult:
        """Place a dispute hold that blocks any release of the order's funds"""
        now = now or utcnow()
        try:
            record, _ = await self._order(order_id)
            if not (actor.is_privileged or actor.user_id == record.client_id):
                raise ForbiddenError(actor.user_id, "dispute", order_id)

            async def operation() -> LedgerEntry:
                if await self.wallets.ledger.exists(order_id, LedgerEntryKind.FUNDS_RELEASED):
                    raise ValidationException(
                        f"Funds for order {order_id} were already released", field="order_id"
                    )
                entry = await self.wallets.place_dispute_hold(
                    record.caregiver_id, order_id, reason=reason, commit=False
                )
                await self.billing_records.mark_disputed(order_id, reason, now)
                return entry

            entry = await self._unit(record.caregiver_id, operation)
        except AppException as e:
            logger.info(
                "Dispute rejected",
                extra_data={"order_id": order_id, "error_code": e.error_code.value, "reason": e.message}
            )
            return OperationResult.rejected(e)

        logger.warning(
            "Order disputed, funds on hold",
            extra_data={"order_id": order_id, "caregiver_id": record.caregiver_id, "reason": reason}
        )
        return OperationResult.ok(details={"order_id": order_id, "ledger_entry_id": entry.id})

    # ==================== sweeps ====================

    async def _auto_release(self, caregiver_id: str, order_id: str) -> LedgerEntry:
        async def operation() -> LedgerEntry:
            return await self.wallets.release_pending_funds(
                caregiver_id,
                None,
                order_id,
                release_reason=FundsReleaseReason.AUTO_RELEASED,
                on_released=self._publish_release,
                commit=False,
            )

        return await self._unit(caregiver_id, operation)

    @log_async_operation("auto_release_sweep")
    async def auto_release_sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Release one-time order funds still pending after AUTO_RELEASE_DAYS"""
        now = now or utcnow()
        cutoff = now - timedelta(days=settings.AUTO_RELEASE_DAYS)
        candidates = [
            (entry.caregiver_id, entry.related_order_id)
            for entry in await self.wallets.ledger.pending_one_time_orders(cutoff)
        ]
        released = skipped = errors = 0

        for caregiver_id, order_id in candidates:
            try:
                await self._auto_release(caregiver_id, order_id)
                released += 1
            except AppException as e:
                skipped += 1
                logger.warning(
                    "Auto-release skipped",
                    extra_data={"order_id": order_id, "error_code": e.error_code.value, "reason": e.message}
                )
            except Exception as e:
                await self.db.rollback()
                errors += 1
                logger.error(
                    "Error auto-releasing order funds",
                    extra_data={"order_id": order_id, "error": str(e)},
                    exc_info=True,
                )

        summary = {"processed": len(candidates), "released": released, "skipped": skipped, "errors": errors}
        logger.info("Auto-release sweep finished", extra_data=summary)
        return summary

    @log_async_operation("wallet_reconciliation")
    async def reconcile_all_wallets(self, fix: bool = False) -> dict[str, Any]:
        """Reconcile every wallet against the ledger; drift is logged at error level"""
        result = await self.db.execute(select(CaregiverWallet.caregiver_id))
        caregiver_ids = set(result.scalars().all()) | set(await self.wallets.ledger.caregiver_ids())
        drifted: list[str] = []

        for caregiver_id in sorted(caregiver_ids):
            report = await self.wallets.reconcile(caregiver_id, fix=fix)
            if not report.in_sync:
                drifted.append(caregiver_id)

        summary = {"checked": len(caregiver_ids), "drifted": len(drifted), "caregiver_ids": drifted, "fixed": fix}
        logger.info("Wallet reconciliation finished", extra_data=summary)
        return summary

    # ==================== reads ====================

    async def get_wallet_summary(self, caregiver_id: str) -> WalletSummary:
        wallet = await self.wallets.get_or_create_wallet(caregiver_id)
        await self.db.commit()
        return WalletSummary.model_validate(wallet)
