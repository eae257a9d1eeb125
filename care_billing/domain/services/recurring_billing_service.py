"""
Recurring Billing Service - charges due subscriptions

A charge runs in three steps so the subscription lock is never held across
the gateway round trip:

1. under the lock: mark the charge in flight and get-or-create the
   ChargeAttempt for (subscription, cycle)
2. without the lock: charge the saved token with the attempt's idempotency key
3. under the lock: record the success (billing record, caregiver credit,
   next period) or the failure (retry backoff, termination when exhausted)

While the in-flight marker is fresh every other mutation of the subscription
is rejected with ChargeInProgressError. A gateway webhook for the same key
may land before step 3; whichever side applies the success first wins and the
other becomes a no-op.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from care_billing.core.backoff import next_attempt_at
from care_billing.core.clock import utcnow
from care_billing.core.config import settings
from care_billing.core.exceptions import AppException, ErrorCode, ValidationException
from care_billing.core.locks import SUBSCRIPTION, retry_on_conflict, subscription_lock
from care_billing.core.logging import get_logger, log_async_operation, log_context
from care_billing.core.money import Money, exact_amount
from care_billing.db.models.charge_attempt import (
    ChargeAttempt,
    ChargeAttemptStatus,
    build_idempotency_key,
)
from care_billing.db.models.ledger_entry import FundsReleaseReason
from care_billing.db.models.outbox_event import DomainEventType
from care_billing.db.models.subscription import (
    Subscription,
    SubscriptionStatus,
    TerminationReason,
)
from care_billing.domain.gateway import ChargeResult, PaymentGateway, get_payment_gateway
from care_billing.domain.gateway.flutterwave import charge_with_timeout
from care_billing.domain.schemas import GatewayWebhookPayload
from care_billing.domain.services.billing_record_service import BillingRecordService, cycle_order_id
from care_billing.domain.services.outbox_service import OutboxService
from care_billing.domain.services.subscription_service import (
    SubscriptionService,
    apply_pending_plan,
    charge_in_flight,
    mark_terminated,
    start_period,
)
from care_billing.domain.services.wallet_service import WalletService
from care_billing.state_machine.subscription_states import SubscriptionAction, apply_transition

logger = get_logger(__name__)

SYSTEM_ACTOR_ID = "system"


class ChargeOutcomeStatus(str, enum.Enum):
    CHARGED = "charged"
    FAILED = "failed"
    TERMINATED = "terminated"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ChargeOutcome:
    subscription_id: str
    status: ChargeOutcomeStatus
    billing_cycle_number: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class SweepSummary:
    processed: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    errors: int = 0

    def add(self, key: str) -> None:
        self.counts[key] = self.counts.get(key, 0) + 1

    def as_dict(self) -> dict[str, Any]:
        return {"processed": self.processed, "errors": self.errors, **self.counts}


@dataclass(frozen=True)
class _PreparedCharge:
    attempt_id: int
    billing_cycle_number: int
    idempotency_key: str
    token: Optional[str]
    email: Optional[str]
    amount: Decimal
    currency: str
    already_succeeded: bool
    gateway_transaction_id: Optional[str]


class RecurringBillingService:
    """Scheduler-side operations: find due work, charge, finalize, reconcile webhooks"""

    def __init__(self, db: AsyncSession, gateway: PaymentGateway | None = None):
        self.db = db
        self._gateway = gateway
        self.wallets = WalletService(db)
        self.billing_records = BillingRecordService(db)
        self.outbox = OutboxService(db)

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    # ==================== due queries ====================

    async def due_for_billing(
        self, now: datetime | None = None, limit: int | None = None
    ) -> List[Subscription]:
        """ACTIVE subscriptions whose next charge date has passed and no fresh charge is in flight"""
        now = now or utcnow()
        stale_before = now - timedelta(seconds=settings.CHARGE_IN_PROGRESS_TIMEOUT_SECONDS)
        query = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.auto_renew.is_(True),
                Subscription.next_charge_date.is_not(None),
                Subscription.next_charge_date <= now,
                or_(
                    Subscription.charge_in_progress_since.is_(None),
                    Subscription.charge_in_progress_since <= stale_before,
                ),
            )
            .order_by(Subscription.next_charge_date, Subscription.id)
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def due_for_final_cancellation(self, now: datetime | None = None) -> List[Subscription]:
        now = now or utcnow()
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.PENDING_CANCELLATION,
                Subscription.current_period_end.is_not(None),
                Subscription.current_period_end <= now,
            )
            .order_by(Subscription.current_period_end, Subscription.id)
        )
        return list(result.scalars().all())

    # ==================== loading ====================

    async def _load_subscription(self, subscription_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _load_attempt(self, attempt_id: int) -> ChargeAttempt:
        result = await self.db.execute(
            select(ChargeAttempt)
            .where(ChargeAttempt.id == attempt_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def get_attempt(self, subscription_id: str, billing_cycle_number: int) -> Optional[ChargeAttempt]:
        result = await self.db.execute(
            select(ChargeAttempt).where(
                ChargeAttempt.subscription_id == subscription_id,
                ChargeAttempt.billing_cycle_number == billing_cycle_number,
            )
        )
        return result.scalar_one_or_none()

    # ==================== charging ====================

    async def _prepare(self, subscription_id: str, now: datetime) -> _PreparedCharge | ChargeOutcome:
        async def attempt() -> _PreparedCharge | ChargeOutcome:
            async with subscription_lock(subscription_id):
                subscription = await self._load_subscription(subscription_id)
                if subscription is None:
                    return ChargeOutcome(subscription_id, ChargeOutcomeStatus.SKIPPED, reason="not found")
                if (
                    subscription.status != SubscriptionStatus.ACTIVE
                    or subscription.next_charge_date is None
                    or subscription.next_charge_date > now
                ):
                    return ChargeOutcome(subscription_id, ChargeOutcomeStatus.SKIPPED, reason="not due")
                if charge_in_flight(subscription, now):
                    return ChargeOutcome(
                        subscription_id, ChargeOutcomeStatus.SKIPPED, reason="charge in progress"
                    )

                cycle = subscription.billing_cycles_completed + 1
                # the charge that opens the next period already uses a scheduled plan
                amount = (
                    subscription.pending_price_per_cycle
                    if subscription.has_pending_plan_change
                    else subscription.price_per_cycle
                )

                charge_attempt = await self.get_attempt(subscription_id, cycle)
                if charge_attempt is None:
                    charge_attempt = ChargeAttempt(
                        subscription_id=subscription_id,
                        billing_cycle_number=cycle,
                        idempotency_key=build_idempotency_key(subscription_id, cycle),
                        amount=amount,
                        currency=subscription.currency,
                        status=ChargeAttemptStatus.PENDING,
                        attempt_count=0,
                        created_at=now,
                    )
                    self.db.add(charge_attempt)

                already_succeeded = charge_attempt.status == ChargeAttemptStatus.SUCCEEDED
                if not already_succeeded:
                    charge_attempt.status = ChargeAttemptStatus.PENDING
                    charge_attempt.attempt_count = (charge_attempt.attempt_count or 0) + 1
                    charge_attempt.last_attempted_at = now
                subscription.charge_in_progress_since = now
                await self.db.commit()

                return _PreparedCharge(
                    attempt_id=charge_attempt.id,
                    billing_cycle_number=cycle,
                    idempotency_key=charge_attempt.idempotency_key,
                    token=subscription.payment_token,
                    email=subscription.email,
                    amount=charge_attempt.amount,
                    currency=charge_attempt.currency,
                    already_succeeded=already_succeeded,
                    gateway_transaction_id=charge_attempt.gateway_transaction_id,
                )

        return await retry_on_conflict(
            attempt, entity=SUBSCRIPTION, entity_id=subscription_id, rollback=self.db.rollback
        )

    async def _call_gateway(self, prepared: _PreparedCharge, subscription_id: str) -> ChargeResult:
        """Gateway errors and timeouts become failed results; they never escape"""
        if prepared.already_succeeded:
            return ChargeResult.succeeded(prepared.gateway_transaction_id or prepared.idempotency_key)
        if not prepared.token:
            return ChargeResult.failed("no payment token on file")

        try:
            return await charge_with_timeout(
                self.gateway,
                prepared.token,
                Money(prepared.amount, prepared.currency),
                prepared.idempotency_key,
                email=prepared.email,
                timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
            )
        except AppException as e:
            logger.warning(
                "Gateway charge did not complete",
                extra_data={
                    "subscription_id": subscription_id,
                    "idempotency_key": prepared.idempotency_key,
                    "error_code": e.error_code.value,
                    "error": e.message,
                }
            )
            return ChargeResult.failed(e.message)

    async def charge_subscription(
        self, subscription_id: str, now: datetime | None = None
    ) -> ChargeOutcome:
        """Attempt exactly one charge for the subscription's next cycle"""
        now = now or utcnow()
        with log_context(subscription_id=subscription_id):
            prepared = await self._prepare(subscription_id, now)
            if isinstance(prepared, ChargeOutcome):
                logger.info(
                    "Subscription not charged",
                    extra_data={"subscription_id": subscription_id, "reason": prepared.reason}
                )
                return prepared

            logger.info(
                "Charging subscription",
                extra_data={
                    "subscription_id": subscription_id,
                    "billing_cycle_number": prepared.billing_cycle_number,
                    "amount": prepared.amount,
                    "idempotency_key": prepared.idempotency_key,
                }
            )
            result = await self._call_gateway(prepared, subscription_id)
            return await self._complete(subscription_id, prepared, result, now)

    async def _complete(
        self,
        subscription_id: str,
        prepared: _PreparedCharge,
        result: ChargeResult,
        now: datetime,
    ) -> ChargeOutcome:
        async def attempt() -> ChargeOutcome:
            async with subscription_lock(subscription_id):
                subscription = await self._load_subscription(subscription_id)
                charge_attempt = await self._load_attempt(prepared.attempt_id)

                if result.success or charge_attempt.status == ChargeAttemptStatus.SUCCEEDED:
                    transaction_id = result.gateway_transaction_id or charge_attempt.gateway_transaction_id
                    await self._apply_success(subscription, charge_attempt, transaction_id, now)
                    outcome = ChargeOutcome(
                        subscription_id, ChargeOutcomeStatus.CHARGED, prepared.billing_cycle_number
                    )
                else:
                    terminated = await self._apply_failure(
                        subscription, charge_attempt, result.failure_reason or "charge declined", now
                    )
                    outcome = ChargeOutcome(
                        subscription_id,
                        ChargeOutcomeStatus.TERMINATED if terminated else ChargeOutcomeStatus.FAILED,
                        prepared.billing_cycle_number,
                        result.failure_reason,
                    )
                await self.db.commit()
                return outcome

        return await retry_on_conflict(
            attempt, entity=SUBSCRIPTION, entity_id=subscription_id, rollback=self.db.rollback
        )

    async def _apply_success(
        self,
        subscription: Subscription,
        charge_attempt: ChargeAttempt,
        gateway_transaction_id: str | None,
        now: datetime,
    ) -> None:
        charge_attempt.status = ChargeAttemptStatus.SUCCEEDED
        charge_attempt.gateway_transaction_id = gateway_transaction_id
        charge_attempt.failure_reason = None
        charge_attempt.completed_at = charge_attempt.completed_at or now
        subscription.charge_in_progress_since = None

        cycle = charge_attempt.billing_cycle_number
        if subscription.billing_cycles_completed >= cycle:
            logger.info(
                "Cycle already recorded, skipping",
                extra_data={"subscription_id": subscription.id, "billing_cycle_number": cycle}
            )
            return

        was_active = subscription.status == SubscriptionStatus.ACTIVE
        if was_active:
            apply_transition(subscription, SubscriptionAction.CHARGE_SUCCEEDED)
            apply_pending_plan(subscription)
            start_period(subscription, subscription.current_period_end or now)
        else:
            # money was taken after the subscription left ACTIVE; record it, leave the lifecycle alone
            logger.error(
                "Charge succeeded for a subscription that is no longer active",
                extra_data={
                    "subscription_id": subscription.id,
                    "status": subscription.status.value,
                    "billing_cycle_number": cycle,
                }
            )

        subscription.billing_cycles_completed = cycle
        subscription.consecutive_failed_charges = 0
        subscription.last_failure_reason = None
        subscription.last_charged_at = now

        await self.billing_records.record_subscription_cycle(
            subscription,
            billing_cycle_number=cycle,
            payment_transaction_id=gateway_transaction_id,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            next_charge_date=subscription.next_charge_date,
            amount_paid=charge_attempt.amount,
        )
        await self.wallets.credit_recurring_cycle(
            subscription.caregiver_id,
            subscription.caregiver_amount,
            order_id=cycle_order_id(subscription, cycle),
            subscription_id=subscription.id,
            billing_cycle_number=cycle,
            contract_id=subscription.contract_id,
            release_reason=FundsReleaseReason.RECURRING_PAYMENT,
            commit=False,
        )
        await self.outbox.publish_for_subscription(
            DomainEventType.CHARGE_SUCCEEDED,
            subscription,
            billing_cycle_number=cycle,
            amount=charge_attempt.amount,
            gateway_transaction_id=gateway_transaction_id,
            next_charge_date=subscription.next_charge_date,
        )
        logger.info(
            "Recurring charge succeeded",
            extra_data={
                "subscription_id": subscription.id,
                "billing_cycle_number": cycle,
                "amount": charge_attempt.amount,
                "next_charge_date": subscription.next_charge_date,
            }
        )

    async def _apply_failure(
        self,
        subscription: Subscription,
        charge_attempt: ChargeAttempt,
        reason: str,
        now: datetime,
    ) -> bool:
        """Count the failure. Returns True when it exhausted the retries and terminated."""
        charge_attempt.status = ChargeAttemptStatus.FAILED
        charge_attempt.failure_reason = reason[:500]
        subscription.charge_in_progress_since = None

        if subscription.status != SubscriptionStatus.ACTIVE:
            return False

        subscription.consecutive_failed_charges = (subscription.consecutive_failed_charges or 0) + 1
        subscription.last_failure_reason = reason[:500]
        subscription.last_failed_charge_at = now
        failures = subscription.consecutive_failed_charges

        if failures >= settings.MAX_CHARGE_RETRIES:
            mark_terminated(
                subscription,
                SubscriptionAction.CHARGE_FAILURES_EXHAUSTED,
                reason=TerminationReason.PAYMENT_FAILURE_EXHAUSTED,
                now=now,
                terminated_by=SYSTEM_ACTOR_ID,
                note=reason[:500],
            )
            await self.outbox.publish_for_subscription(
                DomainEventType.CHARGE_FAILED,
                subscription,
                billing_cycle_number=charge_attempt.billing_cycle_number,
                failure_reason=reason,
                consecutive_failed_charges=failures,
                final=True,
            )
            await self.outbox.publish_for_subscription(
                DomainEventType.SUBSCRIPTION_TERMINATED,
                subscription,
                reason=TerminationReason.PAYMENT_FAILURE_EXHAUSTED.value,
            )
            logger.warning(
                "Subscription terminated after repeated charge failures",
                extra_data={
                    "subscription_id": subscription.id,
                    "consecutive_failed_charges": failures,
                    "last_failure_reason": reason,
                }
            )
            return True

        apply_transition(subscription, SubscriptionAction.CHARGE_FAILED)
        # first retry waits the base delay, later ones double it
        subscription.next_charge_date = next_attempt_at(
            now,
            failures - 1,
            base_seconds=settings.CHARGE_RETRY_BASE_SECONDS,
            max_backoff_seconds=settings.CHARGE_RETRY_MAX_BACKOFF_SECONDS,
        )
        await self.outbox.publish_for_subscription(
            DomainEventType.CHARGE_FAILED,
            subscription,
            billing_cycle_number=charge_attempt.billing_cycle_number,
            failure_reason=reason,
            consecutive_failed_charges=failures,
            next_retry_at=subscription.next_charge_date,
            final=False,
        )
        logger.warning(
            "Recurring charge failed",
            extra_data={
                "subscription_id": subscription.id,
                "consecutive_failed_charges": failures,
                "failure_reason": reason,
                "next_charge_date": subscription.next_charge_date,
            }
        )
        return False

    # ==================== sweeps ====================

    @log_async_operation("billing_sweep")
    async def run_billing_sweep(
        self, now: datetime | None = None, limit: int | None = None
    ) -> dict[str, Any]:
        """Charge every due subscription once. One subscription's failure never stops the sweep."""
        now = now or utcnow()
        subscription_ids = [s.id for s in await self.due_for_billing(now, limit)]
        summary = SweepSummary()

        for subscription_id in subscription_ids:
            summary.processed += 1
            try:
                outcome = await self.charge_subscription(subscription_id, now)
                summary.add(outcome.status.value)
            except Exception as e:
                await self.db.rollback()
                summary.errors += 1
                logger.error(
                    "Error charging subscription",
                    extra_data={"subscription_id": subscription_id, "error": str(e)},
                    exc_info=True,
                )

        logger.info("Billing sweep finished", extra_data=summary.as_dict())
        return summary.as_dict()

    @log_async_operation("cancellation_sweep")
    async def finalize_cancellations_sweep(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        subscription_ids = [s.id for s in await self.due_for_final_cancellation(now)]
        subscriptions = SubscriptionService(self.db, gateway=self._gateway)
        summary = SweepSummary()

        for subscription_id in subscription_ids:
            summary.processed += 1
            try:
                await subscriptions.finalize_cancellation(subscription_id, now)
                summary.add("cancelled")
            except AppException as e:
                summary.errors += 1
                logger.warning(
                    "Subscription could not be finalized",
                    extra_data={
                        "subscription_id": subscription_id,
                        "error_code": e.error_code.value,
                        "error": e.message,
                    }
                )
            except Exception as e:
                await self.db.rollback()
                summary.errors += 1
                logger.error(
                    "Error finalizing cancellation",
                    extra_data={"subscription_id": subscription_id, "error": str(e)},
                    exc_info=True,
                )

        logger.info("Cancellation sweep finished", extra_data=summary.as_dict())
        return summary.as_dict()

    # ==================== webhook reconciliation ====================

    async def reconcile_charge_webhook(
        self,
        payload: GatewayWebhookPayload | dict[str, Any],
        now: datetime | None = None,
    ) -> Optional[ChargeAttempt]:
        """
        Apply a gateway charge callback to the attempt with the same key.

        A success the scheduler recorded as a failure (typically a timeout)
        is applied now, exactly once. Failure callbacks only annotate the
        attempt; the scheduler owns failure counting.
        """
        now = now or utcnow()
        if not isinstance(payload, GatewayWebhookPayload):
            payload = GatewayWebhookPayload.model_validate(payload)
        data = payload.data

        result = await self.db.execute(
            select(ChargeAttempt).where(ChargeAttempt.idempotency_key == data.tx_ref)
        )
        charge_attempt = result.scalar_one_or_none()
        if charge_attempt is None:
            logger.warning(
                "Webhook for unknown charge reference",
                extra_data={"tx_ref": data.tx_ref, "status": data.status}
            )
            return None

        subscription_id = charge_attempt.subscription_id
        attempt_id = charge_attempt.id

        async def attempt() -> ChargeAttempt:
            async with subscription_lock(subscription_id):
                subscription = await self._load_subscription(subscription_id)
                locked_attempt = await self._load_attempt(attempt_id)

                if not data.is_successful:
                    if locked_attempt.status == ChargeAttemptStatus.FAILED:
                        locked_attempt.failure_reason = (
                            data.processor_response or locked_attempt.failure_reason
                        )
                    logger.info(
                        "Failed charge webhook recorded",
                        extra_data={"tx_ref": data.tx_ref, "attempt_status": locked_attempt.status.value}
                    )
                    await self.db.commit()
                    return locked_attempt

                if data.amount is not None:
                    paid = exact_amount(data.amount, locked_attempt.currency)
                    if paid != locked_attempt.amount:
                        raise ValidationException(
                            "Webhook amount does not match the charge attempt",
                            field="amount",
                            error_code=ErrorCode.INVALID_AMOUNT,
                            details={
                                "tx_ref": data.tx_ref,
                                "expected": str(locked_attempt.amount),
                                "received": str(paid),
                            },
                        )

                was_failed = locked_attempt.status == ChargeAttemptStatus.FAILED
                await self._apply_success(subscription, locked_attempt, str(data.id), now)
                if was_failed and subscription.status == SubscriptionStatus.ACTIVE:
                    logger.warning(
                        "Charge recorded as failed was confirmed by webhook",
                        extra_data={"tx_ref": data.tx_ref, "subscription_id": subscription_id}
                    )
                await self.db.commit()
                return locked_attempt

        try:
            return await retry_on_conflict(
                attempt, entity=SUBSCRIPTION, entity_id=subscription_id, rollback=self.db.rollback
            )
        except AppException:
            await self.db.rollback()
            raise
