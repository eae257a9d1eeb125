"""
Subscription Service - Recurring Service Agreements

Every mutation runs under the subscription's lock, loads the row FOR UPDATE,
validates the lifecycle move, applies it and queues its domain event in the
same transaction. Wallet postings (activation credit, termination refund)
take the caregiver's wallet lock inside the subscription lock, never the
other way round.

Client-initiated operations return OperationResult; system operations
(create, activate, finalize_cancellation) raise typed errors.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from care_billing.core.clock import utcnow
from care_billing.core.config import settings
from care_billing.core.exceptions import (
    AppException,
    ChargeInProgressError,
    ErrorCode,
    ForbiddenError,
    InvalidStateTransitionError,
    SubscriptionNotFoundError,
    ValidationException,
)
from care_billing.core.locks import SUBSCRIPTION, retry_on_conflict, subscription_lock
from care_billing.core.logging import get_logger
from care_billing.core.money import Money, exact_amount
from care_billing.db.models.ledger_entry import FundsReleaseReason
from care_billing.db.models.outbox_event import DomainEventType
from care_billing.db.models.plan_change import PlanChangeRecord
from care_billing.db.models.subscription import (
    BillingCycle,
    Subscription,
    SubscriptionStatus,
    TerminationReason,
)
from care_billing.domain.gateway import PaymentGateway, get_payment_gateway
from care_billing.domain.schemas import (
    Actor,
    ActorRole,
    ChangePlanRequest,
    ClientSubscriptionSummary,
    CreateSubscriptionRequest,
    InitialPayment,
    OperationResult,
    SubscriptionAnalytics,
)
from care_billing.domain.services.billing_record_service import BillingRecordService, cycle_order_id
from care_billing.domain.services.outbox_service import OutboxService
from care_billing.domain.services.pricing import (
    PriceBreakdown,
    calculate_price_breakdown,
    calculate_prorated_refund,
    classify_plan_change,
)
from care_billing.domain.services.wallet_service import WalletService
from care_billing.state_machine.subscription_states import (
    NON_TERMINAL_STATES,
    SubscriptionAction,
    apply_transition,
    target_state,
)

logger = get_logger(__name__)

# Statuses that still count as an agreement the client is paying for
OPEN_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PENDING_CANCELLATION,
)


def charge_in_flight(subscription: Subscription, now: datetime) -> bool:
    """True while a charge marker exists and is younger than the staleness window"""
    started = subscription.charge_in_progress_since
    if started is None:
        return False
    return now - started < timedelta(seconds=settings.CHARGE_IN_PROGRESS_TIMEOUT_SECONDS)


def apply_price_breakdown(subscription: Subscription, breakdown: PriceBreakdown) -> None:
    subscription.billing_cycle = breakdown.billing_cycle
    subscription.frequency_per_week = breakdown.frequency_per_week
    subscription.price_per_visit = breakdown.price_per_visit.amount
    subscription.price_per_cycle = breakdown.total.amount
    subscription.caregiver_amount = breakdown.order_fee.amount
    subscription.service_charge = breakdown.service_charge.amount
    subscription.gateway_fees = breakdown.gateway_fees.amount


def apply_pending_plan(subscription: Subscription) -> bool:
    """Promote a scheduled plan change at a cycle boundary. Returns False when none is pending."""
    if not subscription.has_pending_plan_change:
        return False
    subscription.billing_cycle = subscription.pending_billing_cycle
    subscription.frequency_per_week = subscription.pending_frequency_per_week
    subscription.price_per_visit = subscription.pending_price_per_visit
    subscription.price_per_cycle = subscription.pending_price_per_cycle
    subscription.caregiver_amount = subscription.pending_caregiver_amount
    subscription.service_charge = subscription.pending_service_charge
    subscription.gateway_fees = subscription.pending_gateway_fees
    clear_pending_plan(subscription)
    return True


def clear_pending_plan(subscription: Subscription) -> None:
    subscription.pending_billing_cycle = None
    subscription.pending_frequency_per_week = None
    subscription.pending_price_per_visit = None
    subscription.pending_price_per_cycle = None
    subscription.pending_caregiver_amount = None
    subscription.pending_service_charge = None
    subscription.pending_gateway_fees = None
    subscription.pending_plan_change_id = None


def mark_terminated(
    subscription: Subscription,
    action: SubscriptionAction,
    *,
    reason: TerminationReason,
    now: datetime,
    terminated_by: str,
    note: str | None = None,
) -> None:
    """Terminal bookkeeping shared by every path into TERMINATED"""
    apply_transition(subscription, action)
    subscription.terminated_at = now
    subscription.termination_reason = reason
    subscription.termination_note = note
    subscription.terminated_by = terminated_by
    subscription.auto_renew = False
    subscription.next_charge_date = None
    subscription.charge_in_progress_since = None
    clear_pending_plan(subscription)


def start_period(subscription: Subscription, start: datetime) -> None:
    subscription.current_period_start = start
    subscription.current_period_end = start + timedelta(days=subscription.billing_cycle.days)
    subscription.next_charge_date = subscription.current_period_end


def _default_termination_reason(actor: Actor) -> TerminationReason:
    if actor.role == ActorRole.CLIENT:
        return TerminationReason.CLIENT_REQUEST
    if actor.role == ActorRole.CAREGIVER:
        return TerminationReason.CAREGIVER_REQUEST
    return TerminationReason.ADMIN_ACTION


class SubscriptionService:
    """Lifecycle operations and queries for subscriptions"""

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

    # ==================== loading ====================

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def require_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def _load_for_update(self, subscription_id: str) -> Subscription:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def get_by_order_id(self, order_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.order_id == order_id)
        )
        return result.scalar_one_or_none()

    # ==================== authorization ====================

    @staticmethod
    def _require_client(subscription: Subscription, actor: Actor, action: str) -> None:
        if actor.is_privileged or actor.user_id == subscription.client_id:
            return
        raise ForbiddenError(actor.user_id, action, subscription.id)

    @staticmethod
    def _require_party(subscription: Subscription, actor: Actor, action: str) -> None:
        if actor.is_privileged or actor.user_id in (subscription.client_id, subscription.caregiver_id):
            return
        raise ForbiddenError(actor.user_id, action, subscription.id)

    @staticmethod
    def _require_system(subscription: Subscription, actor: Actor, action: str) -> None:
        if actor.is_privileged:
            return
        raise ForbiddenError(actor.user_id, action, subscription.id)

    # ==================== mutation plumbing ====================

    async def _locked(
        self,
        subscription_id: str,
        actor: Actor,
        action: str,
        check: Callable[[Subscription, Actor, str], None],
        operation: Callable[[Subscription], Awaitable[Optional[dict[str, Any]]]],
        now: datetime,
    ) -> tuple[Subscription, dict[str, Any]]:
        async def attempt() -> tuple[Subscription, dict[str, Any]]:
            async with subscription_lock(subscription_id):
                subscription = await self._load_for_update(subscription_id)
                check(subscription, actor, action)
                if charge_in_flight(subscription, now):
                    raise ChargeInProgressError(subscription_id)
                extra = await operation(subscription) or {}
                await self.db.commit()
                await self.db.refresh(subscription)
                return subscription, extra

        return await retry_on_conflict(
            attempt, entity=SUBSCRIPTION, entity_id=subscription_id, rollback=self.db.rollback
        )

    async def _client_operation(
        self,
        subscription_id: str,
        actor: Actor,
        action: str,
        check: Callable[[Subscription, Actor, str], None],
        operation: Callable[[Subscription], Awaitable[Optional[dict[str, Any]]]],
        now: datetime,
    ) -> OperationResult:
        """Run a client-facing mutation, turning every typed failure into a rejected result"""
        try:
            subscription, extra = await self._locked(
                subscription_id, actor, action, check, operation, now
            )
        except AppException as e:
            await self.db.rollback()
            logger.info(
                "Subscription operation rejected",
                extra_data={
                    "subscription_id": subscription_id,
                    "action": action,
                    "user_id": actor.user_id,
                    "error_code": e.error_code.value,
                    "reason": e.message,
                }
            )
            return OperationResult.rejected(e, await self.get_subscription(subscription_id))

        logger.info(
            "Subscription operation applied",
            extra_data={
                "subscription_id": subscription_id,
                "action": action,
                "user_id": actor.user_id,
                "status": subscription.status.value,
            }
        )
        return OperationResult.ok(subscription, **extra)

    # ==================== creation & activation ====================

    async def create_subscription(
        self, request: CreateSubscriptionRequest, now: datetime | None = None
    ) -> Subscription:
        """
        Create a subscription in PENDING_ACTIVATION from a verified order.

        One open subscription per client and gig; the originating order can
        only back one subscription.
        """
        now = now or utcnow()
        if await self.get_by_order_id(request.order_id) is not None:
            raise ValidationException(
                f"A subscription already exists for order {request.order_id}",
                field="order_id",
                error_code=ErrorCode.ALREADY_EXISTS,
            )

        result = await self.db.execute(
            select(Subscription.id).where(
                Subscription.client_id == request.client_id,
                Subscription.gig_id == request.gig_id,
                Subscription.status.in_(list(NON_TERMINAL_STATES)),
            )
        )
        if result.first() is not None:
            raise ValidationException(
                "An open subscription already exists for this service",
                field="gig_id",
                error_code=ErrorCode.ALREADY_EXISTS,
                details={"client_id": request.client_id, "gig_id": request.gig_id},
            )

        breakdown = calculate_price_breakdown(
            request.price_per_visit,
            request.billing_cycle,
            request.frequency_per_week,
            request.currency or settings.DEFAULT_CURRENCY,
        )
        subscription = Subscription(
            client_id=request.client_id,
            caregiver_id=request.caregiver_id,
            gig_id=request.gig_id,
            order_id=request.order_id,
            contract_id=request.contract_id,
            email=request.email,
            status=SubscriptionStatus.PENDING_ACTIVATION,
            currency=breakdown.total.currency,
            billing_cycles_completed=0,
            consecutive_failed_charges=0,
            auto_renew=True,
            cancel_at_period_end=False,
            created_at=now,
        )
        apply_price_breakdown(subscription, breakdown)
        self.db.add(subscription)
        await self.db.commit()
        await self.db.refresh(subscription)

        logger.info(
            "Subscription created",
            extra_data={
                "subscription_id": subscription.id,
                "client_id": subscription.client_id,
                "caregiver_id": subscription.caregiver_id,
                "billing_cycle": subscription.billing_cycle.value,
                "price_per_cycle": str(subscription.price_per_cycle),
            }
        )
        return subscription

    async def activate(
        self,
        subscription_id: str,
        payment: InitialPayment,
        now: datetime | None = None,
    ) -> Subscription:
        """
        PENDING_ACTIVATION -> ACTIVE after the first payment.

        Starts period 1, writes its billing record and credits the caregiver
        (earned and immediately withdrawable). Replaying the same payment
        returns the subscription unchanged.
        """
        now = now or utcnow()

        async def attempt() -> Subscription:
            async with subscription_lock(subscription_id):
                subscription = await self._load_for_update(subscription_id)

                first = await self.billing_records.get_for_cycle(subscription_id, 1)
                if first is not None and first.payment_transaction_id == payment.transaction_id:
                    logger.info(
                        "Initial payment already applied, skipping",
                        extra_data={"subscription_id": subscription_id, "transaction_id": payment.transaction_id}
                    )
                    return subscription

                target_state(SubscriptionAction.ACTIVATE, SubscriptionStatus(subscription.status))
                amount_paid = exact_amount(payment.amount_paid, subscription.currency, "amount_paid")
                if amount_paid < subscription.price_per_cycle:
                    raise ValidationException(
                        "Initial payment is below the price per cycle",
                        field="amount_paid",
                        error_code=ErrorCode.INVALID_AMOUNT,
                        details={
                            "amount_paid": str(amount_paid),
                            "price_per_cycle": str(subscription.price_per_cycle),
                        },
                    )
                if not payment.payment_token:
                    raise ValidationException(
                        "A reusable payment token is required for recurring billing",
                        field="payment_token",
                    )

                apply_transition(subscription, SubscriptionAction.ACTIVATE)
                start_period(subscription, now)
                subscription.activated_at = now
                subscription.last_charged_at = now
                subscription.billing_cycles_completed = 1
                subscription.auto_renew = True
                subscription.payment_token = payment.payment_token
                subscription.card_last_four = payment.card_last_four
                subscription.card_brand = payment.card_brand
                subscription.card_expiry = payment.card_expiry

                await self.billing_records.record_subscription_cycle(
                    subscription,
                    billing_cycle_number=1,
                    payment_transaction_id=payment.transaction_id,
                    period_start=subscription.current_period_start,
                    period_end=subscription.current_period_end,
                    next_charge_date=subscription.next_charge_date,
                    amount_paid=amount_paid,
                )
                await self.wallets.credit_recurring_cycle(
                    subscription.caregiver_id,
                    subscription.caregiver_amount,
                    order_id=cycle_order_id(subscription, 1),
                    subscription_id=subscription.id,
                    billing_cycle_number=1,
                    contract_id=subscription.contract_id,
                    release_reason=FundsReleaseReason.INITIAL_SUBSCRIPTION,
                    commit=False,
                )
                await self.outbox.publish_for_subscription(
                    DomainEventType.SUBSCRIPTION_ACTIVATED,
                    subscription,
                    next_charge_date=subscription.next_charge_date,
                )
                await self.db.commit()
                await self.db.refresh(subscription)
                return subscription

        try:
            subscription = await retry_on_conflict(
                attempt, entity=SUBSCRIPTION, entity_id=subscription_id, rollback=self.db.rollback
            )
        except AppException:
            await self.db.rollback()
            raise

        logger.info(
            "Subscription activated",
            extra_data={
                "subscription_id": subscription.id,
                "period_end": subscription.current_period_end,
                "next_charge_date": subscription.next_charge_date,
            }
        )
        return subscription

    # ==================== cancellation & termination ====================

    async def cancel(
        self,
        subscription_id: str,
        actor: Actor,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> OperationResult:
        """ACTIVE -> PENDING_CANCELLATION. Service runs until the current period ends."""
        now = now or utcnow()

        async def operation(subscription: Subscription) -> None:
            apply_transition(subscription, SubscriptionAction.CANCEL)
            subscription.auto_renew = False
            subscription.cancel_at_period_end = True
            subscription.cancellation_requested_at = now
            subscription.cancellation_reason = reason
            subscription.cancelled_by = actor.user_id
            await self.outbox.publish_for_subscription(
                DomainEventType.CANCELLATION_REQUESTED,
                subscription,
                period_end=subscription.current_period_end,
                reason=reason,
            )

        return await self._client_operation(
            subscription_id, actor, "cancel", self._require_client, operation, now
        )

    async def reactivate(
        self, subscription_id: str, actor: Actor, now: datetime | None = None
    ) -> OperationResult:
        """PENDING_CANCELLATION -> ACTIVE, only before the period has ended"""
        now = now or utcnow()

        async def operation(subscription: Subscription) -> None:
            if subscription.current_period_end is None or now >= subscription.current_period_end:
                raise InvalidStateTransitionError(
                    current_state=subscription.status.value,
                    target_state=SubscriptionStatus.ACTIVE.value,
                    subscription_id=subscription.id,
                    reason="the billing period has already ended",
                )
            apply_transition(subscription, SubscriptionAction.REACTIVATE)
            subscription.auto_renew = True
            subscription.cancel_at_period_end = False
            subscription.cancellation_requested_at = None
            subscription.cancellation_reason = None
            subscription.cancelled_by = None
            if subscription.next_charge_date is None:
                subscription.next_charge_date = subscription.current_period_end

        return await self._client_operation(
            subscription_id, actor, "reactivate", self._require_client, operation, now
        )

    async def finalize_cancellation(
        self, subscription_id: str, now: datetime | None = None
    ) -> Subscription:
        """PENDING_CANCELLATION -> CANCELLED once the period is over. Raises on failure."""
        now = now or utcnow()

        async def operation(subscription: Subscription) -> None:
            if subscription.current_period_end is not None and now < subscription.current_period_end:
                raise InvalidStateTransitionError(
                    current_state=subscription.status.value,
                    target_state=SubscriptionStatus.CANCELLED.value,
                    subscription_id=subscription.id,
                    reason="the billing period has not ended yet",
                )
            apply_transition(subscription, SubscriptionAction.FINALIZE_CANCELLATION)
            subscription.cancelled_at = now
            subscription.next_charge_date = None
            subscription.auto_renew = False
            clear_pending_plan(subscription)
            await self.outbox.publish_for_subscription(
                DomainEventType.CANCELLATION_FINALIZED, subscription
            )

        try:
            subscription, _ = await self._locked(
                subscription_id, Actor.system(), "finalize_cancellation",
                self._require_system, operation, now,
            )
        except AppException:
            await self.db.rollback()
            raise

        logger.info(
            "Subscription cancellation finalized",
            extra_data={"subscription_id": subscription_id, "cancelled_at": now}
        )
        return subscription

    async def terminate(
        self,
        subscription_id: str,
        actor: Actor,
        *,
        reason: TerminationReason | None = None,
        note: str | None = None,
        issue_prorated_refund: bool = False,
        now: datetime | None = None,
    ) -> OperationResult:
        """
        Any non-terminal state -> TERMINATED, immediately.

        With issue_prorated_refund the unused part of the current period is
        refunded: price_per_cycle x remaining days / total days, debited from
        the caregiver's withdrawable balance. If the caregiver cannot cover it
        the whole termination is rejected.
        """
        now = now or utcnow()

        async def operation(subscription: Subscription) -> dict[str, Any]:
            previous_status = SubscriptionStatus(subscription.status)
            period_start = subscription.current_period_start
            period_end = subscription.current_period_end

            mark_terminated(
                subscription,
                SubscriptionAction.TERMINATE,
                reason=reason or _default_termination_reason(actor),
                now=now,
                terminated_by=actor.user_id,
                note=note,
            )

            refund = Money.zero(subscription.currency)
            if (
                issue_prorated_refund
                and previous_status != SubscriptionStatus.PENDING_ACTIVATION
                and period_start is not None
                and period_end is not None
            ):
                refund = calculate_prorated_refund(
                    Money(subscription.price_per_cycle, subscription.currency),
                    period_start,
                    period_end,
                    now,
                )

            if refund.is_positive:
                cycle = subscription.billing_cycles_completed
                order_id = cycle_order_id(subscription, cycle)
                await self.wallets.debit_refund(
                    subscription.caregiver_id,
                    refund.amount,
                    order_id=order_id,
                    subscription_id=subscription.id,
                    billing_cycle_number=cycle,
                    description=f"Pro-rated refund on termination of subscription {subscription.id}",
                    commit=False,
                )
                if await self.billing_records.get_by_order_id(order_id) is not None:
                    await self.billing_records.mark_refunded(order_id, refund.amount, now)
                subscription.refund_amount = refund.amount
                logger.info(
                    "Pro-rated refund debited",
                    extra_data={
                        "subscription_id": subscription.id,
                        "caregiver_id": subscription.caregiver_id,
                        "refund_amount": str(refund.amount),
                        "order_id": order_id,
                    }
                )

            await self.outbox.publish_for_subscription(
                DomainEventType.SUBSCRIPTION_TERMINATED,
                subscription,
                reason=subscription.termination_reason.value,
                refund_amount=refund.amount,
            )
            return {"refund_amount": refund.amount}

        return await self._client_operation(
            subscription_id, actor, "terminate", self._require_party, operation, now
        )

    # ==================== pause / resume ====================

    async def pause(
        self, subscription_id: str, actor: Actor, now: datetime | None = None
    ) -> OperationResult:
        """ACTIVE -> PAUSED. No charges while paused."""
        now = now or utcnow()

        async def operation(subscription: Subscription) -> None:
            apply_transition(subscription, SubscriptionAction.PAUSE)
            subscription.paused_at = now
            subscription.next_charge_date = None

        return await self._client_operation(
            subscription_id, actor, "pause", self._require_client, operation, now
        )

    async def resume(
        self, subscription_id: str, actor: Actor, now: datetime | None = None
    ) -> OperationResult:
        """PAUSED -> ACTIVE with a brand-new period starting now"""
        now = now or utcnow()

        async def operation(subscription: Subscription) -> None:
            apply_transition(subscription, SubscriptionAction.RESUME)
            # resuming is a cycle boundary, so a scheduled plan change applies here
            apply_pending_plan(subscription)
            start_period(subscription, now)
            subscription.paused_at = None
            subscription.auto_renew = True

        return await self._client_operation(
            subscription_id, actor, "resume", self._require_client, operation, now
        )

    # ==================== plan changes ====================

    async def change_plan(
        self,
        subscription_id: str,
        actor: Actor,
        request: ChangePlanRequest,
        now: datetime | None = None,
    ) -> OperationResult:
        """
        Schedule a new plan for the next cycle boundary.

        The current period keeps its price; the recurring charge that opens
        the next period uses the new one.
        """
        now = now or utcnow()

        async def operation(subscription: Subscription) -> dict[str, Any]:
            apply_transition(subscription, SubscriptionAction.CHANGE_PLAN)

            new_cycle = request.new_billing_cycle or subscription.billing_cycle
            new_frequency = request.new_frequency_per_week or subscription.frequency_per_week
            new_visit_price = (
                request.new_price_per_visit
                if request.new_price_per_visit is not None
                else subscription.price_per_visit
            )
            breakdown = calculate_price_breakdown(
                new_visit_price, BillingCycle(new_cycle), new_frequency, subscription.currency
            )

            if (
                breakdown.billing_cycle == subscription.billing_cycle
                and breakdown.frequency_per_week == subscription.frequency_per_week
                and breakdown.price_per_visit.amount == subscription.price_per_visit
            ):
                raise ValidationException("No changes detected, the plan is already set to these values")

            current_total = Money(subscription.price_per_cycle, subscription.currency)
            change_type = classify_plan_change(current_total, breakdown.total)

            record = PlanChangeRecord(
                subscription_id=subscription.id,
                change_type=change_type,
                old_billing_cycle=subscription.billing_cycle.value,
                new_billing_cycle=breakdown.billing_cycle.value,
                old_frequency_per_week=subscription.frequency_per_week,
                new_frequency_per_week=breakdown.frequency_per_week,
                old_price_per_visit=subscription.price_per_visit,
                new_price_per_visit=breakdown.price_per_visit.amount,
                old_price_per_cycle=subscription.price_per_cycle,
                new_price_per_cycle=breakdown.total.amount,
                effective_date=subscription.current_period_end,
                requested_by=actor.user_id,
                reason=request.reason,
                created_at=now,
            )
            self.db.add(record)
            await self.db.flush()

            subscription.pending_billing_cycle = breakdown.billing_cycle
            subscription.pending_frequency_per_week = breakdown.frequency_per_week
            subscription.pending_price_per_visit = breakdown.price_per_visit.amount
            subscription.pending_price_per_cycle = breakdown.total.amount
            subscription.pending_caregiver_amount = breakdown.order_fee.amount
            subscription.pending_service_charge = breakdown.service_charge.amount
            subscription.pending_gateway_fees = breakdown.gateway_fees.amount
            subscription.pending_plan_change_id = record.id

            await self.outbox.publish_for_subscription(
                DomainEventType.PLAN_CHANGED,
                subscription,
                change_type=change_type.value,
                new_price_per_cycle=breakdown.total.amount,
                effective_date=record.effective_date,
            )
            return {
                "details": {
                    "change_type": change_type.value,
                    "current_amount": str(current_total.amount),
                    "new_amount": str(breakdown.total.amount),
                    "effective_date": record.effective_date.isoformat() if record.effective_date else None,
                    "plan_change_id": record.id,
                }
            }

        return await self._client_operation(
            subscription_id, actor, "change_plan", self._require_client, operation, now
        )

    async def get_plan_change_history(self, subscription_id: str) -> List[PlanChangeRecord]:
        result = await self.db.execute(
            select(PlanChangeRecord)
            .where(PlanChangeRecord.subscription_id == subscription_id)
            .order_by(PlanChangeRecord.created_at.desc(), PlanChangeRecord.id.desc())
        )
        return list(result.scalars().all())

    # ==================== payment method ====================

    async def initiate_payment_method_update(
        self, subscription_id: str, actor: Actor, now: datetime | None = None
    ) -> OperationResult:
        """
        ACTIVE -> PAYMENT_METHOD_UPDATE_PENDING and a hosted link for a small
        verification payment that yields the new token.

        The gateway is called before the lock is taken; the transition is
        validated again under the lock.
        """
        now = now or utcnow()
        reference = f"CAREBILL-CARDUPDATE-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"

        try:
            subscription = await self.require_subscription(subscription_id)
            self._require_client(subscription, actor, "update_payment_method")
            target_state(
                SubscriptionAction.REQUEST_PAYMENT_METHOD_UPDATE,
                SubscriptionStatus(subscription.status),
            )
            capture = await self.gateway.initiate_token_capture(
                reference,
                Money(settings.CARD_VERIFICATION_AMOUNT, subscription.currency),
                email=subscription.email,
            )
        except AppException as e:
            logger.warning(
                "Payment method update could not be started",
                extra_data={
                    "subscription_id": subscription_id,
                    "error_code": e.error_code.value,
                    "reason": e.message,
                }
            )
            return OperationResult.rejected(e, await self.get_subscription(subscription_id))

        async def operation(subscription: Subscription) -> dict[str, Any]:
            apply_transition(subscription, SubscriptionAction.REQUEST_PAYMENT_METHOD_UPDATE)
            subscription.payment_method_update_reference = capture.reference
            return {
                "details": {
                    "authorization_url": capture.authorization_url,
                    "reference": capture.reference,
                }
            }

        return await self._client_operation(
            subscription_id, actor, "update_payment_method", self._require_client, operation, now
        )

    async def complete_payment_method_update(
        self,
        subscription_id: str,
        *,
        reference: str,
        payment_token: str,
        card_last_four: str | None = None,
        card_brand: str | None = None,
        card_expiry: str | None = None,
        actor: Actor | None = None,
        now: datetime | None = None,
    ) -> OperationResult:
        """Store the new token and return to ACTIVE. Billing history is untouched."""
        now = now or utcnow()
        actor = actor or Actor.system()

        async def operation(subscription: Subscription) -> None:
            expected = subscription.payment_method_update_reference
            if expected is not None and expected != reference:
                raise ValidationException(
                    "Payment method update reference does not match",
                    field="reference",
                    details={"subscription_id": subscription.id},
                )
            apply_transition(subscription, SubscriptionAction.COMPLETE_PAYMENT_METHOD_UPDATE)
            subscription.payment_token = payment_token
            subscription.card_last_four = card_last_four
            subscription.card_brand = card_brand
            subscription.card_expiry = card_expiry
            subscription.payment_method_update_reference = None
            subscription.consecutive_failed_charges = 0
            subscription.last_failure_reason = None

        return await self._client_operation(
            subscription_id, actor, "update_payment_method", self._require_client, operation, now
        )

    async def abort_payment_method_update(
        self, subscription_id: str, actor: Actor, now: datetime | None = None
    ) -> OperationResult:
        now = now or utcnow()

        async def operation(subscription: Subscription) -> None:
            apply_transition(subscription, SubscriptionAction.ABORT_PAYMENT_METHOD_UPDATE)
            subscription.payment_method_update_reference = None

        return await self._client_operation(
            subscription_id, actor, "update_payment_method", self._require_client, operation, now
        )

    # ==================== contract linkage ====================

    async def link_contract(
        self,
        subscription_id: str,
        contract_id: str,
        actor: Actor,
        now: datetime | None = None,
    ) -> OperationResult:
        now = now or utcnow()

        async def operation(subscription: Subscription) -> None:
            apply_transition(subscription, SubscriptionAction.LINK_CONTRACT)
            subscription.contract_id = contract_id

        return await self._client_operation(
            subscription_id, actor, "link_contract", self._require_party, operation, now
        )

    # ==================== queries ====================

    async def list_for_client(self, client_id: str) -> List[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.client_id == client_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_for_caregiver(self, caregiver_id: str) -> List[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.caregiver_id == caregiver_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_client_summary(self, client_id: str) -> ClientSubscriptionSummary:
        subscriptions = await self.list_for_client(client_id)
        open_subscriptions = [s for s in subscriptions if s.status in OPEN_STATUSES]
        upcoming = [
            s.next_charge_date
            for s in open_subscriptions
            if s.status == SubscriptionStatus.ACTIVE and s.next_charge_date is not None
        ]
        currency = subscriptions[0].currency if subscriptions else settings.DEFAULT_CURRENCY
        return ClientSubscriptionSummary(
            client_id=client_id,
            active_count=len(open_subscriptions),
            total_monthly_spend=sum((s.monthly_spend for s in open_subscriptions), Decimal("0.00")),
            next_payment_date=min(upcoming) if upcoming else None,
            currency=currency,
        )

    async def get_analytics(self) -> SubscriptionAnalytics:
        """Counts per status, monthly recurring revenue and churn"""
        result = await self.db.execute(
            select(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status)
        )
        counts = {status: count for status, count in result.all()}

        active_result = await self.db.execute(
            select(Subscription).where(Subscription.status == SubscriptionStatus.ACTIVE)
        )
        mrr = sum(
            (s.monthly_spend for s in active_result.scalars().all()), Decimal("0.00")
        )

        activated_result = await self.db.execute(
            select(func.count(Subscription.id)).where(Subscription.activated_at.is_not(None))
        )
        ever_activated = activated_result.scalar_one()
        ended = counts.get(SubscriptionStatus.CANCELLED, 0) + counts.get(SubscriptionStatus.TERMINATED, 0)
        churn = Decimal("0.00")
        if ever_activated:
            churn = (Decimal(ended) * 100 / Decimal(ever_activated)).quantize(Decimal("0.01"))

        return SubscriptionAnalytics(
            active=counts.get(SubscriptionStatus.ACTIVE, 0),
            paused=counts.get(SubscriptionStatus.PAUSED, 0),
            pending_cancellation=counts.get(SubscriptionStatus.PENDING_CANCELLATION, 0),
            cancelled=counts.get(SubscriptionStatus.CANCELLED, 0),
            terminated=counts.get(SubscriptionStatus.TERMINATED, 0),
            monthly_recurring_revenue=mrr,
            churn_rate=churn,
        )
