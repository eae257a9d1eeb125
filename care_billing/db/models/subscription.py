"""
Subscription Model - Recurring Service Agreement
"""
import enum
import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Boolean, Enum as SQLEnum, Index

from care_billing.db.database import Base


class SubscriptionStatus(str, enum.Enum):
    PENDING_ACTIVATION = "pending_activation"
    ACTIVE = "active"
    PAUSED = "paused"
    PENDING_CANCELLATION = "pending_cancellation"
    CANCELLED = "cancelled"
    TERMINATED = "terminated"
    PAYMENT_METHOD_UPDATE_PENDING = "payment_method_update_pending"


class BillingCycle(str, enum.Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def days(self) -> int:
        return 7 if self is BillingCycle.WEEKLY else 30

    @property
    def weeks(self) -> int:
        """Visit weeks billed per cycle"""
        return 1 if self is BillingCycle.WEEKLY else 4


class TerminationReason(str, enum.Enum):
    PAYMENT_FAILURE_EXHAUSTED = "payment_failure_exhausted"
    CLIENT_REQUEST = "client_request"
    CAREGIVER_REQUEST = "caregiver_request"
    ADMIN_ACTION = "admin_action"


def generate_subscription_id() -> str:
    return str(uuid.uuid4())


class Subscription(Base):
    """Recurring care plan between a client and a caregiver"""

    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=generate_subscription_id)

    # Identity
    client_id = Column(String(64), nullable=False, index=True)
    caregiver_id = Column(String(64), nullable=False, index=True)
    gig_id = Column(String(64), nullable=False)
    order_id = Column(String(64), nullable=False, unique=True)  # originating order
    contract_id = Column(String(64), nullable=True)
    email = Column(String(255), nullable=True)

    status = Column(SQLEnum(SubscriptionStatus), default=SubscriptionStatus.PENDING_ACTIVATION, index=True)

    # Plan
    billing_cycle = Column(SQLEnum(BillingCycle), nullable=False)
    frequency_per_week = Column(Integer, nullable=False)
    price_per_visit = Column(Numeric(14, 2), nullable=False)
    price_per_cycle = Column(Numeric(14, 2), nullable=False)  # what the client pays
    caregiver_amount = Column(Numeric(14, 2), nullable=False)  # order fee, credited per cycle
    service_charge = Column(Numeric(14, 2), nullable=False)
    gateway_fees = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    # Plan change waiting for the next cycle boundary
    pending_billing_cycle = Column(SQLEnum(BillingCycle), nullable=True)
    pending_frequency_per_week = Column(Integer, nullable=True)
    pending_price_per_visit = Column(Numeric(14, 2), nullable=True)
    pending_price_per_cycle = Column(Numeric(14, 2), nullable=True)
    pending_caregiver_amount = Column(Numeric(14, 2), nullable=True)
    pending_service_charge = Column(Numeric(14, 2), nullable=True)
    pending_gateway_fees = Column(Numeric(14, 2), nullable=True)
    pending_plan_change_id = Column(Integer, nullable=True)

    # Schedule
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    next_charge_date = Column(DateTime, nullable=True)
    billing_cycles_completed = Column(Integer, nullable=False, default=0)
    auto_renew = Column(Boolean, nullable=False, default=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    # Lifecycle metadata
    activated_at = Column(DateTime, nullable=True)
    paused_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_requested_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    terminated_at = Column(DateTime, nullable=True)
    termination_reason = Column(SQLEnum(TerminationReason), nullable=True)
    termination_note = Column(String(500), nullable=True)
    terminated_by = Column(String(64), nullable=True)
    refund_amount = Column(Numeric(14, 2), nullable=True)

    # Payment method (opaque gateway token plus display metadata)
    payment_token = Column(String(255), nullable=True)
    card_last_four = Column(String(4), nullable=True)
    card_brand = Column(String(30), nullable=True)
    card_expiry = Column(String(7), nullable=True)
    payment_method_update_reference = Column(String(100), nullable=True)

    # Retry bookkeeping
    consecutive_failed_charges = Column(Integer, nullable=False, default=0)
    last_failure_reason = Column(String(500), nullable=True)
    last_failed_charge_at = Column(DateTime, nullable=True)
    last_charged_at = Column(DateTime, nullable=True)
    charge_in_progress_since = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_subscriptions_status_next_charge", "status", "next_charge_date"),
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def has_pending_plan_change(self) -> bool:
        return self.pending_price_per_cycle is not None

    @property
    def monthly_spend(self) -> Decimal:
        """Approximate monthly cost, weekly plans scaled by 4.33 weeks"""
        if self.billing_cycle == BillingCycle.WEEKLY:
            return (self.price_per_cycle * Decimal("4.33")).quantize(Decimal("0.01"))
        return self.price_per_cycle
