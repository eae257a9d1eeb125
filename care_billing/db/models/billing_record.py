"""
Billing Record Model - One Row per Payment Event
"""
import enum
from decimal import Decimal
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Enum as SQLEnum, UniqueConstraint
)

from care_billing.db.database import Base


class BillingRecordKind(str, enum.Enum):
    ONE_TIME = "one_time"
    SUBSCRIPTION_INITIAL = "subscription_initial"
    SUBSCRIPTION_RECURRING = "subscription_recurring"


class BillingRecord(Base):
    """Snapshot of what a client paid for one order or one subscription cycle"""

    __tablename__ = "billing_records"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(64), unique=True, nullable=False, index=True)
    subscription_id = Column(String(36), nullable=True, index=True)
    contract_id = Column(String(64), nullable=True)

    client_id = Column(String(64), nullable=False, index=True)
    caregiver_id = Column(String(64), nullable=False, index=True)
    gig_id = Column(String(64), nullable=True)

    kind = Column(SQLEnum(BillingRecordKind), nullable=False)
    billing_cycle = Column(String(20), nullable=True)
    frequency_per_week = Column(Integer, nullable=True)

    amount_paid = Column(Numeric(14, 2), nullable=False)
    order_fee = Column(Numeric(14, 2), nullable=False)
    service_charge = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    gateway_fees = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    currency = Column(String(3), nullable=False)

    payment_transaction_id = Column(String(100), nullable=True)
    billing_cycle_number = Column(Integer, nullable=True)
    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    next_charge_date = Column(DateTime, nullable=True)

    refunded = Column(Boolean, nullable=False, default=False)
    refund_amount = Column(Numeric(14, 2), nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    disputed = Column(Boolean, nullable=False, default=False)
    dispute_reason = Column(String(500), nullable=True)
    disputed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("subscription_id", "billing_cycle_number", name="uq_billing_subscription_cycle"),
    )
