"""
Charge Attempt Model - Idempotent Recurring Charges
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Enum as SQLEnum, UniqueConstraint
)

from care_billing.db.database import Base


class ChargeAttemptStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def build_idempotency_key(subscription_id: str, billing_cycle_number: int) -> str:
    return f"CAREBILL-SUB-{subscription_id}-C{billing_cycle_number}"


class ChargeAttempt(Base):
    """
    Gateway charge for one subscription cycle.

    The idempotency key is shared by every retry of the same cycle, so a
    retried network call can never produce a second successful charge.
    """

    __tablename__ = "charge_attempts"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(String(36), nullable=False, index=True)
    billing_cycle_number = Column(Integer, nullable=False)
    idempotency_key = Column(String(120), nullable=False, unique=True, index=True)

    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(SQLEnum(ChargeAttemptStatus), default=ChargeAttemptStatus.PENDING, nullable=False)
    attempt_count = Column(Integer, nullable=False, default=0)

    gateway_transaction_id = Column(String(100), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    last_attempted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("subscription_id", "billing_cycle_number", name="uq_charge_attempt_cycle"),
    )
