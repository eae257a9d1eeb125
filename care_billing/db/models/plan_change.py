"""
Plan Change Record Model - Audit of Plan Mutations
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum as SQLEnum

from care_billing.db.database import Base


class PlanChangeType(str, enum.Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CHANGE = "change"


class PlanChangeRecord(Base):
    """Immutable record of one requested plan change"""

    __tablename__ = "plan_change_records"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(String(36), nullable=False, index=True)
    change_type = Column(SQLEnum(PlanChangeType), nullable=False)

    old_billing_cycle = Column(String(20), nullable=False)
    new_billing_cycle = Column(String(20), nullable=False)
    old_frequency_per_week = Column(Integer, nullable=False)
    new_frequency_per_week = Column(Integer, nullable=False)
    old_price_per_visit = Column(Numeric(14, 2), nullable=False)
    new_price_per_visit = Column(Numeric(14, 2), nullable=False)
    old_price_per_cycle = Column(Numeric(14, 2), nullable=False)
    new_price_per_cycle = Column(Numeric(14, 2), nullable=False)

    effective_date = Column(DateTime, nullable=True)  # next cycle boundary
    requested_by = Column(String(64), nullable=False)
    reason = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
