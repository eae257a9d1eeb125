"""
Ledger Entry Model - Immutable Earnings History
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Enum as SQLEnum, UniqueConstraint, Index, event
)

from care_billing.db.database import Base


class LedgerEntryKind(str, enum.Enum):
    ORDER_RECEIVED = "order_received"
    FUNDS_RELEASED = "funds_released"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    REFUND = "refund"
    DISPUTE_HOLD = "dispute_hold"


class FundsReleaseReason(str, enum.Enum):
    CLIENT_APPROVED = "client_approved"
    AUTO_RELEASED = "auto_released"
    RECURRING_PAYMENT = "recurring_payment"
    INITIAL_SUBSCRIPTION = "initial_subscription"


class ServiceType(str, enum.Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class LedgerEntry(Base):
    """
    One balance-affecting event for a caregiver.

    pending_delta and withdrawable_delta record the entry's effect on each
    balance bucket; their sum over a caregiver equals
    pending_balance + withdrawable_balance.
    """

    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    caregiver_id = Column(String(64), nullable=False, index=True)
    kind = Column(SQLEnum(LedgerEntryKind), nullable=False)

    amount = Column(Numeric(14, 2), nullable=False)  # Positive for credit, negative for debit
    pending_delta = Column(Numeric(14, 2), nullable=False)
    withdrawable_delta = Column(Numeric(14, 2), nullable=False)
    balance_after = Column(Numeric(14, 2), nullable=False)  # withdrawable balance after posting
    currency = Column(String(3), nullable=False)

    related_order_id = Column(String(64), nullable=True, index=True)
    related_subscription_id = Column(String(64), nullable=True, index=True)
    billing_cycle_number = Column(Integer, nullable=True)
    contract_id = Column(String(64), nullable=True)
    withdrawal_request_id = Column(String(64), nullable=True)
    release_reason = Column(SQLEnum(FundsReleaseReason), nullable=True)

    service_type = Column(SQLEnum(ServiceType), nullable=False)
    description = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # One entry of each kind per order (double release / double refund)
    __table_args__ = (
        UniqueConstraint(
            "caregiver_id", "related_order_id", "kind", name="uq_ledger_caregiver_order_kind"
        ),
        Index("ix_ledger_caregiver_created", "caregiver_id", "created_at"),
    )


@event.listens_for(LedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target) -> None:
    raise PermissionError(f"Ledger entry {target.id} is immutable, post an offsetting entry")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(mapper, connection, target) -> None:
    raise PermissionError(f"Ledger entry {target.id} cannot be deleted")
