"""
Caregiver Wallet Model - Derived Balances
"""
from decimal import Decimal
from datetime import datetime
from sqlalchemy import Column, Integer, String, Numeric, DateTime, CheckConstraint

from care_billing.db.database import Base


class CaregiverWallet(Base):
    """
    Running balances per caregiver.

    Every figure here is recomputable from the ledger; only WalletService
    writes to this table.
    """

    __tablename__ = "caregiver_wallets"
    __table_args__ = (
        CheckConstraint("withdrawable_balance >= 0", name="ck_caregiver_wallets_withdrawable_non_negative"),
        CheckConstraint("pending_balance >= 0", name="ck_caregiver_wallets_pending_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    caregiver_id = Column(String(64), unique=True, nullable=False, index=True)
    currency = Column(String(3), nullable=False)

    pending_balance = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    withdrawable_balance = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_earned = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_withdrawn = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    # Optimistic concurrency counter, bumped by SQLAlchemy on every UPDATE
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}
