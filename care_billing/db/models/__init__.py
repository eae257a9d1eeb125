"""
Database Models
"""
from care_billing.db.models.wallet import CaregiverWallet
from care_billing.db.models.ledger_entry import LedgerEntry
from care_billing.db.models.billing_record import BillingRecord
from care_billing.db.models.subscription import Subscription
from care_billing.db.models.plan_change import PlanChangeRecord
from care_billing.db.models.charge_attempt import ChargeAttempt
from care_billing.db.models.outbox_event import OutboxEvent

__all__ = [
    "CaregiverWallet",
    "LedgerEntry",
    "BillingRecord",
    "Subscription",
    "PlanChangeRecord",
    "ChargeAttempt",
    "OutboxEvent",
]
