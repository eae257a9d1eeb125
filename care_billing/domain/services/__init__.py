"""
Domain Services
"""
from care_billing.domain.services.ledger_service import LedgerService
from care_billing.domain.services.wallet_service import WalletService
from care_billing.domain.services.billing_record_service import BillingRecordService
from care_billing.domain.services.outbox_service import OutboxService
from care_billing.domain.services.notification_service import NotificationPublisher
from care_billing.domain.services.subscription_service import SubscriptionService
from care_billing.domain.services.recurring_billing_service import RecurringBillingService
from care_billing.domain.services.earnings_service import EarningsService

__all__ = [
    "LedgerService",
    "WalletService",
    "BillingRecordService",
    "OutboxService",
    "NotificationPublisher",
    "SubscriptionService",
    "RecurringBillingService",
    "EarningsService",
]
