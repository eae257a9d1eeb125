"""
Fixtures and helpers for end-to-end billing scenarios.

Provides:
- wallet assertions against both the wallet row and the ledger
- subscription status assertions that reload from the database
"""
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from care_billing.db.models.subscription import Subscription, SubscriptionStatus
from care_billing.domain.services.ledger_service import LedgerService
from care_billing.domain.services.subscription_service import SubscriptionService


# ============================================================================
# DB assertions
# ============================================================================


@pytest.fixture
def assert_wallet(db_session: AsyncSession, fetch_wallet):
    """
    Check a caregiver's balances, and that the ledger agrees with the wallet row.
    """
    async def _assert(
        *,
        withdrawable: str,
        pending: str = "0",
        caregiver_id: str = "caregiver-1",
    ):
        wallet = await fetch_wallet(caregiver_id)
        assert wallet is not None, f"no wallet for {caregiver_id}"
        assert wallet.withdrawable_balance == Decimal(withdrawable), (
            f"withdrawable {wallet.withdrawable_balance}, expected {withdrawable}"
        )
        assert wallet.pending_balance == Decimal(pending), (
            f"pending {wallet.pending_balance}, expected {pending}"
        )

        totals = await LedgerService(db_session).totals(caregiver_id)
        assert totals.withdrawable_balance == wallet.withdrawable_balance
        assert totals.pending_balance == wallet.pending_balance
        assert totals.total_earned == wallet.total_earned
        return wallet

    return _assert


@pytest.fixture
def assert_subscription(subscription_service: SubscriptionService):
    """Reload a subscription and check its status"""
    async def _assert(subscription_id: str, status: SubscriptionStatus) -> Subscription:
        subscription = await subscription_service.get_subscription(subscription_id)
        assert subscription is not None, f"subscription {subscription_id} not found"
        assert subscription.status == status, (
            f"status {subscription.status}, expected {status}"
        )
        return subscription

    return _assert
