"""
Property-based tests with hypothesis over the billing rules and the wallet ledger.

Invariants checked:
1. Money arithmetic stays exact at the minor unit
2. Price breakdown parts add up to the cycle price
3. Prorated refunds stay within [0, price] and shrink over time
4. Backoff never decreases and never exceeds its cap
5. Random action sequences never leave a terminal state
6. Random money movements keep the wallet equal to its ledger
"""
from datetime import datetime, timedelta
from decimal import Decimal
from itertools import count

import pytest
from hypothesis import HealthCheck, given, assume, settings as h_settings
from hypothesis.strategies import (
    composite,
    integers,
    lists,
    sampled_from,
    tuples,
)
from sqlalchemy import select

from care_billing.core.backoff import calculate_backoff_seconds
from care_billing.core.exceptions import AppException, InvalidStateTransitionError
from care_billing.core.money import Money
from care_billing.db.models.ledger_entry import LedgerEntryKind
from care_billing.db.models.plan_change import PlanChangeType
from care_billing.db.models.subscription import BillingCycle, SubscriptionStatus
from care_billing.db.models.wallet import CaregiverWallet
from care_billing.domain.services.pricing import (
    calculate_price_breakdown,
    calculate_prorated_refund,
    classify_plan_change,
)
from care_billing.domain.services.wallet_service import WalletService
from care_billing.state_machine.subscription_states import (
    TERMINAL_STATES,
    SubscriptionAction,
    target_state,
)

T0 = datetime(2024, 1, 1, 9, 0, 0)


# ============================================================================
# Strategies
# ============================================================================

@composite
def amounts(draw, min_minor: int = 1, max_minor: int = 10_000_000_00) -> Decimal:
    """Decimal amounts exact to kobo"""
    return Decimal(draw(integers(min_value=min_minor, max_value=max_minor))).scaleb(-2)


@composite
def money(draw, min_minor: int = 1, max_minor: int = 10_000_000_00) -> Money:
    return Money.of(draw(amounts(min_minor, max_minor)))


ACTIONS = sampled_from(list(SubscriptionAction))
ACTION_SEQUENCES = lists(ACTIONS, min_size=1, max_size=15)


# ============================================================================
# Money
# ============================================================================


class TestMoneyProperties:

    @pytest.mark.unit
    @given(a=money(), b=money())
    @h_settings(max_examples=200, deadline=None)
    def test_add_then_subtract_is_exact(self, a, b):
        assert (a + b) - b == a
        assert a + b == b + a

    @pytest.mark.unit
    @given(a=money(), factor=integers(min_value=0, max_value=1000))
    @h_settings(max_examples=200, deadline=None)
    def test_multiply_result_is_at_minor_unit(self, a, factor):
        result = a.multiply(Decimal(factor).scaleb(-3))

        assert result.amount == result.amount.quantize(Decimal("0.01"))

    @pytest.mark.unit
    @given(a=money(), numerator=integers(min_value=0, max_value=60), denominator=integers(min_value=1, max_value=60))
    @h_settings(max_examples=200, deadline=None)
    def test_prorate_within_whole(self, a, numerator, denominator):
        assume(numerator <= denominator)

        part = a.prorate(numerator, denominator)

        assert Money.zero() <= part <= a


# ============================================================================
# Pricing
# ============================================================================


class TestPricingProperties:

    @pytest.mark.unit
    @given(
        visit_price=amounts(max_minor=1_000_000_00),
        cycle=sampled_from(list(BillingCycle)),
        frequency=integers(min_value=1, max_value=7),
    )
    @h_settings(max_examples=200, deadline=None)
    def test_breakdown_parts_sum_to_total(self, visit_price, cycle, frequency):
        breakdown = calculate_price_breakdown(visit_price, cycle, frequency)

        assert breakdown.total == breakdown.order_fee + breakdown.service_charge + breakdown.gateway_fees
        assert breakdown.order_fee.amount == visit_price * frequency * cycle.weeks
        assert breakdown.gateway_fees <= Money.of("2000")
        assert not breakdown.service_charge.is_negative

    @pytest.mark.unit
    @given(
        visit_price=amounts(max_minor=1_000_000_00),
        cycle=sampled_from(list(BillingCycle)),
        old_frequency=integers(min_value=1, max_value=7),
        new_frequency=integers(min_value=1, max_value=7),
    )
    @h_settings(max_examples=150, deadline=None)
    def test_more_visits_is_never_a_downgrade(self, visit_price, cycle, old_frequency, new_frequency):
        old = calculate_price_breakdown(visit_price, cycle, old_frequency).total
        new = calculate_price_breakdown(visit_price, cycle, new_frequency).total

        change = classify_plan_change(old, new)

        if new_frequency > old_frequency:
            assert change == PlanChangeType.UPGRADE
        elif new_frequency < old_frequency:
            assert change == PlanChangeType.DOWNGRADE
        else:
            assert change == PlanChangeType.CHANGE

    @pytest.mark.unit
    @given(
        price=money(),
        cycle=sampled_from(list(BillingCycle)),
        elapsed_hours=integers(min_value=-48, max_value=24 * 40),
    )
    @h_settings(max_examples=200, deadline=None)
    def test_refund_never_exceeds_price(self, price, cycle, elapsed_hours):
        period_end = T0 + timedelta(days=cycle.days)

        refund = calculate_prorated_refund(price, T0, period_end, T0 + timedelta(hours=elapsed_hours))

        assert Money.zero() <= refund <= price

    @pytest.mark.unit
    @given(
        price=money(),
        first_hour=integers(min_value=0, max_value=24 * 30),
        later_by=integers(min_value=0, max_value=24 * 30),
    )
    @h_settings(max_examples=200, deadline=None)
    def test_refund_shrinks_as_the_period_runs(self, price, first_hour, later_by):
        period_end = T0 + timedelta(days=30)
        earlier = T0 + timedelta(hours=first_hour)
        later = earlier + timedelta(hours=later_by)

        assert (
            calculate_prorated_refund(price, T0, period_end, later)
            <= calculate_prorated_refund(price, T0, period_end, earlier)
        )


# ============================================================================
# Backoff
# ============================================================================


class TestBackoffProperties:

    @pytest.mark.unit
    @given(
        retry_count=integers(min_value=0, max_value=200),
        base=integers(min_value=1, max_value=3600),
        cap=integers(min_value=1, max_value=86400),
    )
    @h_settings(max_examples=300, deadline=None)
    def test_monotonic_and_capped(self, retry_count, base, cap):
        current = calculate_backoff_seconds(retry_count, base_seconds=base, max_backoff_seconds=cap)
        following = calculate_backoff_seconds(retry_count + 1, base_seconds=base, max_backoff_seconds=cap)

        assert 0 < current <= cap
        assert current <= following

    @pytest.mark.unit
    @given(retry_count=integers(min_value=0, max_value=10))
    @h_settings(max_examples=50, deadline=None)
    def test_matches_doubling_below_cap(self, retry_count):
        value = calculate_backoff_seconds(retry_count, base_seconds=30, max_backoff_seconds=10**9)

        assert value == 30 * 2 ** retry_count


# ============================================================================
# Subscription state machine
# ============================================================================


def _run_actions(start: SubscriptionStatus, actions: list[SubscriptionAction]) -> list[SubscriptionStatus]:
    """Apply the legal actions in order, skipping the rejected ones"""
    visited = [start]
    current = start
    for action in actions:
        try:
            current = target_state(action, current)
        except InvalidStateTransitionError:
            continue
        visited.append(current)
    return visited


class TestStateMachineProperties:

    @pytest.mark.unit
    @given(actions=ACTION_SEQUENCES)
    @h_settings(max_examples=300, deadline=None)
    def test_terminal_states_are_final(self, actions):
        visited = _run_actions(SubscriptionStatus.PENDING_ACTIVATION, actions)

        for index, state in enumerate(visited):
            if state in TERMINAL_STATES:
                assert all(s == state for s in visited[index:])
                break

    @pytest.mark.unit
    @given(
        start=sampled_from(sorted(TERMINAL_STATES, key=lambda s: s.value)),
        action=ACTIONS,
    )
    @h_settings(max_examples=100, deadline=None)
    def test_every_action_from_terminal_is_rejected(self, start, action):
        with pytest.raises(InvalidStateTransitionError):
            target_state(action, start)

    @pytest.mark.unit
    @given(actions=ACTION_SEQUENCES)
    @h_settings(max_examples=200, deadline=None)
    def test_nothing_but_activate_or_terminate_leaves_pending_activation(self, actions):
        visited = _run_actions(SubscriptionStatus.PENDING_ACTIVATION, actions)

        moved = [s for s in visited if s != SubscriptionStatus.PENDING_ACTIVATION]

        if moved:
            assert moved[0] in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TERMINATED)


# ============================================================================
# Wallet against the ledger
# ============================================================================

WALLET_OPERATIONS = sampled_from(["credit", "release", "withdraw", "refund"])
WALLET_STEPS = lists(
    tuples(WALLET_OPERATIONS, integers(min_value=0, max_value=3), integers(min_value=1, max_value=50_000_00)),
    min_size=1,
    max_size=20,
)

_prop_counter = count(1)


class TestWalletLedgerProperties:
    """Random credit / release / withdraw / refund sequences on one caregiver"""

    @pytest.mark.asyncio
    @given(steps=WALLET_STEPS)
    @h_settings(
        max_examples=40,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
        deadline=None,
    )
    async def test_balances_always_match_the_ledger(self, steps, db_session):
        """
        After every step, accepted or rejected: the wallet equals what its
        ledger entries add up to, and withdrawable never goes negative.
        """
        caregiver_id = f"prop-caregiver-{next(_prop_counter)}"
        wallets = WalletService(db_session)

        for operation, slot, minor in steps:
            order_id = f"{caregiver_id}-ORD-{slot}"
            amount = Decimal(minor).scaleb(-2)
            try:
                if operation == "credit":
                    await wallets.credit_order_received(
                        caregiver_id, amount, is_recurring=False, order_id=order_id
                    )
                elif operation == "release":
                    await wallets.release_pending_funds(caregiver_id, None, order_id)
                elif operation == "withdraw":
                    await wallets.debit_withdrawal(caregiver_id, amount)
                else:
                    received = await wallets.ledger.get_for_order(order_id, LedgerEntryKind.ORDER_RECEIVED)
                    if received is None or await wallets.ledger.exists(order_id, LedgerEntryKind.REFUND):
                        continue
                    released = await wallets.ledger.exists(order_id, LedgerEntryKind.FUNDS_RELEASED)
                    await wallets.debit_refund(
                        caregiver_id,
                        min(amount, received.amount),
                        order_id=order_id,
                        from_pending=not released,
                    )
            except AppException:
                await db_session.rollback()

            report = await wallets.reconcile(caregiver_id)
            assert report.in_sync, f"drift {report.drift} after {operation} on {order_id}"

            totals = await wallets.ledger.totals(caregiver_id)
            wallet = (await db_session.execute(
                select(CaregiverWallet)
                .where(CaregiverWallet.caregiver_id == caregiver_id)
                .execution_options(populate_existing=True)
            )).scalar_one()
            assert wallet.pending_balance + wallet.withdrawable_balance == (
                totals.pending_balance + totals.withdrawable_balance
            )
            assert wallet.withdrawable_balance >= 0
            assert wallet.pending_balance >= 0
