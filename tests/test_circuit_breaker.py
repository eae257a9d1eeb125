"""
Tests for the circuit breaker that guards the payment gateway.

A declined card is an ordinary charge result and must never trip the
breaker; provider outages (5xx answers, timeouts) must.
"""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from care_billing.core.circuit_breaker import (
    NOTIFICATION_SERVICE,
    PAYMENT_GATEWAY_SERVICE,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    get_notification_circuit_breaker,
    get_payment_gateway_circuit_breaker,
)
from care_billing.core.exceptions import (
    CircuitBreakerOpenError,
    ErrorCode,
    GatewayFailureError,
    ServiceTimeoutError,
)
from care_billing.domain.gateway.base import ChargeResult
from care_billing.domain.services.recurring_billing_service import ChargeOutcomeStatus

DUE = datetime(2024, 1, 1, 9, 0, 0) + timedelta(days=30)


async def provider_down():
    raise GatewayFailureError(
        "charge returned status 502", details={"operation": "charge", "status_code": 502}
    )


async def provider_slow():
    raise ServiceTimeoutError(PAYMENT_GATEWAY_SERVICE, 15.0)


async def card_declined():
    return ChargeResult.failed("Insufficient funds")


async def charge_ok():
    return ChargeResult.succeeded("FLW-TX-1")


async def trip(breaker: CircuitBreaker, times: int = 3) -> None:
    for _ in range(times):
        with pytest.raises(GatewayFailureError):
            await breaker.execute(provider_down)


class TestGatewayBreaker:

    @pytest.fixture
    def breaker(self) -> CircuitBreaker:
        """Gateway breaker with thresholds small enough for tests"""
        return CircuitBreaker(
            f"{PAYMENT_GATEWAY_SERVICE}-test",
            CircuitBreakerConfig(
                failure_threshold=3,
                success_threshold=2,
                timeout_seconds=0.1,
                half_open_max_calls=2,
            ),
        )

    @pytest.mark.unit
    async def test_charges_pass_while_closed(self, breaker: CircuitBreaker):
        result = await breaker.execute(charge_ok)

        assert result.success
        assert result.gateway_transaction_id == "FLW-TX-1"
        assert breaker.is_closed

    @pytest.mark.unit
    async def test_declined_cards_do_not_trip_the_breaker(self, breaker: CircuitBreaker):
        for _ in range(10):
            result = await breaker.execute(card_declined)
            assert not result.success

        assert breaker.is_closed

    @pytest.mark.unit
    async def test_provider_outage_opens_the_breaker(self, breaker: CircuitBreaker):
        await trip(breaker)

        assert breaker.is_open

    @pytest.mark.unit
    async def test_timeouts_count_as_outage(self, breaker: CircuitBreaker):
        for _ in range(3):
            with pytest.raises(ServiceTimeoutError):
                await breaker.execute(provider_slow)

        assert breaker.is_open

    @pytest.mark.unit
    async def test_open_breaker_does_not_call_the_provider(self, breaker: CircuitBreaker):
        await trip(breaker)
        charge = AsyncMock(return_value=ChargeResult.succeeded("FLW-TX-2"))

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.execute(charge)

        charge.assert_not_awaited()
        assert exc_info.value.error_code == ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE
        assert 0 < exc_info.value.details["retry_after_seconds"] <= 0.1
        assert PAYMENT_GATEWAY_SERVICE in str(exc_info.value)

    @pytest.mark.unit
    async def test_intermittent_outages_do_not_open(self, breaker: CircuitBreaker):
        """Outages must be consecutive; one good charge resets the count"""
        await trip(breaker, times=2)
        await breaker.execute(charge_ok)
        await trip(breaker, times=2)

        assert breaker.is_closed

    @pytest.mark.unit
    async def test_recovered_provider_closes_after_good_charges(self, breaker: CircuitBreaker):
        await trip(breaker)
        await asyncio.sleep(0.15)

        for _ in range(2):
            assert (await breaker.execute(charge_ok)).success

        assert breaker.is_closed

    @pytest.mark.unit
    async def test_failed_probe_reopens(self, breaker: CircuitBreaker):
        await trip(breaker)
        await asyncio.sleep(0.15)

        with pytest.raises(GatewayFailureError):
            await breaker.execute(provider_down)

        assert breaker.is_open

    @pytest.mark.unit
    async def test_probe_charges_are_limited(self, breaker: CircuitBreaker):
        await trip(breaker)
        await asyncio.sleep(0.15)

        assert await breaker.can_execute()
        assert await breaker.can_execute()
        assert not await breaker.can_execute()
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.unit
    async def test_retry_after(self, breaker: CircuitBreaker):
        assert breaker.get_retry_after() == 0.0

        await trip(breaker)

        assert 0 < breaker.get_retry_after() <= 0.1


class TestOpenBreakerDuringBilling:

    async def test_renewal_fails_and_is_retried_later(
        self, subscription_factory, subscription_service, billing_service, gateway
    ):
        subscription = await subscription_factory()
        gateway.will_raise(CircuitBreakerOpenError(PAYMENT_GATEWAY_SERVICE, 30.0))

        outcome = await billing_service.charge_subscription(subscription.id, now=DUE)

        assert outcome.status == ChargeOutcomeStatus.FAILED
        assert "temporarily unavailable" in outcome.reason
        failed = await subscription_service.get_subscription(subscription.id)
        assert failed.consecutive_failed_charges == 1
        assert failed.next_charge_date == DUE + timedelta(hours=1)


class TestProviderBreakers:
    """Shared breakers for the payment gateway and notification webhook"""

    @pytest.mark.unit
    def test_payment_gateway_breaker_is_shared(self):
        breaker = get_payment_gateway_circuit_breaker()

        assert breaker is get_payment_gateway_circuit_breaker()
        assert breaker is CircuitBreaker.get_instance(PAYMENT_GATEWAY_SERVICE)
        assert breaker.config.failure_threshold == 5
        assert breaker.config.timeout_seconds == 60.0

    @pytest.mark.unit
    def test_notification_breaker_is_separate(self):
        notification = get_notification_circuit_breaker()

        assert notification.service_name == NOTIFICATION_SERVICE
        assert notification is not get_payment_gateway_circuit_breaker()

    @pytest.mark.unit
    def test_reset_all_drops_instances(self):
        before = get_notification_circuit_breaker()
        CircuitBreaker.reset_all()

        assert get_notification_circuit_breaker() is not before
