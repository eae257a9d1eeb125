"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- A scriptable payment gateway
- Test data factories (subscriptions, one-time orders)
- In-memory Redis and per-test reset of process-wide singletons
"""
# Settings are read at import time; point them at test values before importing the package
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("FLUTTERWAVE_SECRET_KEY", "FLWSECK_TEST-secret")
os.environ.setdefault("NOTIFICATION_WEBHOOK_URL", "")
os.environ.setdefault("DEBUG", "false")

from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from care_billing.core.money import Money
from care_billing.db.database import Base
import care_billing.db.models  # noqa: F401  registers every table on Base.metadata
from care_billing.db.models.outbox_event import DomainEventType, OutboxEvent
from care_billing.db.models.subscription import BillingCycle, Subscription
from care_billing.db.models.wallet import CaregiverWallet
from care_billing.domain.gateway.base import ChargeResult, PaymentGateway, TokenCaptureResult
from care_billing.domain.schemas import (
    Actor,
    ActorRole,
    CreateSubscriptionRequest,
    InitialPayment,
    OneTimeOrderRequest,
)
from care_billing.domain.services.earnings_service import EarningsService
from care_billing.domain.services.recurring_billing_service import RecurringBillingService
from care_billing.domain.services.subscription_service import SubscriptionService


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed clock for deterministic periods
T0 = datetime(2024, 1, 1, 9, 0, 0)

# note: no custom event_loop fixture, pytest-asyncio handles it with asyncio_mode=auto


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Payment Gateway
# ============================================================================

class FakeGateway(PaymentGateway):
    """
    Scriptable gateway.

    Queue outcomes with will_succeed / will_decline / will_raise; with an
    empty queue every charge succeeds. A key that already succeeded returns
    the same transaction again, like the real provider.
    """

    def __init__(self) -> None:
        self._script: list = []
        self.charges: list[dict] = []
        self.settled: dict[str, ChargeResult] = {}
        self.captures: list[dict] = []
        self.capture_error: Optional[Exception] = None

    @property
    def provider_name(self) -> str:
        return "fake"

    def will_succeed(self, times: int = 1) -> "FakeGateway":
        self._script.extend(["ok"] * times)
        return self

    def will_decline(self, reason: str = "Insufficient funds", times: int = 1) -> "FakeGateway":
        self._script.extend([ChargeResult.failed(reason)] * times)
        return self

    def will_raise(self, error: Exception, times: int = 1) -> "FakeGateway":
        self._script.extend([error] * times)
        return self

    async def charge(self, token, amount: Money, idempotency_key, *, email=None) -> ChargeResult:
        self.charges.append({"token": token, "amount": amount, "key": idempotency_key})
        if idempotency_key in self.settled:
            return self.settled[idempotency_key]

        step = self._script.pop(0) if self._script else "ok"
        if isinstance(step, Exception):
            raise step
        if isinstance(step, ChargeResult):
            return step
        result = ChargeResult.succeeded(f"FLW-{len(self.charges)}")
        self.settled[idempotency_key] = result
        return result

    async def verify_charge(self, idempotency_key) -> Optional[ChargeResult]:
        return self.settled.get(idempotency_key)

    async def initiate_token_capture(self, reference, amount: Money, *, email=None) -> TokenCaptureResult:
        if self.capture_error is not None:
            raise self.capture_error
        self.captures.append({"reference": reference, "amount": amount})
        return TokenCaptureResult(reference=reference, authorization_url=f"https://pay.test/{reference}")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def subscription_service(db_session: AsyncSession, gateway: FakeGateway) -> SubscriptionService:
    return SubscriptionService(db_session, gateway=gateway)


@pytest.fixture
def earnings_service(db_session: AsyncSession) -> EarningsService:
    return EarningsService(db_session)


@pytest.fixture
def billing_service(db_session: AsyncSession, gateway: FakeGateway) -> RecurringBillingService:
    return RecurringBillingService(db_session, gateway=gateway)


# ============================================================================
# Actors
# ============================================================================

@pytest.fixture
def client_actor() -> Actor:
    return Actor(user_id="client-1", role=ActorRole.CLIENT)


@pytest.fixture
def caregiver_actor() -> Actor:
    return Actor(user_id="caregiver-1", role=ActorRole.CAREGIVER)


@pytest.fixture
def admin_actor() -> Actor:
    return Actor(user_id="admin-1", role=ActorRole.ADMIN)


# ============================================================================
# Test Data Factories
# ============================================================================

_order_counter = 0


def _next_order_id(prefix: str = "ORD") -> str:
    global _order_counter
    _order_counter += 1
    return f"{prefix}-{_order_counter:05d}"


@pytest.fixture(autouse=True)
def reset_order_counter():
    """Order ids restart for every test"""
    global _order_counter
    _order_counter = 0
    yield


@pytest.fixture
def subscription_factory(subscription_service: SubscriptionService):
    """Factory for subscriptions, activated by default"""
    async def _create_subscription(
        *,
        client_id: str = "client-1",
        caregiver_id: str = "caregiver-1",
        gig_id: str | None = None,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        frequency_per_week: int = 2,
        price_per_visit: str = "5000",
        activate: bool = True,
        now: datetime = T0,
        payment_token: str | None = "flw-t1-card-token",
    ) -> Subscription:
        order_id = _next_order_id("SUB")
        subscription = await subscription_service.create_subscription(
            CreateSubscriptionRequest(
                client_id=client_id,
                caregiver_id=caregiver_id,
                gig_id=gig_id or f"gig-{order_id}",
                order_id=order_id,
                billing_cycle=billing_cycle,
                frequency_per_week=frequency_per_week,
                price_per_visit=Decimal(price_per_visit),
                email="client@example.com",
            ),
            now=now,
        )
        if not activate:
            return subscription
        return await subscription_service.activate(
            subscription.id,
            InitialPayment(
                transaction_id=f"TX-{order_id}",
                amount_paid=subscription.price_per_cycle,
                payment_token=payment_token,
                card_last_four="4242",
                card_brand="VISA",
                card_expiry="12/30",
            ),
            now=now,
        )

    return _create_subscription


@pytest.fixture
def order_factory(earnings_service: EarningsService):
    """Factory for paid one-time orders (funds land in pending)"""
    async def _create_order(
        *,
        caregiver_id: str = "caregiver-1",
        client_id: str = "client-1",
        order_fee: str = "10000.00",
        order_id: str | None = None,
    ):
        fee = Decimal(order_fee)
        service_charge = (fee * Decimal("0.10")).quantize(Decimal("0.01"))
        record, entry = await earnings_service.record_one_time_order(
            OneTimeOrderRequest(
                order_id=order_id or _next_order_id(),
                client_id=client_id,
                caregiver_id=caregiver_id,
                gig_id="gig-one-time",
                order_fee=fee,
                service_charge=service_charge,
                gateway_fees=Decimal("0"),
                amount_paid=fee + service_charge,
                payment_transaction_id="TX-ONE",
            )
        )
        return record

    return _create_order


@pytest.fixture
def fetch_wallet(db_session: AsyncSession):
    """Reload a wallet from the database (a rejected operation expires the session)"""
    async def _fetch(caregiver_id: str = "caregiver-1") -> CaregiverWallet | None:
        result = await db_session.execute(
            select(CaregiverWallet)
            .where(CaregiverWallet.caregiver_id == caregiver_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    return _fetch


@pytest.fixture
def fetch_events(db_session: AsyncSession):
    """Outbox events, oldest first, optionally filtered by type"""
    async def _fetch(event_type: DomainEventType | None = None) -> list[OutboxEvent]:
        query = select(OutboxEvent).order_by(OutboxEvent.id)
        if event_type is not None:
            query = query.where(OutboxEvent.event_type == event_type)
        result = await db_session.execute(query)
        return list(result.scalars().all())

    return _fetch


# ============================================================================
# Process-wide state reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from care_billing.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_process_singletons():
    """Locks and the gateway singleton must not leak between event loops"""
    from care_billing.core.locks import reset_lock_manager
    from care_billing.domain.gateway.factory import set_payment_gateway
    reset_lock_manager()
    set_payment_gateway(None)
    yield
    reset_lock_manager()
    set_payment_gateway(None)


class FakeRedis:
    """In-memory stand-in for Redis with the calls the sweep guard uses"""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if absent) and EX (ttl seconds)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test"""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("care_billing.core.redis_client.get_redis", _get_fake_redis):
        yield _fake
