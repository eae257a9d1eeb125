from datetime import datetime, timedelta

import pytest

from care_billing.core.backoff import calculate_backoff_seconds, next_attempt_at
from care_billing.core.config import settings
from care_billing.db.models.outbox_event import DomainEventType, EventStatus, OutboxEvent
from care_billing.domain.services.outbox_service import OutboxService


def test_calculate_backoff_seconds_doubles() -> None:
    # base_seconds * (2 ** retry_count)
    base = 30
    max_backoff = 3600

    assert calculate_backoff_seconds(0, base_seconds=base, max_backoff_seconds=max_backoff) == 30
    assert calculate_backoff_seconds(1, base_seconds=base, max_backoff_seconds=max_backoff) == 60
    assert calculate_backoff_seconds(6, base_seconds=base, max_backoff_seconds=max_backoff) == 1920


def test_calculate_backoff_seconds_is_capped() -> None:
    base = 30
    max_backoff = 3600

    # 30 * 2**7 = 3840 -> capped to 3600
    assert calculate_backoff_seconds(7, base_seconds=base, max_backoff_seconds=max_backoff) == 3600
    assert calculate_backoff_seconds(10_000, base_seconds=base, max_backoff_seconds=max_backoff) == 3600


def test_calculate_backoff_seconds_edge_inputs() -> None:
    assert calculate_backoff_seconds(-3, base_seconds=30, max_backoff_seconds=3600) == 30
    assert calculate_backoff_seconds(0, base_seconds=0, max_backoff_seconds=3600) == 0
    assert calculate_backoff_seconds(2, base_seconds=5000, max_backoff_seconds=3600) == 3600


def test_next_attempt_at() -> None:
    now = datetime(2024, 1, 1, 9, 0, 0)
    assert next_attempt_at(now, 2, base_seconds=3600, max_backoff_seconds=86400) == now + timedelta(hours=4)


async def _add_event(db_session, **kwargs) -> OutboxEvent:
    event = OutboxEvent(
        event_type=DomainEventType.CHARGE_SUCCEEDED,
        aggregate_id="sub-1",
        payload={"hello": "world"},
        status=EventStatus.PENDING,
        **kwargs,
    )
    db_session.add(event)
    await db_session.commit()
    await db_session.refresh(event)
    return event


@pytest.mark.asyncio
async def test_mark_as_failed_sets_next_retry_at_with_cap(db_session) -> None:
    # Set an intentionally huge retry_count to ensure we don't compute 2**retry_count.
    event = await _add_event(db_session, retry_count=10_000, max_retries=20_000)

    svc = OutboxService(db_session)
    before = datetime.utcnow()
    await svc.mark_as_failed(event.id, "boom")
    after = datetime.utcnow()

    await db_session.refresh(event)
    assert event.status == EventStatus.PENDING
    assert event.next_retry_at is not None

    max_backoff = settings.OUTBOX_MAX_BACKOFF_SECONDS
    lower = before + timedelta(seconds=max_backoff) - timedelta(seconds=2)
    upper = after + timedelta(seconds=max_backoff) + timedelta(seconds=2)
    assert lower <= event.next_retry_at <= upper


@pytest.mark.asyncio
async def test_mark_as_failed_gives_up_at_max_retries(db_session) -> None:
    event = await _add_event(db_session, retry_count=4, max_retries=5)

    await OutboxService(db_session).mark_as_failed(event.id, "still down")

    await db_session.refresh(event)
    assert event.status == EventStatus.FAILED
    assert event.retry_count == 5
    assert event.last_error == "still down"


@pytest.mark.asyncio
async def test_pending_events_respect_backoff_window(db_session) -> None:
    now = datetime.utcnow()
    due = await _add_event(db_session, retry_count=0, max_retries=5)
    await _add_event(
        db_session, retry_count=1, max_retries=5, next_retry_at=now + timedelta(minutes=5)
    )

    pending = await OutboxService(db_session).get_pending_events(now=now)

    assert [e.id for e in pending] == [due.id]


@pytest.mark.asyncio
async def test_publish_stamps_correlation_id(db_session) -> None:
    svc = OutboxService(db_session)
    event = await svc.publish(DomainEventType.FUNDS_RELEASED, "ORD-1", {"amount": "10.00"})
    await db_session.commit()

    assert event.status == EventStatus.PENDING
    assert event.max_retries == settings.OUTBOX_MAX_RETRIES
    assert event.payload["amount"] == "10.00"
    assert event.payload["correlation_id"]


@pytest.mark.asyncio
async def test_cleanup_sent_only_removes_old_delivered_events(db_session) -> None:
    now = datetime.utcnow()
    old_sent = OutboxEvent(
        event_type=DomainEventType.PLAN_CHANGED,
        aggregate_id="sub-1",
        payload={},
        status=EventStatus.SENT,
        processed_at=now - timedelta(days=45),
    )
    recent_sent = OutboxEvent(
        event_type=DomainEventType.PLAN_CHANGED,
        aggregate_id="sub-1",
        payload={},
        status=EventStatus.SENT,
        processed_at=now - timedelta(days=2),
    )
    db_session.add_all([old_sent, recent_sent])
    await db_session.commit()

    deleted = await OutboxService(db_session).cleanup_sent(days=30)

    assert deleted == 1
