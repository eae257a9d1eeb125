"""
Outbox Service - Transactional Outbox for Domain Events

Events are added to the same session as the state change that caused them,
so they commit or roll back together. A Celery task delivers them later.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, List

from sqlalchemy import or_, select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from care_billing.core.backoff import next_attempt_at
from care_billing.core.clock import utcnow
from care_billing.core.config import settings
from care_billing.core.logging import get_correlation_id, get_logger
from care_billing.db.models.outbox_event import DomainEventType, EventStatus, OutboxEvent
from care_billing.db.models.subscription import Subscription

logger = get_logger(__name__)


def subscription_payload(subscription: Subscription, **extra: Any) -> dict[str, Any]:
    """Ids and money as strings; the consumer formats and delivers messages"""
    payload = {
        "subscription_id": subscription.id,
        "client_id": subscription.client_id,
        "caregiver_id": subscription.caregiver_id,
        "status": subscription.status.value,
        "price_per_cycle": str(subscription.price_per_cycle),
        "currency": subscription.currency,
        "billing_cycles_completed": subscription.billing_cycles_completed,
    }
    for key, value in extra.items():
        payload[key] = value if isinstance(value, (int, bool, type(None))) else str(value)
    return payload


class OutboxService:
    """Queue and track domain events"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def publish(
        self,
        event_type: DomainEventType,
        aggregate_id: str,
        payload: dict[str, Any],
    ) -> OutboxEvent:
        """Add an event to the current transaction (no commit)"""
        event = OutboxEvent(
            event_type=event_type,
            aggregate_id=aggregate_id,
            payload={**payload, "correlation_id": get_correlation_id()},
            status=EventStatus.PENDING,
            max_retries=settings.OUTBOX_MAX_RETRIES,
        )
        self.db.add(event)
        logger.debug(
            "Domain event queued",
            extra_data={"event_type": event_type.value, "aggregate_id": aggregate_id}
        )
        return event

    async def publish_for_subscription(
        self, event_type: DomainEventType, subscription: Subscription, **extra: Any
    ) -> OutboxEvent:
        return await self.publish(event_type, subscription.id, subscription_payload(subscription, **extra))

    async def get_pending_events(self, limit: int = 100, now: datetime | None = None) -> List[OutboxEvent]:
        """Pending events whose backoff window has passed"""
        now = now or utcnow()
        result = await self.db.execute(
            select(OutboxEvent)
            .where(
                OutboxEvent.status == EventStatus.PENDING,
                or_(OutboxEvent.next_retry_at.is_(None), OutboxEvent.next_retry_at <= now),
            )
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get(self, event_id: int) -> OutboxEvent | None:
        result = await self.db.execute(select(OutboxEvent).where(OutboxEvent.id == event_id))
        return result.scalar_one_or_none()

    async def mark_as_processing(self, event_id: int) -> None:
        event = await self._get(event_id)
        if event:
            event.status = EventStatus.PROCESSING
            await self.db.commit()

    async def mark_as_sent(self, event_id: int) -> None:
        event = await self._get(event_id)
        if event:
            event.status = EventStatus.SENT
            event.processed_at = utcnow()
            await self.db.commit()

    async def mark_as_failed(self, event_id: int, error: str) -> None:
        """Count the failure; schedule a retry with backoff or give up at max_retries"""
        event = await self._get(event_id)
        if not event:
            return

        event.retry_count += 1
        event.last_error = error[:1000]

        if event.retry_count >= event.max_retries:
            event.status = EventStatus.FAILED
            logger.error(
                "Domain event delivery gave up",
                extra_data={
                    "event_id": event.id,
                    "event_type": event.event_type.value,
                    "retry_count": event.retry_count,
                    "error": error,
                }
            )
        else:
            event.status = EventStatus.PENDING
            event.next_retry_at = next_attempt_at(
                utcnow(),
                event.retry_count,
                base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
            )

        await self.db.commit()

    async def cleanup_sent(self, days: int = 30) -> int:
        """Delete delivered events older than days"""
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(OutboxEvent).where(
                OutboxEvent.status == EventStatus.SENT,
                OutboxEvent.processed_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0
