"""
Celery Tasks for Scheduled Billing Work

Each task is a thin synchronous wrapper that runs one coroutine on a fresh
event loop with a fresh database session. Sweeps take a Redis guard so two
beat ticks never run the same sweep at once; the sweeps themselves are safe
to re-run.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any, Awaitable, Callable

from care_billing.workers.celery_app import celery_app
from care_billing.core.config import settings
from care_billing.core.locks import reset_lock_manager
from care_billing.core.logging import get_logger, set_correlation_id
from care_billing.core.redis_client import acquire_sweep_guard, release_sweep_guard
from care_billing.db.database import get_task_session
from care_billing.db.models.outbox_event import OutboxEvent
from care_billing.domain.services.earnings_service import EarningsService
from care_billing.domain.services.notification_service import NotificationPublisher
from care_billing.domain.services.outbox_service import OutboxService
from care_billing.domain.services.recurring_billing_service import RecurringBillingService

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    # entity locks belong to the loop that created them
    reset_lock_manager()
    try:
        yield loop
    finally:
        try:
            # the Redis singleton is bound to this loop; close it before the loop goes away
            from care_billing.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            reset_lock_manager()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _guarded(name: str, sweep: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    """Run sweep unless another worker already holds its guard"""
    if not await acquire_sweep_guard(name, settings.BILLING_SWEEP_LOCK_SECONDS):
        logger.info("Sweep already running elsewhere, skipping", extra_data={"sweep": name})
        return {"skipped": True}
    try:
        return await sweep()
    finally:
        await release_sweep_guard(name)


@celery_app.task(name="care_billing.workers.tasks.run_billing_sweep")
def run_billing_sweep():
    """Charge every subscription whose next charge date has passed"""

    async def _sweep():
        async with get_task_session() as db:
            return await RecurringBillingService(db).run_billing_sweep()

    return run_async(_guarded("billing", _sweep))


@celery_app.task(name="care_billing.workers.tasks.finalize_cancellations")
def finalize_cancellations():
    """PENDING_CANCELLATION -> CANCELLED for subscriptions whose period has ended"""

    async def _sweep():
        async with get_task_session() as db:
            return await RecurringBillingService(db).finalize_cancellations_sweep()

    return run_async(_guarded("cancellations", _sweep))


@celery_app.task(name="care_billing.workers.tasks.auto_release_order_funds")
def auto_release_order_funds():
    """Release one-time order funds that nobody approved or disputed in time"""

    async def _sweep():
        async with get_task_session() as db:
            return await EarningsService(db).auto_release_sweep()

    return run_async(_guarded("auto_release", _sweep))


@celery_app.task(name="care_billing.workers.tasks.reconcile_wallets")
def reconcile_wallets(fix: bool = False):
    """Compare every wallet with its ledger"""

    async def _reconcile():
        async with get_task_session() as db:
            return await EarningsService(db).reconcile_all_wallets(fix=fix)

    return run_async(_reconcile())


@celery_app.task(name="care_billing.workers.tasks.reconcile_gateway_webhook")
def reconcile_gateway_webhook(payload: dict):
    """Apply a charge callback received by the web tier"""

    async def _reconcile():
        async with get_task_session() as db:
            attempt = await RecurringBillingService(db).reconcile_charge_webhook(payload)
            if attempt is None:
                return {"matched": False}
            return {"matched": True, "status": attempt.status.value}

    return run_async(_reconcile())


async def _deliver_single_event(
    outbox_service: OutboxService, publisher: NotificationPublisher, event: OutboxEvent
) -> tuple[bool, str]:
    """Deliver one event and record the outcome"""
    await outbox_service.mark_as_processing(event.id)
    try:
        await publisher.publish(event)
    except Exception as e:
        logger.error(
            "Domain event delivery failed",
            extra_data={"event_id": event.id, "event_type": event.event_type.value, "error": str(e)},
            exc_info=True,
        )
        await outbox_service.mark_as_failed(event.id, str(e))
        return False, str(e)

    await outbox_service.mark_as_sent(event.id)
    return True, "Event delivered"


@celery_app.task(name="care_billing.workers.tasks.process_domain_events")
def process_domain_events():
    """
    Deliver pending domain events to the notification collaborator.
    This task runs periodically to ensure reliable delivery.
    """

    async def _process():
        async with get_task_session() as db:
            outbox_service = OutboxService(db)
            publisher = NotificationPublisher()
            events = await outbox_service.get_pending_events(limit=settings.OUTBOX_BATCH_SIZE)

            results = []
            for event in events:
                success, result = await _deliver_single_event(outbox_service, publisher, event)
                results.append({
                    "event_id": event.id,
                    "success": success,
                    "result": result
                })

            return results

    return run_async(_process())


@celery_app.task(name="care_billing.workers.tasks.cleanup_sent_events")
def cleanup_sent_events(days: int = 30):
    """Clean up delivered events from the outbox"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await OutboxService(db).cleanup_sent(days=days)
            logger.info(
                "Cleaned up delivered domain events",
                extra_data={"deleted": deleted, "cutoff_days": days},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
