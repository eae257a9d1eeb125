"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from care_billing.core.config import settings
from care_billing.core.logging import setup_logging


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Workers log JSON through the same root handler as the rest of the app"""
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)


celery_app = Celery(
    "care_billing",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["care_billing.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # a sweep must finish inside its Redis guard
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "charge-due-subscriptions": {
        "task": "care_billing.workers.tasks.run_billing_sweep",
        "schedule": float(settings.BILLING_SWEEP_INTERVAL_SECONDS),
    },
    "finalize-cancellations": {
        "task": "care_billing.workers.tasks.finalize_cancellations",
        "schedule": float(settings.BILLING_SWEEP_INTERVAL_SECONDS),
    },
    "auto-release-order-funds-hourly": {
        "task": "care_billing.workers.tasks.auto_release_order_funds",
        "schedule": 3600.0,
    },
    "deliver-domain-events-every-10-seconds": {
        "task": "care_billing.workers.tasks.process_domain_events",
        "schedule": 10.0,
    },
    # reconcile every wallet against the ledger at 02:00 UTC; drift is logged, not fixed
    "reconcile-wallets-daily": {
        "task": "care_billing.workers.tasks.reconcile_wallets",
        "schedule": crontab(hour="2", minute="0"),
    },
    "cleanup-sent-events-daily": {
        "task": "care_billing.workers.tasks.cleanup_sent_events",
        "schedule": 86400.0,  # 24 hours
    },
}
