"""Celery application configuration."""
from datetime import timedelta

from celery import Celery
from celery.schedules import crontab

from webhook_sync.config import Settings, get_settings

RECONCILIATION_TASK = "webhook_sync.tasks.webhook_tasks.run_reconciliation"
HEALTH_CHECK_TASK = "webhook_sync.tasks.webhook_tasks.run_health_check"
CLEANUP_TASK = "webhook_sync.tasks.webhook_tasks.run_cleanup"


def build_beat_schedule(settings: Settings) -> dict[str, dict]:
    """Periodic entries for the three webhook jobs; empty when scheduling is disabled."""
    scheduling = settings.scheduling
    if not scheduling.enabled:
        return {}

    return {
        "webhook-reconciliation": {
            "task": RECONCILIATION_TASK,
            "schedule": timedelta(minutes=scheduling.reconciliation_interval_minutes),
        },
        "webhook-health-check": {
            "task": HEALTH_CHECK_TASK,
            "schedule": timedelta(hours=scheduling.health_check_interval_hours),
        },
        "webhook-cleanup": {
            "task": CLEANUP_TASK,
            "schedule": crontab(hour=scheduling.cleanup_hour, minute=scheduling.cleanup_minute),
        },
    }


settings = get_settings()

# Create Celery application
celery_app = Celery(
    "webhook_sync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["webhook_sync.tasks.webhook_tasks"],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Reliability settings
    task_acks_late=True,  # Acknowledge after task completes
    task_reject_on_worker_lost=True,  # Re-queue if worker dies
    worker_prefetch_multiplier=1,  # One task at a time per worker

    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour

    task_routes={
        "webhook_sync.tasks.webhook_tasks.*": {"queue": "default"},
    },

    # A reconciliation pass paces provider calls, so it can run for a while
    task_soft_time_limit=25 * 60,
    task_time_limit=30 * 60,
)

celery_app.conf.beat_schedule = build_beat_schedule(settings)
