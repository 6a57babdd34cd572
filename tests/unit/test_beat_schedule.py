from __future__ import annotations

from datetime import timedelta

from celery.schedules import crontab
from webhook_sync.celery_app import (
    CLEANUP_TASK,
    HEALTH_CHECK_TASK,
    RECONCILIATION_TASK,
    build_beat_schedule,
    celery_app,
)
from webhook_sync.config import SchedulingSettings, Settings


def test_schedule_uses_configured_cadence() -> None:
    settings = Settings(
        scheduling=SchedulingSettings(
            reconciliation_interval_minutes=10,
            health_check_interval_hours=3,
            cleanup_hour=4,
            cleanup_minute=15,
        )
    )

    schedule = build_beat_schedule(settings)

    assert schedule["webhook-reconciliation"]["task"] == RECONCILIATION_TASK
    assert schedule["webhook-reconciliation"]["schedule"] == timedelta(minutes=10)
    assert schedule["webhook-health-check"]["task"] == HEALTH_CHECK_TASK
    assert schedule["webhook-health-check"]["schedule"] == timedelta(hours=3)
    assert schedule["webhook-cleanup"]["task"] == CLEANUP_TASK
    assert schedule["webhook-cleanup"]["schedule"] == crontab(hour=4, minute=15)


def test_disabled_scheduling_produces_no_entries() -> None:
    settings = Settings(scheduling=SchedulingSettings(enabled=False))
    assert build_beat_schedule(settings) == {}


def test_task_names_are_registered() -> None:
    import webhook_sync.tasks.webhook_tasks  # noqa: F401

    for name in (RECONCILIATION_TASK, HEALTH_CHECK_TASK, CLEANUP_TASK):
        assert name in celery_app.tasks
