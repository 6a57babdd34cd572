"""Celery tasks that run one pass of each webhook job.

Each task runs its job in a fresh event loop and holds a non-blocking Redis
lock named after the job, so a beat tick that arrives while the previous
pass is still running is skipped instead of overlapping it.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from celery import Task
from celery.signals import worker_process_init

from webhook_sync.celery_app import (
    CLEANUP_TASK,
    HEALTH_CHECK_TASK,
    RECONCILIATION_TASK,
    celery_app,
)
from webhook_sync.core.redis_service import RedisService, build_redis_service
from webhook_sync.database import close_database
from webhook_sync.services.subscription_manager import SubscriptionManager, build_manager

logger = logging.getLogger(__name__)

# Matches task_time_limit so a lock left by a killed worker expires before the next tick
LOCK_TIMEOUT_SECONDS = 30 * 60


class BaseTask(Task):
    """Base task class with common error handling."""

    abstract = True

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        """Handle task failure."""
        from webhook_sync.observability.metrics import METRICS

        METRICS.celery_tasks_total.labels(task=str(self.name), status="fail").inc()
        logger.error(
            "Task failed",
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "error": str(exc),
            },
            exc_info=exc,
        )

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        """Handle task retry."""
        from webhook_sync.observability.metrics import METRICS

        METRICS.celery_tasks_total.labels(task=str(self.name), status="retry").inc()
        logger.warning(
            "Task retrying",
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "error": str(exc),
                "retry_count": self.request.retries,
            },
        )

    def on_success(
        self,
        retval: Any,
        task_id: str,
        args: tuple,
        kwargs: dict,
    ) -> None:
        """Handle task success."""
        from webhook_sync.observability.metrics import METRICS

        METRICS.celery_tasks_total.labels(task=str(self.name), status="success").inc()
        logger.info(
            "Task completed successfully",
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "result": retval,
            },
        )


_RUNNERS: dict[str, Callable[[SubscriptionManager], Any]] = {
    "reconciliation": lambda manager: manager.run_reconciliation(),
    "health_check": lambda manager: manager.run_health_check(),
    "cleanup": lambda manager: manager.run_cleanup(),
}


async def run_job_pass(
    job: str,
    *,
    lock_timeout: float = LOCK_TIMEOUT_SECONDS,
    manager_factory: Callable[[], SubscriptionManager] = build_manager,
    redis_factory: Callable[[], RedisService] = build_redis_service,
) -> dict:
    """Run one pass of ``job`` under its Redis lock and return the summary."""
    runner = _RUNNERS[job]
    redis_service = redis_factory()
    try:
        async with redis_service.job_lock(job, timeout=lock_timeout) as acquired:
            if not acquired:
                logger.info("Previous pass still running; skipping tick", extra={"job": job})
                return {"job": job, "status": "skipped", "reason": "locked"}
            summary = await runner(manager_factory())
            status = "aborted" if summary.aborted else "completed"
            return {**summary.as_dict(), "status": status}
    finally:
        await redis_service.disconnect()
        # Pooled connections are bound to this pass's event loop
        await close_database()


def _execute(task: Task, job: str) -> dict:
    from webhook_sync.observability.metrics import METRICS
    from webhook_sync.observability.tracing import init_tracing

    init_tracing(service_name="webhook-sync-worker")
    METRICS.celery_tasks_total.labels(task=str(task.name), status="started").inc()
    logger.info("Running webhook job", extra={"job": job, "task_id": task.request.id})
    return asyncio.run(run_job_pass(job))


@celery_app.task(bind=True, base=BaseTask, name=RECONCILIATION_TASK)
def run_reconciliation(self) -> dict:
    """Subscribe repositories that have no webhook subscription yet."""
    return _execute(self, "reconciliation")


@celery_app.task(bind=True, base=BaseTask, name=HEALTH_CHECK_TASK)
def run_health_check(self) -> dict:
    """Report stale subscriptions, abandon exhausted ones and retry failures."""
    return _execute(self, "health_check")


@celery_app.task(bind=True, base=BaseTask, name=CLEANUP_TASK)
def run_cleanup(self) -> dict:
    """Purge inactive subscriptions past the retention window."""
    return _execute(self, "cleanup")


@worker_process_init.connect
def _setup_worker_process(**_: Any) -> None:
    from webhook_sync.config import get_settings
    from webhook_sync.core.logging import setup_logging
    from webhook_sync.observability.metrics import start_worker_metrics_server

    setup_logging()
    port = get_settings().worker_metrics_port
    if not port:
        return
    try:
        start_worker_metrics_server(port=port)
    except OSError as e:
        # Only one pool process can bind the port
        logger.warning("Worker metrics server not started", extra={"port": port, "error": str(e)})
