"""Cleanup: purge inactive subscriptions past the retention window."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from webhook_sync.jobs.base import CleanupSummary, job_pass
from webhook_sync.observability.metrics import METRICS
from webhook_sync.services.subscription_store import StoreError

if TYPE_CHECKING:
    from webhook_sync.services.subscription_manager import SubscriptionManager

logger = logging.getLogger(__name__)

JOB_NAME = "cleanup"


class CleanupJob:
    """The only writer that hard-deletes subscription rows.

    Rows are deleted when ``status`` is inactive and ``updated_at`` is
    strictly older than ``now - retention.inactive_days``.
    """

    def __init__(self, manager: SubscriptionManager):
        self.manager = manager

    async def run(self) -> CleanupSummary:
        summary = CleanupSummary(job=JOB_NAME)
        with job_pass(summary):
            await self._run(summary)
        return summary

    async def _run(self, summary: CleanupSummary) -> None:
        manager = self.manager
        cutoff = manager.now() - timedelta(days=manager.settings.retention.inactive_days)

        try:
            expired = await manager.store.find_expired_inactive(cutoff)
        except StoreError:
            logger.exception("Failed to list expired inactive subscriptions")
            summary.aborted = True
            return

        summary.candidates = len(expired)
        for subscription in expired:
            try:
                deleted = await manager.store.delete(subscription, cutoff=cutoff)
            except StoreError as e:
                logger.error(
                    "Failed to delete subscription",
                    extra={"repository_id": str(subscription.repository_id), "error": str(e)},
                )
                summary.errors += 1
                continue
            if not deleted:
                logger.info(
                    "Subscription changed since it was listed; kept",
                    extra={"repository_id": str(subscription.repository_id)},
                )
                continue
            summary.deleted += 1
            METRICS.subscriptions_deleted_total.inc()
            logger.info(
                "Deleted inactive subscription",
                extra={
                    "repository_id": str(subscription.repository_id),
                    "updated_at": subscription.updated_at.isoformat(),
                },
            )
