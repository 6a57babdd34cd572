"""Health/retry: flag stale subscriptions, abandon exhausted ones, retry failed ones."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from webhook_sync.jobs.base import HealthCheckSummary, job_pass
from webhook_sync.models.subscription import WebhookStatus
from webhook_sync.observability.metrics import METRICS
from webhook_sync.services.subscription_manager import AttemptOutcome, AttemptResult
from webhook_sync.services.subscription_store import StoreError, SubscriptionUpdate

if TYPE_CHECKING:
    from webhook_sync.models.subscription import WebhookSubscription
    from webhook_sync.services.subscription_manager import SubscriptionManager

logger = logging.getLogger(__name__)

JOB_NAME = "health_check"


class HealthCheckJob:
    """
    One pass runs three phases in order:

    1. Staleness: rows whose ``last_ping`` is older than the stale threshold
       (or never set) are reported. With ``stale_policy=reverify`` stale
       active rows are re-verified through the gateway.
    2. Abandonment: failed rows at the abandon threshold become inactive, as
       do rows whose last error was permanent when those are not retried.
    3. Retry: failed rows below ``max_attempts`` whose backoff window has
       elapsed get another subscribe attempt. Rows whose last error was
       permanent are left alone unless ``retry_permanent_errors`` is set.
    """

    def __init__(self, manager: SubscriptionManager):
        self.manager = manager
        self.policy = manager.policy

    async def run(self) -> HealthCheckSummary:
        summary = HealthCheckSummary(job=JOB_NAME)
        with job_pass(summary):
            await self._run(summary)
        return summary

    async def _run(self, summary: HealthCheckSummary) -> None:
        for phase in (self._check_stale, self._abandon_exhausted, self._retry_failed):
            try:
                await phase(summary)
            except StoreError:
                logger.exception("Failed to load candidates", extra={"phase": phase.__name__})
                summary.aborted = True
                return

    async def _attempt(self, summary: HealthCheckSummary, subscription, reverify: bool) -> None:
        manager = self.manager
        try:
            if reverify:
                result = await manager.reverify(
                    subscription.repository_id, webhook_id=subscription.webhook_id, job=JOB_NAME
                )
            else:
                result = await manager.attempt_subscribe(subscription.repository_id, job=JOB_NAME)
        except Exception as e:
            logger.exception("Health check attempt raised")
            result = AttemptResult(subscription.repository_id, AttemptOutcome.ERROR, reason=str(e))
        summary.record(result)

    async def _check_stale(self, summary: HealthCheckSummary) -> None:
        manager = self.manager
        now = manager.now()
        threshold = now - timedelta(hours=manager.settings.health.stale_threshold_hours)
        reverify = manager.settings.health.stale_policy == "reverify"

        stale: list[WebhookSubscription] = await manager.store.find_stale(threshold)
        for subscription in stale:
            summary.stale += 1
            METRICS.stale_subscriptions_total.labels(status=subscription.status).inc()
            logger.warning(
                "Stale webhook subscription",
                extra={
                    "repository_id": str(subscription.repository_id),
                    "status": subscription.status,
                    "last_ping": subscription.last_ping.isoformat()
                    if subscription.last_ping
                    else None,
                    "failure_count": subscription.failure_count,
                },
            )
            if reverify and subscription.status == WebhookStatus.ACTIVE.value:
                summary.reverified += 1
                await self._attempt(summary, subscription, reverify=True)

    async def _abandon_exhausted(self, summary: HealthCheckSummary) -> None:
        manager = self.manager
        exhausted = await manager.store.find_abandon_candidates(
            self.policy.abandon_threshold, include_permanent=self.policy.abandon_permanent
        )
        for subscription in exhausted:
            try:
                row = await manager.store.update_existing(
                    SubscriptionUpdate.deactivation(subscription.repository_id, now=manager.now()),
                    when=self.policy.should_abandon,
                )
            except StoreError as e:
                logger.error(
                    "Failed to abandon subscription",
                    extra={"repository_id": str(subscription.repository_id), "error": str(e)},
                )
                summary.errors += 1
                continue
            if row is None:
                continue
            summary.abandoned += 1
            METRICS.subscriptions_abandoned_total.inc()
            logger.warning(
                "Abandoned failed subscription",
                extra={
                    "repository_id": str(subscription.repository_id),
                    "failure_count": subscription.failure_count,
                    "last_error": subscription.last_error,
                    "error_kind": subscription.error_kind,
                },
            )

    async def _retry_failed(self, summary: HealthCheckSummary) -> None:
        manager = self.manager
        now = manager.now()
        candidates = await manager.store.find_retry_candidates(self.policy.max_attempts)
        for subscription in candidates:
            if not self.policy.is_retry_candidate(subscription):
                logger.info(
                    "Not retrying subscription after permanent error",
                    extra={
                        "repository_id": str(subscription.repository_id),
                        "last_error": subscription.last_error,
                    },
                )
                summary.skipped += 1
                continue
            if not self.policy.retry_due(subscription, now):
                summary.deferred += 1
                logger.debug(
                    "Retry deferred",
                    extra={
                        "repository_id": str(subscription.repository_id),
                        "next_retry_at": self.policy.next_retry_at(subscription).isoformat(),
                    },
                )
                continue
            summary.retried += 1
            await self._attempt(summary, subscription, reverify=False)
