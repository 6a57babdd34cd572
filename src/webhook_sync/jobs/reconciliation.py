"""Reconciliation: give every eligible repository without a subscription one."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from webhook_sync.jobs.base import PassSummary, job_pass
from webhook_sync.observability.metrics import METRICS
from webhook_sync.services.repository_directory import EligibilityError, check_eligibility
from webhook_sync.services.subscription_manager import AttemptOutcome, AttemptResult

if TYPE_CHECKING:
    from webhook_sync.services.subscription_manager import SubscriptionManager

logger = logging.getLogger(__name__)

JOB_NAME = "reconciliation"


class ReconciliationJob:
    def __init__(self, manager: SubscriptionManager):
        self.manager = manager

    async def run(self) -> PassSummary:
        """Run one pass. Never raises; a candidate listing failure aborts the pass."""
        summary = PassSummary(job=JOB_NAME)
        with job_pass(summary):
            await self._run(summary)
        return summary

    async def _run(self, summary: PassSummary) -> None:
        manager = self.manager
        delay = manager.settings.scheduling.reconciliation_delay_seconds

        try:
            candidates = await manager.directory.list_repositories_without_subscription()
        except Exception:
            logger.exception("Failed to list repositories without subscription")
            summary.aborted = True
            return

        summary.candidates = len(candidates)
        logger.info("Reconciliation started", extra={"candidates": summary.candidates})

        called_gateway = False
        for repository in candidates:
            try:
                check_eligibility(repository)
            except EligibilityError as e:
                logger.info(
                    "Skipping repository",
                    extra={"repository": repository.full_name, "reason": e.reason},
                )
                METRICS.subscribe_attempts_total.labels(
                    job=JOB_NAME, outcome=AttemptOutcome.SKIPPED.value
                ).inc()
                summary.skipped += 1
                continue

            # Pace successive provider calls
            if called_gateway:
                await manager.sleep(delay)

            try:
                result = await manager.attempt_subscribe(repository.id, job=JOB_NAME)
            except Exception as e:
                logger.exception(
                    "Subscribe attempt raised", extra={"repository": repository.full_name}
                )
                result = AttemptResult(repository.id, AttemptOutcome.ERROR, reason=str(e))
            called_gateway = called_gateway or result.gateway_called
            summary.record(result)
