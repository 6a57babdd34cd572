"""Pass summaries and the per-pass instrumentation shared by the jobs."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from uuid import uuid4

from webhook_sync.core.logging import job_ctx, pass_id_ctx
from webhook_sync.observability.metrics import METRICS
from webhook_sync.observability.tracing import start_span
from webhook_sync.services.subscription_manager import AttemptOutcome, AttemptResult

logger = logging.getLogger(__name__)


@dataclass
class PassSummary:
    """Tallies for one reconciliation pass."""

    job: str
    pass_id: str = ""
    candidates: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    aborted: bool = False
    duration_seconds: float = 0.0

    def record(self, result: AttemptResult) -> None:
        if result.outcome == AttemptOutcome.SUCCEEDED:
            self.succeeded += 1
        elif result.outcome == AttemptOutcome.FAILED:
            self.failed += 1
        elif result.outcome == AttemptOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class HealthCheckSummary(PassSummary):
    stale: int = 0
    reverified: int = 0
    abandoned: int = 0
    retried: int = 0
    deferred: int = 0


@dataclass
class CleanupSummary:
    job: str
    pass_id: str = ""
    candidates: int = 0
    deleted: int = 0
    errors: int = 0
    aborted: bool = False
    duration_seconds: float = 0.0

    def as_dict(self) -> dict:
        return asdict(self)


@contextmanager
def job_pass(summary: PassSummary | CleanupSummary) -> Iterator[str]:
    """Bind job context, open a span and account for one pass of ``summary.job``."""
    summary.pass_id = uuid4().hex
    job_token = job_ctx.set(summary.job)
    pass_token = pass_id_ctx.set(summary.pass_id)
    started = time.perf_counter()
    try:
        with start_span(
            f"webhook_sync.{summary.job}",
            attributes={"job": summary.job, "pass_id": summary.pass_id},
        ) as span:
            yield summary.pass_id
            span.set_attribute("aborted", summary.aborted)
    finally:
        summary.duration_seconds = round(time.perf_counter() - started, 3)
        status = "aborted" if summary.aborted else "completed"
        METRICS.job_passes_total.labels(job=summary.job, status=status).inc()
        METRICS.job_pass_duration_seconds.labels(job=summary.job).observe(
            summary.duration_seconds
        )
        logger.info("Job pass finished", extra={"status": status, **summary.as_dict()})
        pass_id_ctx.reset(pass_token)
        job_ctx.reset(job_token)
