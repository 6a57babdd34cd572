"""Subscription lifecycle orchestration.

The manager owns the shared "attempt subscribe for repository X" step used by
every job, plus the retry policy and the clock. Jobs live in
``webhook_sync.jobs`` and receive the manager as their only collaborator.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from uuid import UUID

from webhook_sync.config import Settings, get_settings
from webhook_sync.core.logging import repository_id_ctx
from webhook_sync.database import SessionFactory, get_async_session
from webhook_sync.models.subscription import ErrorKind, WebhookStatus, WebhookSubscription
from webhook_sync.observability.metrics import METRICS
from webhook_sync.ops.retry_policy import RetryPolicy, as_utc
from webhook_sync.services.repository_directory import (
    EligibilityError,
    RepositoryDirectory,
    RepositoryRef,
    SqlRepositoryDirectory,
    check_eligibility,
)
from webhook_sync.services.subscription_store import (
    StoreError,
    SubscriptionStore,
    SubscriptionUpdate,
)
from webhook_sync.services.webhook_gateway import (
    GatewayError,
    GatewayPermanentError,
    GitHubWebhookGateway,
    WebhookGateway,
    WebhookRegistration,
)

logger = logging.getLogger(__name__)

GatewayCall = Callable[[RepositoryRef], Awaitable[WebhookRegistration | None]]


class AttemptOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    ERROR = "error"


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of one per-repository operation.

    ``reason`` carries the eligibility reason for skips and the error message
    for failures and errors.
    """

    repository_id: UUID
    outcome: AttemptOutcome
    reason: str | None = None
    error_kind: ErrorKind | None = None
    gateway_called: bool = False
    subscription: WebhookSubscription | None = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCEEDED


@dataclass(frozen=True)
class RepositoryWebhookState:
    """Snapshot of one repository and its subscription row, if any."""

    repository: RepositoryRef
    subscription: WebhookSubscription | None
    stale: bool = False

    @property
    def healthy(self) -> bool:
        subscription = self.subscription
        return (
            subscription is not None
            and subscription.status == WebhookStatus.ACTIVE.value
            and not self.stale
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionManager:
    """Coordinates the store, the repository directory and the gateway."""

    def __init__(
        self,
        *,
        store: SubscriptionStore,
        directory: RepositoryDirectory,
        gateway: WebhookGateway,
        settings: Settings | None = None,
        now: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.policy = RetryPolicy.from_settings(self.settings.retry)
        self.store = store
        self.directory = directory
        self.gateway = gateway
        self._now = now
        self._sleep = sleep

    def now(self) -> datetime:
        return self._now()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)

    async def attempt_subscribe(self, repository_id: UUID, *, job: str = "manual") -> AttemptResult:
        """Create or verify the repository's webhook and record the outcome.

        Eligibility is re-checked against a fresh directory read; an
        ineligible or missing repository is skipped without any write.
        Otherwise exactly one store write happens.
        """
        return await self._with_gateway(repository_id, job, self.gateway.subscribe)

    async def reverify(
        self, repository_id: UUID, *, webhook_id: str | None, job: str = "health_check"
    ) -> AttemptResult:
        """Confirm liveness of a known hook, re-creating it when it is gone."""
        if not webhook_id:
            return await self.attempt_subscribe(repository_id, job=job)

        async def ping_or_recreate(repository: RepositoryRef) -> WebhookRegistration | None:
            try:
                await self.gateway.ping(repository, webhook_id)
            except GatewayPermanentError as e:
                if e.status_code != 404:
                    raise
                logger.info(
                    "Webhook missing on provider; re-creating",
                    extra={"webhook_id": webhook_id},
                )
                return await self.gateway.subscribe(repository)
            return None

        return await self._with_gateway(repository_id, job, ping_or_recreate)

    async def _with_gateway(
        self, repository_id: UUID, job: str, call: GatewayCall
    ) -> AttemptResult:
        token = repository_id_ctx.set(str(repository_id))
        try:
            result = await self._run_attempt(repository_id, job, call)
        finally:
            repository_id_ctx.reset(token)
        METRICS.subscribe_attempts_total.labels(job=job, outcome=result.outcome.value).inc()
        return result

    async def _run_attempt(
        self, repository_id: UUID, job: str, call: GatewayCall
    ) -> AttemptResult:
        try:
            repository = await self.directory.get_repository(repository_id)
        except Exception as e:
            logger.exception("Repository lookup failed", extra={"job": job})
            return AttemptResult(repository_id, AttemptOutcome.ERROR, reason=str(e))

        if repository is None:
            logger.info("Repository no longer exists; skipping")
            return AttemptResult(repository_id, AttemptOutcome.SKIPPED, reason="repository_not_found")

        try:
            check_eligibility(repository)
        except EligibilityError as e:
            logger.info(
                "Repository not eligible for a webhook; skipping",
                extra={"repository": repository.full_name, "reason": e.reason},
            )
            return AttemptResult(repository_id, AttemptOutcome.SKIPPED, reason=e.reason)

        timeout = self.settings.gateway.timeout_seconds
        registration: WebhookRegistration | None = None
        error: str | None = None
        error_kind: ErrorKind | None = None
        try:
            registration = await asyncio.wait_for(call(repository), timeout=timeout)
        except asyncio.TimeoutError:
            error, error_kind = f"gateway call timed out after {timeout}s", ErrorKind.TRANSIENT
        except GatewayError as e:
            error = str(e)
            error_kind = ErrorKind.PERMANENT if e.permanent else ErrorKind.TRANSIENT
        except Exception as e:
            logger.exception(
                "Unexpected gateway error", extra={"repository": repository.full_name}
            )
            error, error_kind = f"{type(e).__name__}: {e}", ErrorKind.TRANSIENT

        now = self.now()
        if error_kind is None:
            update = SubscriptionUpdate.success(
                repository_id,
                now=now,
                webhook_id=registration.webhook_id if registration else None,
                webhook_url=registration.webhook_url if registration else None,
                events=",".join(registration.events) if registration else None,
            )
        else:
            update = SubscriptionUpdate.failure(
                repository_id, now=now, error=error, error_kind=error_kind
            )

        try:
            row = await self.store.upsert(update)
        except StoreError as e:
            logger.error(
                "Failed to record subscription outcome",
                extra={"repository": repository.full_name, "error": str(e)},
            )
            return AttemptResult(
                repository_id, AttemptOutcome.ERROR, reason=str(e), gateway_called=True
            )

        if error_kind is None:
            logger.info(
                "Webhook subscription active",
                extra={"repository": repository.full_name, "webhook_id": row.webhook_id},
            )
            return AttemptResult(
                repository_id, AttemptOutcome.SUCCEEDED, gateway_called=True, subscription=row
            )

        logger.warning(
            "Webhook subscription failed",
            extra={
                "repository": repository.full_name,
                "error": error,
                "error_kind": error_kind.value,
                "failure_count": row.failure_count,
            },
        )
        return AttemptResult(
            repository_id,
            AttemptOutcome.FAILED,
            reason=error,
            error_kind=error_kind,
            gateway_called=True,
            subscription=row,
        )

    async def unsubscribe(self, repository_id: UUID) -> AttemptResult:
        """Remove the remote hook (when known) and mark the subscription inactive."""
        token = repository_id_ctx.set(str(repository_id))
        try:
            return await self._unsubscribe(repository_id)
        finally:
            repository_id_ctx.reset(token)

    async def _unsubscribe(self, repository_id: UUID) -> AttemptResult:
        try:
            subscription = await self.store.get(repository_id)
        except StoreError as e:
            return AttemptResult(repository_id, AttemptOutcome.ERROR, reason=str(e))
        if subscription is None:
            return AttemptResult(repository_id, AttemptOutcome.SKIPPED, reason="no_subscription")
        if subscription.status == WebhookStatus.INACTIVE.value:
            return AttemptResult(
                repository_id,
                AttemptOutcome.SKIPPED,
                reason="already_inactive",
                subscription=subscription,
            )

        gateway_called = False
        if subscription.webhook_id:
            try:
                repository = await self.directory.get_repository(repository_id)
            except Exception as e:
                logger.exception("Repository lookup failed")
                return AttemptResult(repository_id, AttemptOutcome.ERROR, reason=str(e))
            if repository is not None and repository.owner_credential_present:
                gateway_called = True
                try:
                    await asyncio.wait_for(
                        self.gateway.unsubscribe(repository, subscription.webhook_id),
                        timeout=self.settings.gateway.timeout_seconds,
                    )
                except GatewayPermanentError as e:
                    logger.warning(
                        "Could not delete remote webhook; deactivating anyway",
                        extra={"webhook_id": subscription.webhook_id, "error": str(e)},
                    )
                except (GatewayError, asyncio.TimeoutError) as e:
                    logger.warning(
                        "Remote webhook deletion failed; subscription left unchanged",
                        extra={"webhook_id": subscription.webhook_id, "error": str(e)},
                    )
                    return AttemptResult(
                        repository_id,
                        AttemptOutcome.FAILED,
                        reason=str(e) or "gateway call timed out",
                        error_kind=ErrorKind.TRANSIENT,
                        gateway_called=True,
                        subscription=subscription,
                    )

        try:
            row = await self.store.update_existing(
                SubscriptionUpdate.deactivation(repository_id, now=self.now())
            )
        except StoreError as e:
            return AttemptResult(
                repository_id, AttemptOutcome.ERROR, reason=str(e), gateway_called=gateway_called
            )
        if row is None:
            return AttemptResult(repository_id, AttemptOutcome.SKIPPED, reason="no_subscription")

        logger.info("Webhook subscription deactivated", extra={"webhook_id": row.webhook_id})
        return AttemptResult(
            repository_id,
            AttemptOutcome.SUCCEEDED,
            gateway_called=gateway_called,
            subscription=row,
        )

    async def reregister(self, repository_id: UUID, *, job: str = "api") -> AttemptResult:
        """Drop the current hook and subscribe again.

        Eligibility is checked first so an ineligible repository keeps its
        row. A failed removal does not stop the new subscribe, which reuses
        any hook still pointing at the delivery URL.
        """
        try:
            repository = await self.directory.get_repository(repository_id)
        except Exception as e:
            logger.exception("Repository lookup failed", extra={"job": job})
            return AttemptResult(repository_id, AttemptOutcome.ERROR, reason=str(e))
        if repository is None:
            return AttemptResult(repository_id, AttemptOutcome.SKIPPED, reason="repository_not_found")
        try:
            check_eligibility(repository)
        except EligibilityError as e:
            return AttemptResult(repository_id, AttemptOutcome.SKIPPED, reason=e.reason)

        removed = await self.unsubscribe(repository_id)
        if removed.outcome in (AttemptOutcome.FAILED, AttemptOutcome.ERROR):
            logger.warning(
                "Could not remove webhook before re-registering",
                extra={"repository": repository.full_name, "error": removed.reason},
            )
        return await self.attempt_subscribe(repository_id, job=job)

    def is_stale(self, subscription: WebhookSubscription | None) -> bool:
        if subscription is None:
            return False
        if subscription.last_ping is None:
            return True
        threshold = self.now() - timedelta(hours=self.settings.health.stale_threshold_hours)
        return as_utc(subscription.last_ping) < threshold

    async def repository_status(self, repository_id: UUID) -> RepositoryWebhookState | None:
        """None when the repository is unknown. Lookup failures raise StoreError."""
        try:
            repository = await self.directory.get_repository(repository_id)
        except Exception as e:
            raise StoreError(f"failed to load repository {repository_id}: {e}") from e
        if repository is None:
            return None
        subscription = await self.store.get(repository_id)
        return RepositoryWebhookState(
            repository=repository,
            subscription=subscription,
            stale=self.is_stale(subscription),
        )

    async def record_delivery(
        self, repository_id: UUID, *, success: bool, error: str | None = None
    ) -> WebhookSubscription | None:
        """Record an inbound delivery for the repository's subscription, if any."""
        row = await self.store.record_delivery(
            repository_id, success=success, now=self.now(), error=error
        )
        if row is None:
            logger.debug(
                "Delivery for repository without subscription",
                extra={"repository_id": str(repository_id)},
            )
        return row

    async def run_reconciliation(self):
        from webhook_sync.jobs.reconciliation import ReconciliationJob

        return await ReconciliationJob(self).run()

    async def run_health_check(self):
        from webhook_sync.jobs.health_check import HealthCheckJob

        return await HealthCheckJob(self).run()

    async def run_cleanup(self):
        from webhook_sync.jobs.cleanup import CleanupJob

        return await CleanupJob(self).run()


def build_manager(
    settings: Settings | None = None,
    session_factory: SessionFactory = get_async_session,
) -> SubscriptionManager:
    """Wire the SQL store and directory with the GitHub gateway."""
    settings = settings or get_settings()
    return SubscriptionManager(
        store=SubscriptionStore(session_factory),
        directory=SqlRepositoryDirectory(session_factory),
        gateway=GitHubWebhookGateway(settings.gateway),
        settings=settings,
    )
