from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import httpx

from webhook_sync.config import RetrySettings
from webhook_sync.models.subscription import ErrorKind, WebhookStatus, WebhookSubscription


def compute_backoff(*, attempt: int, base: int, maximum: int) -> int:
    if attempt <= 1:
        return min(base, maximum)
    value = base * (2 ** (attempt - 1))
    return min(int(value), int(maximum))


def is_retryable_exception(exc: Exception) -> bool:
    retryable: tuple[type[BaseException], ...] = (
        TimeoutError,
        ConnectionError,
        OSError,
        httpx.TimeoutException,
        httpx.NetworkError,
    )
    return isinstance(exc, retryable)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and abandonment rules shared by the background jobs.

    ``max_attempts`` stops automatic retries. Failed rows at the abandon
    threshold, or whose last error was permanent and will not be retried,
    move to inactive so the cleanup job can eventually purge them.
    """

    max_attempts: int = 3
    max_failures: int | None = None
    retry_delay_minutes: int = 15
    max_backoff_minutes: int = 360
    retry_permanent_errors: bool = False

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            max_failures=settings.max_failures,
            retry_delay_minutes=settings.retry_delay_minutes,
            max_backoff_minutes=settings.max_backoff_minutes,
            retry_permanent_errors=settings.retry_permanent_errors,
        )

    def is_retry_candidate(self, subscription: WebhookSubscription) -> bool:
        if subscription.status != WebhookStatus.FAILED.value:
            return False
        if subscription.failure_count >= self.max_attempts:
            return False
        if subscription.error_kind == ErrorKind.PERMANENT.value and not self.retry_permanent_errors:
            return False
        return True

    @property
    def abandon_threshold(self) -> int:
        if self.max_failures is None:
            return self.max_attempts
        return min(self.max_failures, self.max_attempts)

    @property
    def abandon_permanent(self) -> bool:
        return not self.retry_permanent_errors

    def should_abandon(self, subscription: WebhookSubscription) -> bool:
        if subscription.status != WebhookStatus.FAILED.value:
            return False
        if subscription.failure_count >= self.abandon_threshold:
            return True
        return self.abandon_permanent and subscription.error_kind == ErrorKind.PERMANENT.value

    def backoff(self, failure_count: int) -> timedelta:
        minutes = compute_backoff(
            attempt=failure_count,
            base=self.retry_delay_minutes,
            maximum=self.max_backoff_minutes,
        )
        return timedelta(minutes=minutes)

    def next_retry_at(self, subscription: WebhookSubscription) -> datetime:
        return as_utc(subscription.updated_at) + self.backoff(subscription.failure_count)

    def retry_due(self, subscription: WebhookSubscription, now: datetime) -> bool:
        return self.next_retry_at(subscription) <= now


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps (SQLite returns naive datetimes)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
