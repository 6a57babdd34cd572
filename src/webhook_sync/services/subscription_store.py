"""Durable record of one webhook subscription per repository."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, delete, exists, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_sync.database import SessionFactory, get_async_session
from webhook_sync.models.repository import Repository
from webhook_sync.models.subscription import ErrorKind, WebhookStatus, WebhookSubscription
from webhook_sync.ops.retry_policy import as_utc

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Persistence failure while reading or writing subscriptions."""


@dataclass(frozen=True)
class SubscriptionUpdate:
    """A single state transition to apply to a repository's subscription row."""

    repository_id: UUID
    status: WebhookStatus
    now: datetime
    webhook_id: str | None = None
    webhook_url: str | None = None
    events: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    delivered: bool = False

    @classmethod
    def success(
        cls,
        repository_id: UUID,
        *,
        now: datetime,
        webhook_id: str | None = None,
        webhook_url: str | None = None,
        events: str | None = None,
        delivered: bool = False,
    ) -> SubscriptionUpdate:
        return cls(
            repository_id=repository_id,
            status=WebhookStatus.ACTIVE,
            now=now,
            webhook_id=webhook_id,
            webhook_url=webhook_url,
            events=events,
            delivered=delivered,
        )

    @classmethod
    def failure(
        cls,
        repository_id: UUID,
        *,
        now: datetime,
        error: str,
        error_kind: ErrorKind = ErrorKind.TRANSIENT,
        delivered: bool = False,
    ) -> SubscriptionUpdate:
        return cls(
            repository_id=repository_id,
            status=WebhookStatus.FAILED,
            now=now,
            error=error,
            error_kind=error_kind,
            delivered=delivered,
        )

    @classmethod
    def deactivation(cls, repository_id: UUID, *, now: datetime) -> SubscriptionUpdate:
        return cls(repository_id=repository_id, status=WebhookStatus.INACTIVE, now=now)


def _apply(row: WebhookSubscription, update: SubscriptionUpdate) -> None:
    if update.status == WebhookStatus.ACTIVE:
        row.status = WebhookStatus.ACTIVE.value
        row.failure_count = 0
        row.last_error = None
        row.error_kind = None
        if row.last_ping is None or as_utc(row.last_ping) < update.now:
            row.last_ping = update.now
        if update.webhook_id is not None:
            row.webhook_id = update.webhook_id
        if update.webhook_url is not None:
            row.webhook_url = update.webhook_url
        if update.events is not None:
            row.events = update.events
    elif update.status == WebhookStatus.FAILED:
        row.status = WebhookStatus.FAILED.value
        row.failure_count = (row.failure_count or 0) + 1
        row.last_error = (update.error or "")[:1000] or None
        row.error_kind = update.error_kind.value if update.error_kind else None
    else:
        row.status = update.status.value

    if update.delivered:
        row.last_delivery = update.now
    row.updated_at = update.now


def _expired_inactive(cutoff: datetime):
    return and_(
        WebhookSubscription.status == WebhookStatus.INACTIVE.value,
        WebhookSubscription.updated_at < cutoff,
    )


class SubscriptionStore:
    """SQL-backed subscription store.

    Every mutation touches a single row keyed by repository id. Concurrent
    writers race on a last-writer-wins basis; ``failure_count`` is always
    incremented from the value read inside the writing transaction.
    """

    def __init__(self, session_factory: SessionFactory = get_async_session):
        self._session_factory = session_factory

    async def _locked_row(
        self, session: AsyncSession, repository_id: UUID
    ) -> WebhookSubscription | None:
        stmt = (
            select(WebhookSubscription)
            .where(WebhookSubscription.repository_id == repository_id)
            .with_for_update()
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def get(self, repository_id: UUID) -> WebhookSubscription | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(WebhookSubscription).where(
                        WebhookSubscription.repository_id == repository_id
                    )
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreError(f"failed to load subscription for {repository_id}: {e}") from e

    async def find_without_subscription(self) -> list[UUID]:
        has_subscription = exists().where(WebhookSubscription.repository_id == Repository.id)
        stmt = select(Repository.id).where(Repository.is_active.is_(True), ~has_subscription)
        return await self._scalars(stmt, "repositories without subscription")

    async def find_by_status(self, status: WebhookStatus) -> list[WebhookSubscription]:
        stmt = (
            select(WebhookSubscription)
            .where(WebhookSubscription.status == WebhookStatus(status).value)
            .order_by(WebhookSubscription.updated_at)
        )
        return await self._scalars(stmt, f"{WebhookStatus(status).value} subscriptions")

    async def find_stale(self, threshold: datetime) -> list[WebhookSubscription]:
        stmt = (
            select(WebhookSubscription)
            .where(
                or_(
                    WebhookSubscription.last_ping < threshold,
                    WebhookSubscription.last_ping.is_(None),
                )
            )
            .order_by(WebhookSubscription.updated_at)
        )
        return await self._scalars(stmt, "stale subscriptions")

    async def find_retry_candidates(self, max_attempts: int) -> list[WebhookSubscription]:
        stmt = (
            select(WebhookSubscription)
            .where(
                WebhookSubscription.status == WebhookStatus.FAILED.value,
                WebhookSubscription.failure_count < max_attempts,
            )
            .order_by(WebhookSubscription.updated_at)
        )
        return await self._scalars(stmt, "retry candidates")

    async def find_abandon_candidates(
        self, threshold: int, *, include_permanent: bool = False
    ) -> list[WebhookSubscription]:
        exhausted = WebhookSubscription.failure_count >= threshold
        if include_permanent:
            exhausted = or_(
                exhausted, WebhookSubscription.error_kind == ErrorKind.PERMANENT.value
            )
        stmt = select(WebhookSubscription).where(
            WebhookSubscription.status == WebhookStatus.FAILED.value,
            exhausted,
        )
        return await self._scalars(stmt, "abandon candidates")

    async def find_expired_inactive(self, cutoff: datetime) -> list[WebhookSubscription]:
        stmt = select(WebhookSubscription).where(_expired_inactive(cutoff))
        return await self._scalars(stmt, "expired inactive subscriptions")

    async def list_subscriptions(
        self,
        *,
        status: WebhookStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookSubscription]:
        stmt = select(WebhookSubscription)
        if status is not None:
            stmt = stmt.where(WebhookSubscription.status == WebhookStatus(status).value)
        stmt = stmt.order_by(WebhookSubscription.updated_at.desc()).limit(limit).offset(offset)
        return await self._scalars(stmt, "subscriptions")

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(WebhookSubscription.status, func.count()).group_by(
            WebhookSubscription.status
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise StoreError(f"failed to count subscriptions: {e}") from e
        counts = {s.value: 0 for s in WebhookStatus}
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts

    async def upsert(self, update: SubscriptionUpdate) -> WebhookSubscription:
        """Apply ``update`` to the repository's row, creating it if needed."""
        try:
            async with self._session_factory() as session:
                row = await self._locked_row(session, update.repository_id)
                if row is None:
                    row = WebhookSubscription(
                        repository_id=update.repository_id,
                        failure_count=0,
                        subscription_date=update.now,
                        created_at=update.now,
                    )
                    session.add(row)
                _apply(row, update)
                try:
                    await session.commit()
                except IntegrityError:
                    # Another writer created the row first; apply on top of theirs.
                    await session.rollback()
                    row = await self._locked_row(session, update.repository_id)
                    if row is None:
                        raise
                    _apply(row, update)
                    await session.commit()
                return row
        except SQLAlchemyError as e:
            raise StoreError(
                f"failed to write subscription for {update.repository_id}: {e}"
            ) from e

    async def update_existing(
        self,
        update: SubscriptionUpdate,
        *,
        when: Callable[[WebhookSubscription], bool] | None = None,
    ) -> WebhookSubscription | None:
        """Apply ``update`` only when the repository already has a row.

        ``when`` is evaluated against the locked row; the update is skipped
        (and None returned) when it is false.
        """
        try:
            async with self._session_factory() as session:
                row = await self._locked_row(session, update.repository_id)
                if row is None or (when is not None and not when(row)):
                    return None
                _apply(row, update)
                await session.commit()
                return row
        except SQLAlchemyError as e:
            raise StoreError(
                f"failed to update subscription for {update.repository_id}: {e}"
            ) from e

    async def record_delivery(
        self,
        repository_id: UUID,
        *,
        success: bool,
        now: datetime,
        error: str | None = None,
    ) -> WebhookSubscription | None:
        """Bookkeeping for an inbound delivery observed for the repository.

        A successful delivery counts as a liveness signal. A failed one is
        recorded as a transient failure. Inactive rows only get
        ``last_delivery`` stamped so retention is not pushed back.
        """
        try:
            async with self._session_factory() as session:
                row = await self._locked_row(session, repository_id)
                if row is None:
                    return None
                if row.status == WebhookStatus.INACTIVE.value:
                    row.last_delivery = now
                elif success:
                    _apply(row, SubscriptionUpdate.success(repository_id, now=now, delivered=True))
                else:
                    _apply(
                        row,
                        SubscriptionUpdate.failure(
                            repository_id,
                            now=now,
                            error=error or "delivery failed",
                            delivered=True,
                        ),
                    )
                await session.commit()
                return row
        except SQLAlchemyError as e:
            raise StoreError(f"failed to record delivery for {repository_id}: {e}") from e

    async def delete(self, subscription: WebhookSubscription, *, cutoff: datetime) -> bool:
        """Hard-delete ``subscription`` if it is still inactive and older than ``cutoff``.

        The conditions are re-checked in the DELETE itself, so a row that was
        reactivated after it was listed survives.
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(WebhookSubscription).where(
                        WebhookSubscription.id == subscription.id,
                        _expired_inactive(cutoff),
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(
                f"failed to delete subscription for {subscription.repository_id}: {e}"
            ) from e
        return bool(result.rowcount)

    async def _scalars(self, stmt, what: str) -> list:
        try:
            async with self._session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            raise StoreError(f"failed to load {what}: {e}") from e
