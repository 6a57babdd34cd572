"""Read-only view of tracked repositories and their owners."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.orm import joinedload

from webhook_sync.database import SessionFactory, get_async_session
from webhook_sync.models.repository import Repository
from webhook_sync.models.subscription import WebhookSubscription


class EligibilityError(Exception):
    """Owner cannot be used to register a webhook. Callers treat this as a skip."""

    def __init__(self, repository_id: UUID, reason: str):
        super().__init__(f"repository {repository_id} is not eligible: {reason}")
        self.repository_id = repository_id
        self.reason = reason


@dataclass(frozen=True)
class RepositoryRef:
    id: UUID
    full_name: str
    owner_id: UUID | None = None
    owner_email: str | None = None
    owner_credential: str | None = field(default=None, repr=False)
    owner_active: bool = True
    active: bool = True

    @property
    def owner_credential_present(self) -> bool:
        return bool(self.owner_credential and self.owner_credential.strip())


def check_eligibility(repository: RepositoryRef) -> None:
    if not repository.active:
        raise EligibilityError(repository.id, "repository_inactive")
    if not repository.owner_credential_present:
        raise EligibilityError(repository.id, "owner_has_no_credential")
    if not repository.owner_active:
        raise EligibilityError(repository.id, "owner_inactive")


class RepositoryDirectory(Protocol):
    async def list_repositories_without_subscription(self) -> list[RepositoryRef]: ...

    async def get_repository(self, repository_id: UUID) -> RepositoryRef | None: ...


def _to_ref(repository: Repository) -> RepositoryRef:
    owner = repository.owner
    return RepositoryRef(
        id=repository.id,
        full_name=repository.full_name,
        owner_id=owner.id if owner else None,
        owner_email=owner.email if owner else None,
        owner_credential=owner.github_token if owner else None,
        owner_active=bool(owner and owner.is_active),
        active=repository.is_active,
    )


class SqlRepositoryDirectory:
    """Directory backed by the application's ``repositories`` and ``users`` tables."""

    def __init__(self, session_factory: SessionFactory = get_async_session):
        self._session_factory = session_factory

    async def list_repositories_without_subscription(self) -> list[RepositoryRef]:
        has_subscription = exists().where(WebhookSubscription.repository_id == Repository.id)
        stmt = (
            select(Repository)
            .options(joinedload(Repository.owner))
            .where(Repository.is_active.is_(True), ~has_subscription)
            .order_by(Repository.created_at)
        )
        async with self._session_factory() as session:
            repositories = (await session.execute(stmt)).scalars().all()
        return [_to_ref(r) for r in repositories]

    async def get_repository(self, repository_id: UUID) -> RepositoryRef | None:
        stmt = (
            select(Repository)
            .options(joinedload(Repository.owner))
            .where(Repository.id == repository_id)
        )
        async with self._session_factory() as session:
            repository = (await session.execute(stmt)).scalar_one_or_none()
        if repository is None:
            return None
        return _to_ref(repository)
