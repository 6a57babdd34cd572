"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from webhook_sync.config import GatewaySettings, SchedulingSettings, Settings, get_settings
from webhook_sync.models.base import Base
from webhook_sync.models.repository import Repository, User
from webhook_sync.models.subscription import WebhookStatus, WebhookSubscription
from webhook_sync.services.repository_directory import RepositoryRef, SqlRepositoryDirectory
from webhook_sync.services.subscription_manager import SubscriptionManager
from webhook_sync.services.subscription_store import SubscriptionStore
from webhook_sync.services.webhook_gateway import GatewayError, WebhookRegistration

# Use in-memory SQLite for tests (requires aiosqlite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> None:
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Fresh in-memory database with all tables created."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        scheduling=SchedulingSettings(reconciliation_delay_seconds=1.0),
        gateway=GatewaySettings(base_url="https://hooks.example.com", secret="s3cret"),
    )


class FixedClock:
    def __init__(self, now: datetime = T0):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@dataclass
class FakeGateway:
    """In-memory gateway; ``failures`` maps full_name to the error to raise."""

    failures: dict[str, Exception] = field(default_factory=dict)
    default_error: Exception | None = None
    subscribe_calls: list[str] = field(default_factory=list)
    ping_calls: list[tuple[str, str]] = field(default_factory=list)
    unsubscribe_calls: list[tuple[str, str]] = field(default_factory=list)
    ping_error: GatewayError | None = None
    unsubscribe_error: GatewayError | None = None

    async def subscribe(self, repository: RepositoryRef) -> WebhookRegistration:
        self.subscribe_calls.append(repository.full_name)
        error = self.failures.get(repository.full_name, self.default_error)
        if error is not None:
            raise error
        return WebhookRegistration(
            webhook_id=f"hook-{len(self.subscribe_calls)}",
            webhook_url="https://hooks.example.com/api/github/webhook",
            events=["push", "pull_request"],
        )

    async def ping(self, repository: RepositoryRef, webhook_id: str) -> None:
        self.ping_calls.append((repository.full_name, webhook_id))
        if self.ping_error is not None:
            raise self.ping_error

    async def unsubscribe(self, repository: RepositoryRef, webhook_id: str) -> None:
        self.unsubscribe_calls.append((repository.full_name, webhook_id))
        if self.unsubscribe_error is not None:
            raise self.unsubscribe_error


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def store(session_factory) -> SubscriptionStore:
    return SubscriptionStore(session_factory)


@pytest.fixture
def manager(session_factory, settings, gateway, clock, sleeper) -> SubscriptionManager:
    return SubscriptionManager(
        store=SubscriptionStore(session_factory),
        directory=SqlRepositoryDirectory(session_factory),
        gateway=gateway,
        settings=settings,
        now=clock,
        sleep=sleeper,
    )


async def _add_repository(
    session_factory,
    full_name: str,
    *,
    token: str | None = "ghp_test_token",
    owner_active: bool = True,
    active: bool = True,
) -> UUID:
    """Insert an owner and a repository, returning the repository id."""
    async with session_factory() as session:
        owner = User(
            email=f"{full_name.replace('/', '.')}@example.com",
            github_token=token,
            is_active=owner_active,
        )
        repository = Repository(full_name=full_name, owner=owner, is_active=active)
        session.add_all([owner, repository])
        await session.commit()
        return repository.id


async def _add_subscription(
    session_factory,
    repository_id: UUID,
    *,
    status: WebhookStatus,
    failure_count: int = 0,
    updated_at: datetime = T0,
    last_ping: datetime | None = None,
    webhook_id: str | None = None,
    error_kind: str | None = None,
) -> None:
    async with session_factory() as session:
        session.add(
            WebhookSubscription(
                repository_id=repository_id,
                status=status.value,
                failure_count=failure_count,
                last_ping=last_ping,
                webhook_id=webhook_id,
                error_kind=error_kind,
                subscription_date=updated_at,
                created_at=updated_at,
                updated_at=updated_at,
            )
        )
        await session.commit()


@pytest.fixture
def make_repository(session_factory):
    async def _make(full_name: str, **kwargs) -> UUID:
        return await _add_repository(session_factory, full_name, **kwargs)

    return _make


@pytest.fixture
def make_subscription(session_factory):
    async def _make(repository_id: UUID, **kwargs) -> None:
        await _add_subscription(session_factory, repository_id, **kwargs)

    return _make
