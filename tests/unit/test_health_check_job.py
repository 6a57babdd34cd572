from __future__ import annotations

from datetime import timedelta

import pytest
from webhook_sync.config import HealthSettings
from webhook_sync.models.subscription import ErrorKind, WebhookStatus
from webhook_sync.ops.retry_policy import as_utc
from webhook_sync.services.repository_directory import SqlRepositoryDirectory
from webhook_sync.services.subscription_manager import SubscriptionManager
from webhook_sync.services.subscription_store import SubscriptionStore
from webhook_sync.services.webhook_gateway import GatewayPermanentError, GatewayTransientError


def _reverify_manager(session_factory, settings, gateway, clock) -> SubscriptionManager:
    return SubscriptionManager(
        store=SubscriptionStore(session_factory),
        directory=SqlRepositoryDirectory(session_factory),
        gateway=gateway,
        settings=settings.model_copy(update={"health": HealthSettings(stale_policy="reverify")}),
        now=clock,
    )


@pytest.mark.asyncio
async def test_failed_retry_increments_then_hits_ceiling(
    manager, gateway, store, make_repository, make_subscription, clock
) -> None:
    repo_id = await make_repository("acme/widgets")
    await make_subscription(
        repo_id,
        status=WebhookStatus.FAILED,
        failure_count=2,
        updated_at=clock() - timedelta(hours=2),
    )
    gateway.default_error = GatewayTransientError("503")

    summary = await manager.run_health_check()

    assert summary.retried == 1
    assert summary.failed == 1
    row = await store.get(repo_id)
    assert row.status == WebhookStatus.FAILED.value
    assert row.failure_count == 3

    clock.advance(timedelta(days=1))
    second = await manager.run_health_check()

    assert second.retried == 0
    assert second.abandoned == 1
    assert len(gateway.subscribe_calls) == 1
    row = await store.get(repo_id)
    assert row.status == WebhookStatus.INACTIVE.value
    assert row.failure_count == 3


@pytest.mark.asyncio
async def test_successful_retry_reactivates(
    manager, gateway, store, make_repository, make_subscription, clock
) -> None:
    repo_id = await make_repository("acme/widgets")
    await make_subscription(
        repo_id,
        status=WebhookStatus.FAILED,
        failure_count=1,
        updated_at=clock() - timedelta(hours=1),
    )

    summary = await manager.run_health_check()

    assert summary.succeeded == 1
    row = await store.get(repo_id)
    assert row.status == WebhookStatus.ACTIVE.value
    assert row.failure_count == 0


@pytest.mark.asyncio
async def test_retry_waits_for_backoff_window(
    manager, gateway, make_repository, make_subscription, clock
) -> None:
    repo_id = await make_repository("acme/widgets")
    # failure_count=2 waits 30 minutes with the default 15 minute base
    await make_subscription(
        repo_id,
        status=WebhookStatus.FAILED,
        failure_count=2,
        updated_at=clock() - timedelta(minutes=20),
    )

    summary = await manager.run_health_check()

    assert summary.deferred == 1
    assert summary.retried == 0
    assert gateway.subscribe_calls == []


@pytest.mark.asyncio
async def test_back_to_back_passes_do_not_double_count(
    manager, gateway, store, make_repository, make_subscription, clock
) -> None:
    repo_id = await make_repository("acme/widgets")
    await make_subscription(
        repo_id,
        status=WebhookStatus.FAILED,
        failure_count=1,
        updated_at=clock() - timedelta(hours=1),
    )
    gateway.default_error = GatewayTransientError("503")

    await manager.run_health_check()
    await manager.run_health_check()

    row = await store.get(repo_id)
    assert row.failure_count == 2
    assert len(gateway.subscribe_calls) == 1


@pytest.mark.asyncio
async def test_permanent_errors_are_abandoned_without_retry(
    manager, gateway, store, make_repository, make_subscription, clock
) -> None:
    repo_id = await make_repository("acme/widgets")
    await make_subscription(
        repo_id,
        status=WebhookStatus.FAILED,
        failure_count=1,
        updated_at=clock() - timedelta(days=1),
        error_kind=ErrorKind.PERMANENT.value,
    )

    summary = await manager.run_health_check()

    assert summary.abandoned == 1
    assert summary.retried == 0
    assert gateway.subscribe_calls == []
    assert (await store.get(repo_id)).status == WebhookStatus.INACTIVE.value


@pytest.mark.asyncio
async def test_exhausted_subscriptions_are_abandoned(
    manager, gateway, store, make_repository, make_subscription, clock
) -> None:
    repo_id = await make_repository("acme/widgets")
    await make_subscription(
        repo_id,
        status=WebhookStatus.FAILED,
        failure_count=5,
        updated_at=clock() - timedelta(days=1),
    )

    summary = await manager.run_health_check()

    assert summary.abandoned == 1
    assert gateway.subscribe_calls == []
    row = await store.get(repo_id)
    assert row.status == WebhookStatus.INACTIVE.value
    assert row.failure_count == 5
    assert as_utc(row.updated_at) == clock()


@pytest.mark.asyncio
async def test_stale_subscriptions_are_only_reported_by_default(
    manager, gateway, store, make_repository, make_subscription, clock
) -> None:
    repo_id = await make_repository("acme/widgets")
    last_ping = clock() - timedelta(hours=30)
    seeded_at = clock() - timedelta(hours=1)
    await make_subscription(
        repo_id,
        status=WebhookStatus.ACTIVE,
        last_ping=last_ping,
        webhook_id="77",
        updated_at=seeded_at,
    )

    summary = await manager.run_health_check()

    assert summary.stale == 1
    assert summary.reverified == 0
    assert gateway.ping_calls == []
    row = await store.get(repo_id)
    assert as_utc(row.last_ping) == last_ping
    assert as_utc(row.updated_at) == seeded_at


@pytest.mark.asyncio
async def test_reverify_policy_refreshes_stale_active_rows(
    session_factory, settings, gateway, make_repository, make_subscription, clock
) -> None:
    manager = _reverify_manager(session_factory, settings, gateway, clock)
    repo_id = await make_repository("acme/widgets")
    await make_subscription(
        repo_id,
        status=WebhookStatus.ACTIVE,
        last_ping=clock() - timedelta(hours=30),
        webhook_id="77",
    )

    summary = await manager.run_health_check()

    assert summary.stale == 1
    assert summary.reverified == 1
    assert summary.succeeded == 1
    assert gateway.ping_calls == [("acme/widgets", "77")]
    row = await manager.store.get(repo_id)
    assert as_utc(row.last_ping) == clock()


@pytest.mark.asyncio
async def test_reverify_failure_moves_row_to_failed_once(
    session_factory, settings, gateway, make_repository, make_subscription, clock
) -> None:
    manager = _reverify_manager(session_factory, settings, gateway, clock)
    repo_id = await make_repository("acme/widgets")
    await make_subscription(
        repo_id,
        status=WebhookStatus.ACTIVE,
        last_ping=clock() - timedelta(hours=30),
    )
    gateway.default_error = GatewayTransientError("503")

    summary = await manager.run_health_check()

    # The fresh failure sits inside its backoff window, so the retry phase defers it
    assert summary.failed == 1
    assert summary.deferred == 1
    row = await manager.store.get(repo_id)
    assert row.status == WebhookStatus.FAILED.value
    assert row.failure_count == 1


@pytest.mark.asyncio
async def test_repeated_transient_failures_end_inactive_then_purged(
    manager, gateway, store, make_repository, clock
) -> None:
    repo_id = await make_repository("acme/widgets")
    gateway.default_error = GatewayTransientError("503 Service Unavailable")

    first = await manager.run_reconciliation()
    assert first.failed == 1

    for _ in range(5):
        clock.advance(timedelta(days=1))
        await manager.run_health_check()
        await manager.run_cleanup()

    row = await store.get(repo_id)
    assert row.status == WebhookStatus.INACTIVE.value
    assert row.failure_count == manager.settings.retry.max_attempts
    assert len(gateway.subscribe_calls) == manager.settings.retry.max_attempts

    clock.advance(timedelta(days=manager.settings.retention.inactive_days + 1))
    await manager.run_cleanup()

    assert await store.get(repo_id) is None


@pytest.mark.asyncio
async def test_permanent_failure_is_abandoned_on_next_pass(
    manager, gateway, store, make_repository, clock
) -> None:
    repo_id = await make_repository("acme/widgets")
    gateway.default_error = GatewayPermanentError("Resource not found", status_code=404)

    await manager.run_reconciliation()
    row = await store.get(repo_id)
    assert row.status == WebhookStatus.FAILED.value
    assert row.error_kind == ErrorKind.PERMANENT.value

    clock.advance(timedelta(days=1))
    summary = await manager.run_health_check()

    assert summary.abandoned == 1
    assert gateway.subscribe_calls == ["acme/widgets"]
    row = await store.get(repo_id)
    assert row.status == WebhookStatus.INACTIVE.value
    assert row.failure_count == 1


@pytest.mark.asyncio
async def test_permanent_failures_are_retried_when_enabled(
    session_factory, settings, gateway, store, make_repository, make_subscription, clock
) -> None:
    retry = settings.retry.model_copy(update={"retry_permanent_errors": True})
    manager = SubscriptionManager(
        store=SubscriptionStore(session_factory),
        directory=SqlRepositoryDirectory(session_factory),
        gateway=gateway,
        settings=settings.model_copy(update={"retry": retry}),
        now=clock,
    )
    repo_id = await make_repository("acme/widgets")
    await make_subscription(
        repo_id,
        status=WebhookStatus.FAILED,
        failure_count=1,
        updated_at=clock() - timedelta(days=1),
        error_kind=ErrorKind.PERMANENT.value,
    )

    summary = await manager.run_health_check()

    assert summary.abandoned == 0
    assert summary.retried == 1
    assert (await store.get(repo_id)).status == WebhookStatus.ACTIVE.value
