from __future__ import annotations

import dataclasses

import pytest
from webhook_sync.models.subscription import WebhookStatus
from webhook_sync.ops.retry_policy import as_utc
from webhook_sync.services.repository_directory import SqlRepositoryDirectory
from webhook_sync.services.subscription_manager import SubscriptionManager
from webhook_sync.services.subscription_store import SubscriptionStore
from webhook_sync.services.webhook_gateway import GatewayTransientError


@pytest.mark.asyncio
async def test_pass_subscribes_eligible_repositories(
    manager, gateway, store, make_repository, clock
) -> None:
    ok = await make_repository("acme/ok")
    broken = await make_repository("acme/broken")
    no_token = await make_repository("acme/no-token", token=None)
    gateway.failures["acme/broken"] = GatewayTransientError("503")

    summary = await manager.run_reconciliation()

    assert summary.candidates == 3
    assert (summary.succeeded, summary.failed, summary.skipped, summary.errors) == (1, 1, 1, 0)
    assert summary.aborted is False
    assert sorted(gateway.subscribe_calls) == ["acme/broken", "acme/ok"]

    ok_row = await store.get(ok)
    assert ok_row.status == WebhookStatus.ACTIVE.value
    assert ok_row.failure_count == 0
    assert as_utc(ok_row.last_ping) == clock()
    broken_row = await store.get(broken)
    assert broken_row.status == WebhookStatus.FAILED.value
    assert broken_row.failure_count == 1
    assert await store.get(no_token) is None


@pytest.mark.asyncio
async def test_second_pass_creates_no_duplicates(manager, gateway, store, make_repository) -> None:
    await make_repository("acme/one")
    await make_repository("acme/two")
    gateway.failures["acme/two"] = GatewayTransientError("503")

    await manager.run_reconciliation()
    second = await manager.run_reconciliation()

    assert second.candidates == 0
    assert len(gateway.subscribe_calls) == 2
    assert len(await store.list_subscriptions()) == 2


@pytest.mark.asyncio
async def test_pass_paces_gateway_calls(manager, sleeper, make_repository) -> None:
    for name in ("acme/a", "acme/b", "acme/c"):
        await make_repository(name)
    await make_repository("acme/skip", token=None)

    await manager.run_reconciliation()

    # Three provider calls need two pauses between them
    assert sleeper.calls == [1.0, 1.0]


@pytest.mark.asyncio
async def test_listing_failure_aborts_pass_without_raising(
    session_factory, settings, gateway, clock
) -> None:
    class _DownDirectory:
        async def list_repositories_without_subscription(self):
            raise ConnectionError("directory unavailable")

        async def get_repository(self, repository_id):
            raise AssertionError("not reached")

    manager = SubscriptionManager(
        store=SubscriptionStore(session_factory),
        directory=_DownDirectory(),
        gateway=gateway,
        settings=settings,
        now=clock,
    )

    summary = await manager.run_reconciliation()

    assert summary.aborted is True
    assert summary.candidates == 0
    assert gateway.subscribe_calls == []
    assert summary.pass_id


@pytest.mark.asyncio
async def test_owner_deactivated_after_listing_is_skipped(
    session_factory, manager, gateway, store, make_repository
) -> None:
    repo_id = await make_repository("acme/widgets")

    class _OwnerLeavesDirectory(SqlRepositoryDirectory):
        async def get_repository(self, repository_id):
            repository = await super().get_repository(repository_id)
            return dataclasses.replace(repository, owner_active=False)

    manager.directory = _OwnerLeavesDirectory(session_factory)

    summary = await manager.run_reconciliation()

    assert summary.candidates == 1
    assert summary.skipped == 1
    assert summary.succeeded == 0
    assert gateway.subscribe_calls == []
    assert await store.get(repo_id) is None
