from __future__ import annotations

from fastapi.testclient import TestClient
from webhook_sync.api.metrics import get_subscription_store
from webhook_sync.main import create_app
from webhook_sync.services.subscription_store import StoreError


class _CountingStore:
    async def count_by_status(self) -> dict[str, int]:
        return {"pending": 0, "active": 4, "failed": 1, "inactive": 2}


class _DownStore:
    async def count_by_status(self) -> dict[str, int]:
        raise StoreError("database is down")


def test_metrics_endpoint_returns_prometheus_text() -> None:
    app = create_app()
    app.dependency_overrides[get_subscription_store] = _CountingStore
    client = TestClient(app)

    res_health = client.get("/health")
    assert res_health.status_code == 200

    res = client.get("/metrics")
    assert res.status_code == 200
    assert "text/plain" in (res.headers.get("content-type") or "")
    body = res.text
    assert "webhook_sync_http_requests_total" in body
    assert 'route="/health"' in body
    assert 'webhook_sync_subscriptions{status="active"} 4.0' in body


def test_metrics_endpoint_survives_store_outage() -> None:
    app = create_app()
    app.dependency_overrides[get_subscription_store] = _DownStore
    client = TestClient(app)

    res = client.get("/metrics")

    assert res.status_code == 200
    assert "webhook_sync_job_passes_total" in res.text


def test_unmatched_paths_share_one_route_label() -> None:
    app = create_app()
    app.dependency_overrides[get_subscription_store] = _CountingStore
    client = TestClient(app)

    assert client.get("/no-such-page/7f9c2d").status_code == 404

    body = client.get("/metrics").text
    assert 'route="<unmatched>"' in body
    assert "7f9c2d" not in body
