from __future__ import annotations

from dataclasses import dataclass

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)
from prometheus_client.exposition import generate_latest


@dataclass(frozen=True)
class PrometheusMetrics:
    registry: CollectorRegistry
    http_requests_total: Counter
    http_request_duration_seconds: Histogram
    subscribe_attempts_total: Counter
    job_passes_total: Counter
    job_pass_duration_seconds: Histogram
    stale_subscriptions_total: Counter
    subscriptions_abandoned_total: Counter
    subscriptions_deleted_total: Counter
    subscriptions_by_status: Gauge
    celery_tasks_total: Counter


_REGISTRY = CollectorRegistry(auto_describe=True)

METRICS = PrometheusMetrics(
    registry=_REGISTRY,
    http_requests_total=Counter(
        "webhook_sync_http_requests_total",
        "Total HTTP requests by method/route/status",
        labelnames=("method", "route", "status"),
        registry=_REGISTRY,
    ),
    http_request_duration_seconds=Histogram(
        "webhook_sync_http_request_duration_seconds",
        "HTTP request duration in seconds by route/method",
        labelnames=("route", "method"),
        registry=_REGISTRY,
    ),
    subscribe_attempts_total=Counter(
        "webhook_sync_subscribe_attempts_total",
        "Subscribe attempts by job and outcome",
        labelnames=("job", "outcome"),
        registry=_REGISTRY,
    ),
    job_passes_total=Counter(
        "webhook_sync_job_passes_total",
        "Job passes by job and status",
        labelnames=("job", "status"),
        registry=_REGISTRY,
    ),
    job_pass_duration_seconds=Histogram(
        "webhook_sync_job_pass_duration_seconds",
        "Job pass duration in seconds by job",
        labelnames=("job",),
        registry=_REGISTRY,
        buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0),
    ),
    stale_subscriptions_total=Counter(
        "webhook_sync_stale_subscriptions_total",
        "Subscriptions observed without a recent liveness signal",
        labelnames=("status",),
        registry=_REGISTRY,
    ),
    subscriptions_abandoned_total=Counter(
        "webhook_sync_subscriptions_abandoned_total",
        "Failed subscriptions moved to inactive",
        registry=_REGISTRY,
    ),
    subscriptions_deleted_total=Counter(
        "webhook_sync_subscriptions_deleted_total",
        "Inactive subscriptions purged by cleanup",
        registry=_REGISTRY,
    ),
    subscriptions_by_status=Gauge(
        "webhook_sync_subscriptions",
        "Subscriptions by status as of the last status query",
        labelnames=("status",),
        registry=_REGISTRY,
    ),
    celery_tasks_total=Counter(
        "webhook_sync_celery_tasks_total",
        "Total Celery task executions by task and status",
        labelnames=("task", "status"),
        registry=_REGISTRY,
    ),
)


def render_prometheus() -> tuple[bytes, str]:
    return generate_latest(METRICS.registry), CONTENT_TYPE_LATEST


def observe_http_request(*, method: str, route: str, status: str, duration_seconds: float) -> None:
    METRICS.http_requests_total.labels(method=method, route=route, status=status).inc()
    METRICS.http_request_duration_seconds.labels(route=route, method=method).observe(
        duration_seconds
    )


def start_worker_metrics_server(*, port: int) -> None:
    start_http_server(port, registry=METRICS.registry)
