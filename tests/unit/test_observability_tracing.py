from __future__ import annotations

from uuid import uuid4

from webhook_sync.models.subscription import WebhookStatus
from webhook_sync.observability.tracing import get_trace_ids, init_tracing, start_span


def test_tracing_init_and_span_creation_does_not_crash(monkeypatch) -> None:
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    init_tracing(service_name="test-service")
    with start_span("test_span", attributes={"job": "cleanup", "skipped": None}):
        trace_id, span_id = get_trace_ids()
    assert trace_id is not None and len(trace_id) == 32
    assert span_id is not None and len(span_id) == 16


def test_no_trace_ids_outside_a_span() -> None:
    assert get_trace_ids() == (None, None)


def test_span_attributes_are_coerced_to_otel_types() -> None:
    init_tracing(service_name="test-service")
    with start_span(
        "coerced",
        attributes={"repository_id": uuid4(), "status": WebhookStatus.ACTIVE, "candidates": 3},
    ) as span:
        trace_id, _ = get_trace_ids()
    assert trace_id is not None
    assert isinstance(span.attributes["repository_id"], str)
    assert span.attributes["status"] == "active"
    assert span.attributes["candidates"] == 3
