"""OpenTelemetry setup for the API and worker processes.

Spans wrap every job pass and every HTTP request. Spans are exported only
when ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set and the ``otlp`` extra is
installed; otherwise they still carry trace ids into the logs.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span

logger = logging.getLogger(__name__)

TRACER_NAME = "webhook_sync"

_INITIALIZED = False


def _traces_endpoint() -> str | None:
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "").strip()
    if not endpoint:
        return None
    return f"{endpoint.rstrip('/')}/v1/traces"


def init_tracing(*, service_name: str) -> None:
    """Install the process-wide tracer provider. Later calls are no-ops."""
    global _INITIALIZED
    if _INITIALIZED:
        return

    from webhook_sync import __version__
    from webhook_sync.config import get_settings

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": service_name,
                "service.namespace": "webhook_sync",
                "service.version": __version__,
                "deployment.environment": get_settings().environment,
            }
        )
    )
    endpoint = _traces_endpoint()
    if endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning(
                "OTLP endpoint configured but the exporter is not installed",
                extra={"endpoint": endpoint},
            )
        else:
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _INITIALIZED = True


def get_trace_ids() -> tuple[str | None, str | None]:
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return None, None
    return f"{ctx.trace_id:032x}", f"{ctx.span_id:016x}"


def _attribute_value(value: Any) -> str | bool | int | float:
    if isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


@contextmanager
def start_span(name: str, *, attributes: dict[str, Any] | None = None) -> Iterator[Span]:
    """Open a span under the current one. ``None`` attributes are dropped."""
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, _attribute_value(value))
        yield span
