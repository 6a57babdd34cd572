"""Per-request instrumentation for the API."""

from __future__ import annotations

import time
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from webhook_sync.observability.metrics import observe_http_request
from webhook_sync.observability.tracing import start_span

# Label for requests no route matched; raw paths would carry repository ids
UNMATCHED_ROUTE = "<unmatched>"


def route_label(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return str(path) if path else UNMATCHED_ROUTE


class PrometheusMetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and latency by route template, inside a request span."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        status_code = 500
        with start_span(
            f"HTTP {request.method}",
            attributes={"http.method": request.method, "http.target": request.url.path},
        ) as span:
            try:
                response = await call_next(request)
                status_code = response.status_code
                return response
            finally:
                route = route_label(request)
                span.update_name(f"HTTP {request.method} {route}")
                span.set_attribute("http.route", route)
                span.set_attribute("http.status_code", status_code)
                observe_http_request(
                    method=request.method,
                    route=route,
                    status=str(status_code),
                    duration_seconds=max(0.0, time.perf_counter() - started),
                )
