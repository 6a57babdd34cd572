"""FastAPI application entry point.

Serves health checks, Prometheus metrics and the operational webhook
endpoints. The background jobs run on the Celery worker, not here.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from webhook_sync import __version__
from webhook_sync.api.health import router as health_router
from webhook_sync.api.metrics import router as metrics_router
from webhook_sync.api.webhooks import router as webhooks_router
from webhook_sync.config import get_settings
from webhook_sync.core.logging import setup_logging
from webhook_sync.database import close_database
from webhook_sync.observability.middleware import PrometheusMetricsMiddleware
from webhook_sync.observability.tracing import init_tracing

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager for startup/shutdown events."""
    setup_logging()
    init_tracing(service_name="webhook-sync-api")
    settings = get_settings()
    logger.info(
        "Webhook sync API starting",
        extra={
            "version": __version__,
            "environment": settings.environment,
            "scheduling_enabled": settings.scheduling.enabled,
        },
    )

    yield

    logger.info("Webhook sync API shutting down")
    await close_database()


def create_app() -> FastAPI:
    """
    Application factory for creating the FastAPI app.

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()

    app = FastAPI(
        title="Webhook Sync",
        description="Keeps one GitHub webhook registered and healthy per tracked repository",
        version=__version__,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(PrometheusMetricsMiddleware)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        """Handle Pydantic validation errors."""
        logger.warning(
            "Request validation failed",
            extra={"errors": exc.errors(), "path": request.url.path},
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.errors()},
        )

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(webhooks_router, prefix=settings.api_prefix)

    @app.get("/")
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": "Webhook Sync",
            "version": __version__,
            "docs": "/docs" if not settings.is_production else None,
        }

    return app


app = create_app()
