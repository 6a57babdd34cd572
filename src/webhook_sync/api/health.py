"""Liveness and readiness checks for the API process."""
import logging
from collections.abc import AsyncIterator
from typing import Literal

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_sync.core.redis_service import RedisService, build_redis_service
from webhook_sync.database import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

DependencyState = Literal["connected", "disconnected", "unknown"]


class HealthStatus(BaseModel):
    """Health check response."""

    status: Literal["healthy", "degraded", "unhealthy"]
    version: str
    database: DependencyState
    redis: DependencyState
    details: dict | None = None


async def get_redis_service() -> AsyncIterator[RedisService]:
    service = build_redis_service()
    try:
        yield service
    finally:
        await service.disconnect()


@router.get("/health", response_model=HealthStatus)
async def health_check() -> HealthStatus:
    """Process is up. Dependencies are not checked."""
    from webhook_sync import __version__

    return HealthStatus(
        status="healthy",
        version=__version__,
        database="unknown",
        redis="unknown",
    )


@router.get("/health/ready", response_model=HealthStatus)
async def readiness_check(
    response: Response,
    session: AsyncSession = Depends(get_db_session),
    redis_service: RedisService = Depends(get_redis_service),
) -> HealthStatus:
    """
    Readiness check with dependency verification.

    The database holds the subscriptions, so losing it makes the service
    unhealthy (503). Redis only carries the job locks and the Celery broker;
    losing it degrades the service but the API keeps answering.
    """
    from webhook_sync import __version__

    details: dict[str, str] = {}

    db_state: DependencyState = "disconnected"
    try:
        await session.execute(text("SELECT 1"))
        db_state = "connected"
    except Exception as e:
        logger.warning("Database health check failed", extra={"error": str(e)})
        details["database_error"] = str(e)

    redis_health = await redis_service.health_check()
    redis_state: DependencyState = "disconnected"
    if redis_health.get("status") == "healthy":
        redis_state = "connected"
    else:
        logger.warning("Redis health check failed", extra={"error": redis_health.get("error")})
        details["redis_error"] = str(redis_health.get("error"))

    if db_state != "connected":
        overall: Literal["healthy", "degraded", "unhealthy"] = "unhealthy"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif redis_state != "connected":
        overall = "degraded"
    else:
        overall = "healthy"

    return HealthStatus(
        status=overall,
        version=__version__,
        database=db_state,
        redis=redis_state,
        details=details or None,
    )
