"""Redis service for cross-worker coordination.

The worker uses Redis for two things:
- Celery broker/result backend (configured in celery_app)
- Non-blocking job locks so the same periodic job never runs twice at once
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.lock import Lock

logger = logging.getLogger(__name__)


@dataclass
class RedisConfig:
    """Redis connection configuration."""

    url: str = "redis://localhost:6379/0"

    max_connections: int = 20
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0
    retry_on_timeout: bool = True
    health_check_interval: int = 30

    # Key prefix for namespace isolation
    prefix: str = "webhook_sync:"


class RedisService:
    """Thin wrapper around a pooled Redis client."""

    def __init__(self, config: Optional[RedisConfig] = None):
        self.config = config or RedisConfig()
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    async def connect(self) -> None:
        """Establish connection pool to Redis."""
        if self._pool is not None:
            return

        self._pool = ConnectionPool.from_url(
            self.config.url,
            max_connections=self.config.max_connections,
            socket_timeout=self.config.socket_timeout,
            socket_connect_timeout=self.config.socket_connect_timeout,
            retry_on_timeout=self.config.retry_on_timeout,
            health_check_interval=self.config.health_check_interval,
            decode_responses=True,
        )
        self._client = Redis(connection_pool=self._pool)

        try:
            await self._client.ping()
            logger.info("Redis connected", extra={"url": self.config.url})
        except Exception:
            await self.disconnect()
            raise

    async def disconnect(self) -> None:
        """Close Redis connections."""
        if self._client:
            await self._client.aclose()
            self._client = None

        if self._pool:
            await self._pool.disconnect()
            self._pool = None

    @asynccontextmanager
    async def get_client(self) -> AsyncIterator[Redis]:
        """Get a Redis client from the pool.

        Usage:
            async with redis_service.get_client() as client:
                await client.get("key")
        """
        if self._client is None:
            await self.connect()
        assert self._client is not None
        yield self._client

    def _key(self, *parts: str) -> str:
        """Build a namespaced key."""
        return f"{self.config.prefix}{':'.join(parts)}"

    @asynccontextmanager
    async def job_lock(self, name: str, timeout: float) -> AsyncIterator[bool]:
        """Try to take a non-blocking lock for a periodic job.

        Yields True when the lock is held (or Redis is unreachable, in which
        case the job proceeds unguarded) and False when another worker holds it.
        """
        lock: Lock | None = None
        try:
            async with self.get_client() as client:
                lock = Lock(client, self._key("lock", name), timeout=timeout, blocking=False)
                acquired = bool(await lock.acquire())
        except Exception as e:
            logger.warning(
                "Redis lock unavailable; proceeding without lock",
                extra={"lock": name, "error": str(e)},
            )
            lock = None
            acquired = True

        try:
            yield acquired
        finally:
            if lock is not None and acquired:
                try:
                    await lock.release()
                except Exception:
                    logger.warning("Redis lock release failed", extra={"lock": name})

    async def health_check(self) -> dict[str, Any]:
        """Check Redis health."""
        try:
            async with self.get_client() as client:
                info = await client.info("server")
                return {"status": "healthy", "version": info.get("redis_version")}
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}


def build_redis_service() -> RedisService:
    """Create a Redis service from settings.

    Worker tasks run each pass in a fresh event loop, so they build their own
    service instead of sharing a process-wide client.
    """
    from webhook_sync.config import get_settings

    return RedisService(RedisConfig(url=get_settings().redis_url))
