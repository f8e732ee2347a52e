from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, ResponseError

from authserver.logging import get_logger
from authserver.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCodeStore:
    """Redis-backed ephemeral store for authorization codes and revocation markers."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # GET+DEL in one script for servers older than 6.2
    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        try:
            await self.client.set(key, value, ex=ttl_seconds)
        except RedisError as exc:
            raise self._unavailable("set", exc) from exc

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as exc:
            raise self._unavailable("get", exc) from exc

    async def get_and_delete(self, key: str) -> Optional[str]:
        """Atomically read and remove ``key``.

        Uses GETDEL (Redis 6.2+), falling back to a Lua script so two
        concurrent callers can never both observe the value.
        """
        try:
            try:
                return await self.client.getdel(key)
            except (AttributeError, ResponseError):
                return await self.client.eval(self._GETDEL_SCRIPT, 1, key)
        except RedisError as exc:
            raise self._unavailable("get_and_delete", exc) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            raise self._unavailable("delete", exc) from exc

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()

    @staticmethod
    def _unavailable(operation: str, exc: Exception) -> StoreUnavailable:
        logger.error("redis_operation_failed", operation=operation, error=str(exc))
        return StoreUnavailable("redis", str(exc))
