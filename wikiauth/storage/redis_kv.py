from __future__ import annotations

import asyncio
from typing import Any, Awaitable, List, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from wikiauth.logging import get_logger, sanitize_error_message
from wikiauth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")


class RedisKV:
    """Redis-backed key-value store for users, sessions and counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = socket_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("kv_timeout", operation=operation, timeout=self.operation_timeout)
            raise StoreUnavailableError(
                "key-value store timed out", operation=operation
            ) from exc
        except RedisError as exc:
            logger.warning(
                "kv_error",
                operation=operation,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise StoreUnavailableError(
                "key-value store unavailable", operation=operation
            ) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(key))

    async def put(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> None:
        # Redis rejects zero or negative expirations
        ex = max(1, int(ttl_seconds)) if ttl_seconds is not None else None
        await self._call("put", self.client.set(key, value, ex=ex))

    async def delete(self, key: str) -> None:
        await self._call("delete", self.client.delete(key))

    async def list_keys(self, prefix: str) -> List[str]:
        async def _scan() -> List[str]:
            return [key async for key in self.client.scan_iter(match=f"{prefix}*", count=500)]

        return sorted(await self._call("scan", _scan()))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


__all__ = ["RedisKV"]
