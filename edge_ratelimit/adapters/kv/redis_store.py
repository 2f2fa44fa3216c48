"""Redis-backed key-value store.

Uses ``redis.asyncio`` so the limiter can await storage I/O inside the
request path. Values are stored as UTF-8 text with a native ``EX`` expiry.
"""

from __future__ import annotations

import logging
from typing import Any

import redis.asyncio as aioredis

from edge_ratelimit.adapters.kv.base import AbstractKVStore

logger = logging.getLogger(__name__)


class RedisKVStore(AbstractKVStore):
    """Shared store for horizontally scaled deployments.

    Example:
        >>> store = RedisKVStore("redis://localhost:6379/0")
        >>> await store.set("rl:user:1:0", '{"tokens": 4, "updatedAt": 0}', 60)
    """

    backend = "redis"

    def __init__(
        self,
        redis_url: str,
        *,
        timeout_seconds: float = 1.0,
        client: Any | None = None,
    ) -> None:
        """Initialize the Redis store.

        The connection is created lazily on first use.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0").
            timeout_seconds: Socket connect/read timeout.
            client: Pre-built async client (mainly for tests).
        """
        self._redis_url = redis_url
        self._timeout = timeout_seconds
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_connect_timeout=self._timeout,
                socket_timeout=self._timeout,
                retry_on_timeout=False,
            )
        return self._client

    async def get(self, key: str) -> str | None:
        value = await self._get_client().get(key)
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._get_client().set(key, value, ex=max(1, int(ttl_seconds)))

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("kv.closed", extra={"backend": self.backend})
