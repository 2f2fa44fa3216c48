"""Store that remembers nothing.

Used when persistence is disabled: every read is a miss and writes are
dropped, so the limiter sees a fresh bucket on every call.
"""

from __future__ import annotations

from edge_ratelimit.adapters.kv.base import AbstractKVStore


class NoopKVStore(AbstractKVStore):
    backend = "noop"

    async def get(self, key: str) -> str | None:
        return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        return None
