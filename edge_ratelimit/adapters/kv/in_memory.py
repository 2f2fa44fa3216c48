"""In-memory TTL key-value store.

Notes:
- Per-process only: each worker (or edge isolate) has its own map.
- Expired keys are deleted when read and swept on every write, so buckets
  from past windows (whose keys are never read again) do not accumulate.
- ``max_entries`` caps the map; the least recently used entry goes first.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from edge_ratelimit.adapters.kv.base import AbstractKVStore

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: str
    expires_at: float


class InMemoryKVStore(AbstractKVStore):
    """Dictionary-backed store for local execution and deterministic tests.

    Attributes:
        backend: Backend name reported in logs.
    """

    backend = "memory"

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        max_entries: int | None = 100_000,
    ) -> None:
        """Initialize the store.

        Args:
            clock: Time source returning UNIX time in seconds.
            max_entries: Maximum number of live keys (None for unlimited).
        """
        self._clock = clock
        self._max_entries = max_entries
        self._data: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"InMemoryKVStore(size={len(self._data)}, max_entries={self._max_entries}, "
            f"evictions={self._evictions})"
        )

    async def get(self, key: str) -> str | None:
        """Return the live value for ``key`` or None.

        Args:
            key: Storage key.

        Returns:
            Stored value, or None when missing or expired.
        """
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                self._evict_single(key)
                logger.debug("kv.expired", extra={"backend": self.backend})
                return None
            self._data.move_to_end(key)
            return entry.value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            now = self._clock()
            self._evict_expired_locked(now)
            self._data[key] = _Entry(value=value, expires_at=now + ttl_seconds)
            self._data.move_to_end(key)
            self._evict_if_over_capacity_locked()

    async def clear(self) -> None:
        """Drop every stored entry."""
        async with self._lock:
            self._data.clear()

    def _evict_single(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._evictions += 1

    def _evict_expired_locked(self, now: float) -> None:
        expired_keys = [k for k, entry in self._data.items() if now >= entry.expires_at]
        for key in expired_keys:
            self._evict_single(key)

    def _evict_if_over_capacity_locked(self) -> None:
        if self._max_entries is None:
            return

        while len(self._data) > self._max_entries:
            self._data.popitem(last=False)
            self._evictions += 1
