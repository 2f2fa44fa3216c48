"""Key-value store interface.

The limiter depends on this abstraction (not a concrete store) so the backing
service can be swapped through configuration.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class AbstractKVStore(ABC):
    """Minimal async key-value capability used by the rate limiter.

    Implementations do not catch their own transport errors; failures
    propagate to the caller, which decides the policy.
    """

    backend: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value stored under ``key``.

        Args:
            key: Storage key.

        Returns:
            The stored string, or None when the key is absent or expired.
        """
        raise NotImplementedError

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store ``value`` under ``key`` for roughly ``ttl_seconds``.

        Args:
            key: Storage key.
            value: Serialized value.
            ttl_seconds: Expiry in whole seconds.
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Release any connections held by the store."""
        return None
