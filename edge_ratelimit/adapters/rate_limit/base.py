"""Rate limiter interfaces.

The API depends on this abstraction (not the concrete implementation) so the
algorithm and its storage backend can be swapped with minimal changes.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        remaining: Whole tokens left after this request (0 when blocked).
        reset_in_ms: Milliseconds until the current fixed window ends.
        limit: Max tokens per window.
    """

    allowed: bool
    remaining: int
    reset_in_ms: int
    limit: int

    @property
    def reset_in_seconds(self) -> int:
        """Seconds until the window boundary, rounded up."""
        return int(math.ceil(self.reset_in_ms / 1000))

    def to_dict(self) -> dict[str, Any]:
        """Wire representation with camelCase keys."""
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "resetInMs": self.reset_in_ms,
            "limit": self.limit,
        }


class AbstractRateLimiter(ABC):
    """Interface for rate limiters."""

    @abstractmethod
    async def consume(self, key: str) -> RateLimitResult:
        """Consume one unit of budget for a given key.

        Args:
            key: Unique identifier (e.g., API key, IP address).

        Returns:
            RateLimitResult describing whether it was allowed.
        """
        raise NotImplementedError
