"""Edge-deployable token-bucket rate limiter."""

from edge_ratelimit.adapters.rate_limit.base import RateLimitResult
from edge_ratelimit.adapters.rate_limit.token_bucket import (
    RateLimitOptions,
    TokenBucketRateLimiter,
    check_rate_limit,
)

__version__ = "0.1.0"

__all__ = [
    "RateLimitOptions",
    "RateLimitResult",
    "TokenBucketRateLimiter",
    "check_rate_limit",
    "__version__",
]
