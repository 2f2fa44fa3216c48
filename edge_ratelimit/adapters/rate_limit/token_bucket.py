"""Token-bucket rate limiter for stateless edge runtimes.

Each check reads a bucket, refills it for the time elapsed since its last
update, tries to take one token, and writes it back. Buckets are keyed by
caller id plus the index of the current fixed window, so a cold instance with
no shared store still enforces a per-window cap, and every window boundary
starts a fresh, full bucket.

Notes:
- No locking around read-modify-write: against a remote store concurrent
  callers with the same id can be slightly over-admitted (soft limit).
- Without ``get``/``set`` the check is memoryless: every call sees a full
  bucket.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from edge_ratelimit.adapters.kv.base import AbstractKVStore
from edge_ratelimit.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from edge_ratelimit.core.errors import StorageAppError, ValidationAppError

logger = logging.getLogger(__name__)


KEY_PREFIX = "rl"

Clock = Callable[[], float]
KVGet = Callable[[str], Awaitable[str | None]]
KVSet = Callable[[str, str, int], Awaitable[None]]


def system_clock_ms() -> int:
    """Current UNIX time in milliseconds."""
    return int(time.time() * 1000)


@dataclass
class RateLimitOptions:
    """Inputs for a single admission check.

    Attributes:
        id: Stable caller identity (IP address, user id, API key).
        limit: Maximum tokens per window.
        window_ms: Window duration in milliseconds.
        refill_rate_per_ms: Tokens regained per millisecond; defaults to
            ``limit / window_ms`` so an empty bucket is full again after one
            window.
        now: Clock returning milliseconds; defaults to the system clock.
        get: Async read from the bucket store.
        set: Async write to the bucket store ``(key, value, ttl_seconds)``.
    """

    id: str
    limit: int
    window_ms: int
    refill_rate_per_ms: float | None = None
    now: Clock | None = None
    get: KVGet | None = None
    set: KVSet | None = None

    @property
    def effective_refill_rate(self) -> float:
        if self.refill_rate_per_ms is None:
            return self.limit / self.window_ms
        return self.refill_rate_per_ms


@dataclass
class _Bucket:
    tokens: float
    updated_at: float

    def dumps(self) -> str:
        return json.dumps({"tokens": self.tokens, "updatedAt": self.updated_at})


def _invalid(field: str, message: str, value: object) -> ValidationAppError:
    return ValidationAppError(
        code="invalid_rate_limit_config",
        message=message,
        details={"field": field, "actual_value": repr(value)},
    )


def _is_positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def validate_options(options: RateLimitOptions) -> None:
    """Reject configuration errors before any storage access.

    Raises:
        ValidationAppError: If id is empty or limit/window/refill rate are invalid.
    """
    if not isinstance(options.id, str) or not options.id:
        raise _invalid("id", "id must be a non-empty string", options.id)
    if not _is_positive_int(options.limit):
        raise _invalid("limit", "limit must be a positive integer", options.limit)
    if not _is_positive_int(options.window_ms):
        raise _invalid("window_ms", "window_ms must be a positive integer", options.window_ms)
    rate = options.refill_rate_per_ms
    if rate is not None and (
        isinstance(rate, bool)
        or not isinstance(rate, (int, float))
        or not math.isfinite(rate)
        or rate < 0
    ):
        raise _invalid("refill_rate_per_ms", "refill_rate_per_ms must be a finite number >= 0", rate)


def build_bucket_key(identity: str, current_time: float, window_ms: int) -> str:
    """Composite key for the bucket of ``identity`` in the current window."""
    window_index = math.floor(current_time / window_ms)
    return f"{KEY_PREFIX}:{identity}:{window_index}"


def _parse_bucket(raw: str | None, *, limit: int, current_time: float) -> _Bucket:
    """Decode a stored bucket, falling back to a full one when absent or corrupt."""
    if raw is None:
        return _Bucket(tokens=float(limit), updated_at=current_time)

    try:
        data = json.loads(raw)
        tokens = float(data["tokens"])
        updated_at = float(data["updatedAt"])
    except (ValueError, TypeError, KeyError) as exc:
        logger.warning(
            "rate_limit.bucket_corrupt",
            extra={"error_type": type(exc).__name__},
        )
        return _Bucket(tokens=float(limit), updated_at=current_time)

    if not math.isfinite(tokens) or not math.isfinite(updated_at):
        return _Bucket(tokens=float(limit), updated_at=current_time)

    return _Bucket(tokens=min(float(limit), max(0.0, tokens)), updated_at=updated_at)


async def check_rate_limit(options: RateLimitOptions) -> RateLimitResult:
    """Decide whether the current request from ``options.id`` is admitted.

    Storage exceptions raised by ``get``/``set`` are not caught here; they
    reach the caller so the failure policy stays an explicit choice.

    Args:
        options: Caller identity, limit, window and optional clock/storage.

    Returns:
        RateLimitResult with the decision, whole tokens remaining and the time
        until the current window boundary.

    Raises:
        ValidationAppError: On invalid configuration (before any storage call).

    Example:
        >>> store = InMemoryKVStore()
        >>> result = await check_rate_limit(RateLimitOptions(
        ...     id="203.0.113.7", limit=60, window_ms=60_000,
        ...     get=store.get, set=store.set,
        ... ))
    """
    validate_options(options)

    limit = options.limit
    window_ms = options.window_ms
    clock = options.now or system_clock_ms

    current_time = clock()
    key = build_bucket_key(options.id, current_time, window_ms)

    raw = await options.get(key) if options.get is not None else None
    bucket = _parse_bucket(raw, limit=limit, current_time=current_time)

    # Clock may step backwards; never refill negatively.
    elapsed = max(0.0, current_time - bucket.updated_at)
    bucket.tokens = min(float(limit), bucket.tokens + elapsed * options.effective_refill_rate)
    bucket.updated_at = current_time

    allowed = bucket.tokens >= 1
    if allowed:
        bucket.tokens -= 1

    if options.set is not None:
        await options.set(key, bucket.dumps(), int(math.ceil(window_ms / 1000)))

    reset_in_ms = int(math.ceil(window_ms - (current_time % window_ms)))
    remaining = max(0, int(math.floor(bucket.tokens)))

    return RateLimitResult(
        allowed=allowed,
        remaining=remaining,
        reset_in_ms=reset_in_ms,
        limit=limit,
    )


def hash_identity(identity: str) -> str:
    """Hash the caller identity for logging without exposing it."""
    return hashlib.sha256(identity.encode()).hexdigest()[:16]


class TokenBucketRateLimiter(AbstractRateLimiter):
    """Token-bucket limiter bound to a configuration and a KV store.

    Store failures are re-raised as StorageAppError so the HTTP layer can
    apply its configured policy without knowing which backend is in use.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_ms: int,
        store: AbstractKVStore | None = None,
        refill_rate_per_ms: float | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            limit: Maximum tokens per window.
            window_ms: Window duration in milliseconds.
            store: Bucket storage; None runs in memoryless mode.
            refill_rate_per_ms: Optional refill rate override.
            clock: Time source returning milliseconds.

        Raises:
            ValidationAppError: If limit, window or refill rate are invalid.
        """
        validate_options(
            RateLimitOptions(
                id="-",
                limit=limit,
                window_ms=window_ms,
                refill_rate_per_ms=refill_rate_per_ms,
            )
        )
        self.limit = limit
        self.window_ms = window_ms
        self.store = store
        self.refill_rate_per_ms = refill_rate_per_ms
        self._clock = clock

    @property
    def backend(self) -> str:
        return self.store.backend if self.store is not None else "none"

    async def _store_get(self, key: str) -> str | None:
        try:
            return await self.store.get(key)  # type: ignore[union-attr]
        except StorageAppError:
            raise
        except Exception as exc:
            raise StorageAppError(
                code="kv_get_failed",
                message="Failed to read rate limit bucket",
                details={"backend": self.backend, "hint": type(exc).__name__},
            ) from exc

    async def _store_set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.store.set(key, value, ttl_seconds)  # type: ignore[union-attr]
        except StorageAppError:
            raise
        except Exception as exc:
            raise StorageAppError(
                code="kv_set_failed",
                message="Failed to write rate limit bucket",
                details={"backend": self.backend, "hint": type(exc).__name__},
            ) from exc

    def options_for(self, key: str, *, memoryless: bool = False) -> RateLimitOptions:
        """Build check options for ``key``, optionally without storage."""
        use_store = self.store is not None and not memoryless
        return RateLimitOptions(
            id=key,
            limit=self.limit,
            window_ms=self.window_ms,
            refill_rate_per_ms=self.refill_rate_per_ms,
            now=self._clock,
            get=self._store_get if use_store else None,
            set=self._store_set if use_store else None,
        )

    async def consume(self, key: str, *, memoryless: bool = False) -> RateLimitResult:
        """Consume one token for ``key``.

        Args:
            key: Caller identity.
            memoryless: Skip the store and evaluate against a fresh bucket.

        Returns:
            RateLimitResult with allowance decision and metadata.

        Raises:
            ValidationAppError: If key is empty.
            StorageAppError: If the store fails.
        """
        result = await check_rate_limit(self.options_for(key, memoryless=memoryless))

        log_extra = {
            "key_hash": hash_identity(key),
            "backend": "none" if memoryless else self.backend,
            "limit": result.limit,
            "remaining": result.remaining,
            "window_ms": self.window_ms,
        }
        if result.allowed:
            logger.debug("rate_limit.allowed", extra=log_extra)
        else:
            logger.info("rate_limit.denied", extra={**log_extra, "reset_in_ms": result.reset_in_ms})
        return result
