"""Rate limiting middleware for the HTTP layer.

This module wires the token-bucket limiter into request handling.

Design goals:
- Minimal coupling: the wrapper only needs an identity, a limiter config and a
  storage factory.
- Explicit failure policy: when the KV store fails the integrator picks
  ``raise``, ``open`` (fall back to memoryless mode) or ``closed`` (deny).
- Wire contract: denied requests get HTTP 429 with ``X-RateLimit-*`` and
  ``Retry-After`` headers and a JSON body ``{error, limit, resetInMs}``.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from edge_ratelimit.adapters.kv.base import AbstractKVStore
from edge_ratelimit.adapters.kv.factory import create_kv_store
from edge_ratelimit.adapters.rate_limit.base import RateLimitResult
from edge_ratelimit.adapters.rate_limit.token_bucket import (
    Clock,
    TokenBucketRateLimiter,
    hash_identity,
    system_clock_ms,
)
from edge_ratelimit.core.config import settings
from edge_ratelimit.core.errors import StorageAppError
from edge_ratelimit.core.exception_handlers import app_error_response

logger = logging.getLogger(__name__)


ANONYMOUS_ID = "anon"
DEFAULT_IDENTITY_HEADER = "x-forwarded-for"


class StorageErrorPolicy(str, Enum):
    """What the wrapper does when the bucket store fails."""

    RAISE = "raise"
    OPEN = "open"
    CLOSED = "closed"


IdentityExtractor = Callable[[Request], "str | None"]
StoreFactory = Callable[[], "AbstractKVStore | None"]
RateLimitHandler = Callable[[Request], Awaitable["JSONResponse | None"]]


@dataclass
class RateLimitMiddlewareConfig:
    """Configuration for :func:`create_rate_limit_middleware`.

    Attributes:
        limit: Maximum tokens per window.
        window_ms: Window duration in milliseconds.
        get_id: Identity extractor; falls back to the forwarded-for header,
            then the client host, then ``"anon"``.
        get_store: Storage adapter factory, called per request; None or a
            factory returning None means memoryless mode.
        on_storage_error: Policy applied when the store raises.
        refill_rate_per_ms: Optional refill rate override.
        now: Optional clock in milliseconds.
        identity_header: Header used by the default identity extractor.
    """

    limit: int
    window_ms: int
    get_id: IdentityExtractor | None = None
    get_store: StoreFactory | None = None
    on_storage_error: StorageErrorPolicy = StorageErrorPolicy.RAISE
    refill_rate_per_ms: float | None = None
    now: Clock | None = None
    identity_header: str = field(default=DEFAULT_IDENTITY_HEADER)


def default_identity(request: Request, header_name: str = DEFAULT_IDENTITY_HEADER) -> str:
    """Resolve the caller identity from the request.

    Args:
        request: Incoming request.
        header_name: Header holding a comma-separated forwarding chain.

    Returns:
        First forwarded address, else the client host, else ``"anon"``.
    """
    forwarded = request.headers.get(header_name)
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return ANONYMOUS_ID


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Standard rate limit headers for a check result."""
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_in_seconds),
    }


def build_denied_response(result: RateLimitResult) -> JSONResponse:
    """Translate a denied check into the HTTP 429 wire format."""
    headers = rate_limit_headers(result)
    headers["Retry-After"] = str(result.reset_in_seconds)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "Too Many Requests",
            "limit": result.limit,
            "resetInMs": result.reset_in_ms,
        },
        headers=headers,
    )


def _closed_result(limit: int, window_ms: int, clock: Clock | None) -> RateLimitResult:
    current_time = (clock or system_clock_ms)()
    return RateLimitResult(
        allowed=False,
        remaining=0,
        reset_in_ms=int(math.ceil(window_ms - (current_time % window_ms))),
        limit=limit,
    )


async def evaluate_request(
    config: RateLimitMiddlewareConfig, request: Request
) -> tuple[str, RateLimitResult]:
    """Run the admission check for ``request`` and apply the storage policy.

    Returns:
        Tuple of (identity, result).

    Raises:
        StorageAppError: When the store fails and the policy is ``raise``.
    """
    identity = None
    if config.get_id is not None:
        identity = config.get_id(request)
    if not identity:
        identity = default_identity(request, config.identity_header)

    store = config.get_store() if config.get_store is not None else None
    limiter = TokenBucketRateLimiter(
        limit=config.limit,
        window_ms=config.window_ms,
        store=store,
        refill_rate_per_ms=config.refill_rate_per_ms,
        clock=config.now,
    )

    policy = StorageErrorPolicy(config.on_storage_error)
    try:
        return identity, await limiter.consume(identity)
    except StorageAppError as exc:
        if policy is StorageErrorPolicy.RAISE:
            raise
        logger.warning(
            "rate_limit.storage_failed",
            extra={
                "error_code": exc.code,
                "policy": policy.value,
                "backend": limiter.backend,
                "key_hash": hash_identity(identity),
            },
        )
        if policy is StorageErrorPolicy.OPEN:
            return identity, await limiter.consume(identity, memoryless=True)
        return identity, _closed_result(config.limit, config.window_ms, config.now)


def create_rate_limit_middleware(config: RateLimitMiddlewareConfig) -> RateLimitHandler:
    """Build a request handler enforcing the configured rate limit.

    The handler returns None when the request is admitted (the caller should
    continue down its chain) or a ready-to-send 429 response when denied.

    Example:
        >>> guard = create_rate_limit_middleware(
        ...     RateLimitMiddlewareConfig(limit=100, window_ms=60_000, get_store=lambda: store)
        ... )
        >>> denied = await guard(request)
    """

    async def handler(request: Request) -> JSONResponse | None:
        _, result = await evaluate_request(config, request)
        if result.allowed:
            return None
        return build_denied_response(result)

    return handler


_store: AbstractKVStore | None = None
_store_config: tuple | None = None
_retired_stores: list[AbstractKVStore] = []


def _storage_fingerprint() -> tuple:
    cfg = settings.storage
    return (cfg.backend, cfg.redis_url, cfg.rest_url, cfg.rest_token, cfg.timeout_seconds)


def get_kv_store() -> AbstractKVStore | None:
    """Return the process-wide KV store built from settings.

    The instance is cached in-module so in-memory buckets survive across
    requests. If storage configuration changes (primarily in tests), the store
    is rebuilt and the previous one is queued for closing.

    Raises:
        ValidationAppError: If the storage settings are incomplete.
    """

    global _store, _store_config

    config = _storage_fingerprint()
    if _store_config != config:
        replacement = create_kv_store(settings.storage)
        if _store is not None:
            _retired_stores.append(_store)
        _store = replacement
        _store_config = config
    return _store


async def close_retired_kv_stores() -> None:
    """Close stores replaced after a storage configuration change."""
    while _retired_stores:
        store = _retired_stores.pop()
        await store.close()
        logger.info("kv.store_retired", extra={"backend": store.backend})


async def close_kv_store() -> None:
    """Close and forget the cached KV store."""
    global _store, _store_config

    await close_retired_kv_stores()
    if _store is not None:
        await _store.close()
    _store = None
    _store_config = None


def build_config_from_settings() -> RateLimitMiddlewareConfig:
    """Middleware configuration derived from the global settings."""
    rl = settings.rate_limit
    return RateLimitMiddlewareConfig(
        limit=rl.limit,
        window_ms=rl.window_ms,
        get_store=get_kv_store,
        on_storage_error=StorageErrorPolicy(rl.on_storage_error),
        refill_rate_per_ms=rl.refill_rate_per_ms,
        identity_header=rl.identity_header,
    )


async def rate_limit_http_middleware(request: Request, call_next) -> Response:
    """FastAPI ``http`` middleware enforcing per-identity rate limits.

    Usage:
        app.middleware("http")(rate_limit_http_middleware)
    """

    rl = settings.rate_limit
    if not rl.enabled or request.url.path in rl.exempt_path_set:
        return await call_next(request)

    config = build_config_from_settings()
    try:
        identity, result = await evaluate_request(config, request)
    except StorageAppError as exc:
        return app_error_response(exc, status.HTTP_503_SERVICE_UNAVAILABLE)
    finally:
        if _retired_stores:
            await close_retired_kv_stores()

    if not result.allowed:
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "key_hash": hash_identity(identity),
                "limit": result.limit,
                "remaining": result.remaining,
                "window_ms": config.window_ms,
                "retry_after_s": result.reset_in_seconds,
                "request_path": request.url.path,
            },
        )
        return build_denied_response(result)

    response: Response = await call_next(request)
    if rl.include_headers:
        for name, value in rate_limit_headers(result).items():
            response.headers.setdefault(name, value)
    return response
