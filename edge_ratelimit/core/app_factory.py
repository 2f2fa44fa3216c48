"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) so
tests can build a fresh instance after changing settings.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from edge_ratelimit import __version__
from edge_ratelimit.api.routes import health_router, ping_router
from edge_ratelimit.core.config import settings
from edge_ratelimit.core.exception_handlers import setup_exception_handlers
from edge_ratelimit.core.logging import configure_logging
from edge_ratelimit.core.middleware import request_id_middleware
from edge_ratelimit.core.rate_limit import (
    close_kv_store,
    get_kv_store,
    rate_limit_http_middleware,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Incomplete storage settings fail here rather than on the first request.
    store = get_kv_store()
    logger.info(
        "app.startup",
        extra={
            "app_env": settings.app_env,
            "kv_backend": store.backend if store is not None else "none",
            "rate_limit_enabled": settings.rate_limit.enabled,
            "limit": settings.rate_limit.limit,
            "window_ms": settings.rate_limit.window_ms,
        },
    )
    yield
    await close_kv_store()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Edge Rate Limiter",
        description=(
            "Token-bucket admission control keyed by caller identity and fixed "
            "window, backed by a pluggable key-value store. Denied requests get "
            "HTTP 429 with X-RateLimit-* and Retry-After headers."
        ),
        version=__version__,
        lifespan=lifespan,
    )

    # Middleware: the last one registered runs first, so request ids are
    # bound before the rate limiter logs anything.
    app.middleware("http")(rate_limit_http_middleware)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(ping_router, prefix="/v1")
    app.include_router(health_router)

    return app
