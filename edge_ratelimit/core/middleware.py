"""HTTP middleware for request ID propagation and correlation.

Every request/response pair carries a correlation id so rate limit decisions
logged deep in the limiter can be tied back to the request that caused them.
Client-supplied ids end up in log records and response headers, so only short
ids made of a safe character set are reused.

Usage:
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import re
import time
import uuid

from fastapi import Request, Response

from edge_ratelimit.core.config import settings
from edge_ratelimit.core.logging import clear_request_id, set_request_id

DURATION_HEADER = "X-Request-Duration-ms"

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_request_id(incoming: str | None) -> str:
    """Reuse a well-formed incoming id, otherwise mint a UUID4."""
    if incoming and _REQUEST_ID_PATTERN.match(incoming):
        return incoming
    return str(uuid.uuid4())


async def request_id_middleware(request: Request, call_next) -> Response:
    """Bind a correlation id to the request and echo it on the response.

    The header name is configurable through ``LOG_REQUEST_ID_HEADER``. The id
    is exposed as ``request.state.request_id`` and held in the logging
    contextvar until the downstream handler returns.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The downstream response with the request id and
            ``X-Request-Duration-ms`` headers added.
    """

    header_name = settings.log.request_id_header
    request_id = resolve_request_id(request.headers.get(header_name))
    request.state.request_id = request_id

    set_request_id(request_id)
    started = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()
    elapsed_ms = (time.perf_counter() - started) * 1000

    response.headers[header_name] = request_id
    if DURATION_HEADER not in response.headers:
        response.headers[DURATION_HEADER] = f"{elapsed_ms:.2f}"
    return response
