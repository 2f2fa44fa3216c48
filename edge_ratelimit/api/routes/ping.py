from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(tags=["Ping"])


@router.get("/ping")
def ping() -> dict:
    """Rate-limited liveness check.

    Every call consumes one token from the caller's bucket, so this endpoint
    doubles as a way to observe the X-RateLimit-* headers.
    """

    return {"status": "pong"}
