from __future__ import annotations

from fastapi import APIRouter

from edge_ratelimit.core.config import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint.

    Exempt from rate limiting by default so load balancers can poll freely.
    Reports which KV backend the limiter was configured with; it does not
    contact the store.
    """

    return {"status": "ok", "kv_backend": settings.storage.backend}
