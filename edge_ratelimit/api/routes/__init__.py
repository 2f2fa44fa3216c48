from __future__ import annotations

from edge_ratelimit.api.routes.health import router as health_router
from edge_ratelimit.api.routes.ping import router as ping_router

__all__ = ["health_router", "ping_router"]
