"""REST key-value store client.

Speaks the Upstash / Vercel KV REST dialect:

- ``GET  {base}/get/{key}``            -> ``{"result": "<value>" | null}``
- ``POST {base}/set/{key}?EX=<ttl>``   (raw value as request body)

Authentication is a bearer token. Transport failures and non-2xx answers are
raised as StorageAppError; callers decide what to do with them.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from edge_ratelimit.adapters.kv.base import AbstractKVStore
from edge_ratelimit.core.errors import StorageAppError

logger = logging.getLogger(__name__)


class RestKVStore(AbstractKVStore):
    """Managed KV service reached over HTTPS."""

    backend = "rest"

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the REST client.

        Args:
            base_url: Service root URL.
            token: Bearer token sent on every request.
            timeout_seconds: Per-request timeout.
            transport: Optional custom transport (e.g., httpx.MockTransport in tests).
        """
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StorageAppError(
                code="kv_bad_status",
                message="KV service returned an error status",
                details={"backend": self.backend, "http_status": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            raise StorageAppError(
                code="kv_unavailable",
                message="KV service could not be reached",
                details={"backend": self.backend, "hint": type(exc).__name__},
            ) from exc
        return response

    async def get(self, key: str) -> str | None:
        response = await self._request("GET", f"/get/{quote(key, safe='')}")
        try:
            result = response.json().get("result")
        except ValueError as exc:
            raise StorageAppError(
                code="kv_bad_payload",
                message="KV service returned a non-JSON body",
                details={"backend": self.backend},
            ) from exc
        if result is None:
            return None
        return str(result)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._request(
            "POST",
            f"/set/{quote(key, safe='')}",
            params={"EX": max(1, int(ttl_seconds))},
            content=value.encode("utf-8"),
        )

    async def close(self) -> None:
        await self._client.aclose()
