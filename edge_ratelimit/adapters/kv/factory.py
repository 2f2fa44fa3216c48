"""Factory for building the configured key-value store."""

from __future__ import annotations

from edge_ratelimit.adapters.kv.base import AbstractKVStore
from edge_ratelimit.adapters.kv.in_memory import InMemoryKVStore
from edge_ratelimit.adapters.kv.noop import NoopKVStore
from edge_ratelimit.core.config import StorageSettings, settings
from edge_ratelimit.core.errors import ValidationAppError


def create_kv_store(storage_settings: StorageSettings | None = None) -> AbstractKVStore | None:
    """Instantiate the KV store selected by configuration.

    Args:
        storage_settings: Storage settings; defaults to the global settings.

    Returns:
        AbstractKVStore, or None for the memoryless ``none`` backend.

    Raises:
        ValidationAppError: If backend-specific requirements are not met.
    """
    cfg = storage_settings or settings.storage
    backend = cfg.backend.lower()

    if backend == "none":
        return None

    if backend == "memory":
        return InMemoryKVStore()

    if backend == "noop":
        return NoopKVStore()

    if backend == "redis":
        if not cfg.redis_url:
            raise ValidationAppError(
                code="kv_missing_redis_url",
                message="redis backend requires KV_REDIS_URL environment variable",
            )
        from edge_ratelimit.adapters.kv.redis_store import RedisKVStore

        return RedisKVStore(cfg.redis_url, timeout_seconds=cfg.timeout_seconds)

    if backend == "rest":
        if not cfg.rest_url:
            raise ValidationAppError(
                code="kv_missing_rest_url",
                message="rest backend requires KV_REST_URL environment variable",
            )
        from edge_ratelimit.adapters.kv.rest import RestKVStore

        return RestKVStore(
            cfg.rest_url,
            token=cfg.rest_token,
            timeout_seconds=cfg.timeout_seconds,
        )

    raise ValidationAppError(
        code="kv_unknown_backend",
        message=(
            f"Unknown KV backend: '{backend}'. Supported backends: memory, redis, rest, noop, none"
        ),
    )
