"""Key-value storage adapters.

The rate limiter only needs ``get`` and ``set`` with a TTL, so every backing
store (process memory, Redis, a REST KV service, or nothing at all) is reduced
to that small async interface.
"""

from edge_ratelimit.adapters.kv.base import AbstractKVStore
from edge_ratelimit.adapters.kv.factory import create_kv_store
from edge_ratelimit.adapters.kv.in_memory import InMemoryKVStore
from edge_ratelimit.adapters.kv.noop import NoopKVStore

__all__ = ["AbstractKVStore", "InMemoryKVStore", "NoopKVStore", "create_kv_store"]
