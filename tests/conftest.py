"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It selects the testing environment (.env.testing, when present) and pins
the settings the HTTP tests rely on.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"

os.environ.setdefault("KV_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_ENABLED", "true")
os.environ.setdefault("RATE_LIMIT_LIMIT", "60")
os.environ.setdefault("RATE_LIMIT_WINDOW_MS", "60000")
os.environ.setdefault("RATE_LIMIT_ON_STORAGE_ERROR", "open")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from edge_ratelimit.adapters.kv.in_memory import InMemoryKVStore
from edge_ratelimit.core import rate_limit as rate_limit_module


class FrozenClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def kv(clock: FrozenClock) -> InMemoryKVStore:
    """In-memory store whose expiry follows the frozen millisecond clock."""
    return InMemoryKVStore(clock=lambda: clock() / 1000)


@pytest.fixture(autouse=True)
def reset_cached_store(monkeypatch: pytest.MonkeyPatch) -> None:
    """Give every test a fresh process-wide KV store."""
    monkeypatch.setattr(rate_limit_module, "_store", None)
    monkeypatch.setattr(rate_limit_module, "_store_config", None)
    monkeypatch.setattr(rate_limit_module, "_retired_stores", [])
