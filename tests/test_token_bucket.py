"""Unit tests for the token-bucket admission check."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from edge_ratelimit.adapters.kv.in_memory import InMemoryKVStore
from edge_ratelimit.adapters.rate_limit.token_bucket import (
    RateLimitOptions,
    TokenBucketRateLimiter,
    build_bucket_key,
    check_rate_limit,
)
from edge_ratelimit.core.errors import StorageAppError, ValidationAppError


def run(options: RateLimitOptions):
    return asyncio.run(check_rate_limit(options))


def make_options(kv: InMemoryKVStore, clock, **overrides) -> RateLimitOptions:
    params = {
        "id": "user:1",
        "limit": 5,
        "window_ms": 1000,
        "now": clock,
        "get": kv.get,
        "set": kv.set,
    }
    params.update(overrides)
    return RateLimitOptions(**params)


class TestAdmission:
    def test_allows_up_to_limit_then_blocks(self, kv, clock) -> None:
        opts = make_options(kv, clock, limit=5)

        remaining = []
        for _ in range(5):
            result = run(opts)
            assert result.allowed is True
            remaining.append(result.remaining)

        assert remaining == [4, 3, 2, 1, 0]

        blocked = run(opts)
        assert blocked.allowed is False
        assert blocked.remaining == 0
        assert blocked.limit == 5

    def test_denial_is_idempotent_with_frozen_clock(self, kv, clock) -> None:
        opts = make_options(kv, clock, limit=2)
        run(opts)
        run(opts)

        for _ in range(3):
            result = run(opts)
            assert result.allowed is False
            assert result.remaining == 0

    def test_new_window_restores_full_capacity(self, kv, clock) -> None:
        opts = make_options(kv, clock, id="user:4", limit=3)
        for _ in range(3):
            assert run(opts).allowed is True
        assert run(opts).allowed is False

        clock.now = 1001

        result = run(opts)
        assert result.allowed is True
        assert result.remaining == 2

    def test_partial_refill_within_window(self, kv, clock) -> None:
        opts = make_options(kv, clock, id="user:3", limit=10)
        for _ in range(8):
            run(opts)

        # 2 tokens left; 300ms at 10 tokens/s refills 3.
        clock.now = 300
        result = run(opts)

        assert result.allowed is True
        assert result.remaining == 4

    def test_refill_is_capped_at_limit(self, kv, clock) -> None:
        opts = make_options(kv, clock, id="user:3", limit=10)
        for _ in range(5):
            run(opts)

        clock.now = 500
        result = run(opts)

        assert result.allowed is True
        assert result.remaining == 9

    def test_custom_refill_rate(self, kv, clock) -> None:
        opts = make_options(kv, clock, id="user:9", limit=10, refill_rate_per_ms=0.1)
        for _ in range(5):
            run(opts)

        clock.now = 100
        result = run(opts)

        assert result.allowed is True
        assert result.remaining >= 8

    def test_zero_refill_rate_never_refills(self, kv, clock) -> None:
        opts = make_options(kv, clock, limit=1, refill_rate_per_ms=0)
        assert run(opts).allowed is True

        clock.now = 900
        assert run(opts).allowed is False

    def test_identities_are_isolated(self, kv, clock) -> None:
        first = make_options(kv, clock, id="user:7", limit=2)
        second = make_options(kv, clock, id="user:8", limit=2)

        run(first)
        run(first)
        assert run(first).allowed is False

        result = run(second)
        assert result.allowed is True
        assert result.remaining == 1

    def test_clock_going_backwards_does_not_drain_tokens(self, kv, clock) -> None:
        clock.now = 500
        opts = make_options(kv, clock, limit=5)
        run(opts)
        run(opts)

        clock.now = 200
        result = run(opts)

        assert result.allowed is True
        assert result.remaining == 2


class TestMemorylessMode:
    def test_without_storage_every_call_starts_full(self, clock) -> None:
        opts = RateLimitOptions(id="user:5", limit=2, window_ms=1000, now=clock)

        for _ in range(4):
            result = run(opts)
            assert result.allowed is True
            assert result.remaining == 1

    def test_read_only_storage_never_persists(self, kv, clock) -> None:
        opts = RateLimitOptions(id="user:5", limit=1, window_ms=1000, now=clock, get=kv.get)

        assert run(opts).allowed is True
        assert run(opts).allowed is True
        assert len(kv) == 0

    def test_default_clock_is_used_when_none_given(self) -> None:
        result = run(RateLimitOptions(id="user:5", limit=3, window_ms=1000))

        assert result.allowed is True
        assert 0 < result.reset_in_ms <= 1000


class TestResetAndPersistence:
    def test_reset_in_ms_mid_window(self, kv, clock) -> None:
        clock.now = 500
        result = run(make_options(kv, clock, limit=10))

        assert result.reset_in_ms == 500

    def test_reset_in_ms_at_boundary_is_full_window(self, kv, clock) -> None:
        clock.now = 2000
        result = run(make_options(kv, clock, limit=10))

        assert result.reset_in_ms == 1000

    def test_reset_in_seconds_rounds_up(self, kv, clock) -> None:
        clock.now = 59_001
        result = run(make_options(kv, clock, window_ms=60_000))

        assert result.reset_in_ms == 999
        assert result.reset_in_seconds == 1

    def test_bucket_key_includes_window_index(self) -> None:
        assert build_bucket_key("1.2.3.4", 0, 1000) == "rl:1.2.3.4:0"
        assert build_bucket_key("1.2.3.4", 1999, 1000) == "rl:1.2.3.4:1"
        assert build_bucket_key("1.2.3.4", 2000, 1000) == "rl:1.2.3.4:2"

    def test_persists_json_bucket_with_window_ttl(self, clock) -> None:
        get = AsyncMock(return_value=None)
        set_ = AsyncMock()
        clock.now = 1500

        run(RateLimitOptions(id="u", limit=3, window_ms=2500, now=clock, get=get, set=set_))

        get.assert_awaited_once_with("rl:u:0")
        key, value, ttl = set_.await_args.args
        assert key == "rl:u:0"
        assert ttl == 3
        assert json.loads(value) == {"tokens": 2.0, "updatedAt": 1500}

    def test_stored_tokens_stay_within_bounds(self, kv, clock) -> None:
        opts = make_options(kv, clock, id="bounds", limit=3)
        for step in range(12):
            clock.now = step * 90
            run(opts)
            stored = json.loads(asyncio.run(kv.get(build_bucket_key("bounds", clock.now, 1000))))
            assert 0 <= stored["tokens"] <= 3

    def test_corrupt_bucket_is_treated_as_absent(self, clock) -> None:
        get = AsyncMock(return_value="not-json")
        result = run(RateLimitOptions(id="u", limit=4, window_ms=1000, now=clock, get=get))

        assert result.allowed is True
        assert result.remaining == 3

    def test_out_of_range_stored_tokens_are_clamped(self, clock) -> None:
        get = AsyncMock(return_value=json.dumps({"tokens": -7, "updatedAt": 0}))
        result = run(RateLimitOptions(id="u", limit=4, window_ms=1000, now=clock, get=get))

        assert result.allowed is False
        assert result.remaining == 0


class TestConfigurationErrors:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"id": ""},
            {"limit": 0},
            {"limit": -1},
            {"limit": 1.5},
            {"limit": True},
            {"window_ms": 0},
            {"window_ms": None},
            {"refill_rate_per_ms": -0.5},
            {"refill_rate_per_ms": float("nan")},
            {"refill_rate_per_ms": float("inf")},
        ],
    )
    def test_rejected_before_storage_access(self, clock, overrides: dict) -> None:
        get = AsyncMock(return_value=None)
        set_ = AsyncMock()
        params = {"id": "u", "limit": 3, "window_ms": 1000, "now": clock, "get": get, "set": set_}
        params.update(overrides)

        with pytest.raises(ValidationAppError) as exc_info:
            run(RateLimitOptions(**params))

        assert exc_info.value.code == "invalid_rate_limit_config"
        get.assert_not_awaited()
        set_.assert_not_awaited()


class TestStorageFailures:
    def test_get_failure_propagates(self, clock) -> None:
        get = AsyncMock(side_effect=ConnectionError("kv down"))

        with pytest.raises(ConnectionError):
            run(RateLimitOptions(id="u", limit=3, window_ms=1000, now=clock, get=get))

    def test_set_failure_propagates(self, clock) -> None:
        set_ = AsyncMock(side_effect=TimeoutError())

        with pytest.raises(TimeoutError):
            run(
                RateLimitOptions(
                    id="u", limit=3, window_ms=1000, now=clock, get=AsyncMock(return_value=None), set=set_
                )
            )


class TestTokenBucketRateLimiter:
    def test_non_finite_refill_rate_rejected_at_construction(self) -> None:
        with pytest.raises(ValidationAppError) as exc_info:
            TokenBucketRateLimiter(limit=2, window_ms=1000, refill_rate_per_ms=float("nan"))

        assert exc_info.value.details["field"] == "refill_rate_per_ms"

    def test_consume_uses_store(self, kv, clock) -> None:
        limiter = TokenBucketRateLimiter(limit=2, window_ms=1000, store=kv, clock=clock)

        assert asyncio.run(limiter.consume("k")).allowed is True
        assert asyncio.run(limiter.consume("k")).allowed is True
        assert asyncio.run(limiter.consume("k")).allowed is False
        assert asyncio.run(limiter.consume("other")).allowed is True

    def test_memoryless_consume_skips_store(self, kv, clock) -> None:
        limiter = TokenBucketRateLimiter(limit=1, window_ms=1000, store=kv, clock=clock)
        asyncio.run(limiter.consume("k"))

        result = asyncio.run(limiter.consume("k", memoryless=True))

        assert result.allowed is True
        assert limiter.backend == "memory"

    def test_store_errors_become_storage_app_error(self, clock) -> None:
        store = AsyncMock()
        store.backend = "redis"
        store.get.side_effect = ConnectionError("refused")
        limiter = TokenBucketRateLimiter(limit=1, window_ms=1000, store=store, clock=clock)

        with pytest.raises(StorageAppError) as exc_info:
            asyncio.run(limiter.consume("k"))

        assert exc_info.value.code == "kv_get_failed"
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    def test_set_errors_become_storage_app_error(self, clock) -> None:
        store = AsyncMock()
        store.backend = "redis"
        store.get.return_value = None
        store.set.side_effect = OSError("broken pipe")
        limiter = TokenBucketRateLimiter(limit=1, window_ms=1000, store=store, clock=clock)

        with pytest.raises(StorageAppError) as exc_info:
            asyncio.run(limiter.consume("k"))

        assert exc_info.value.code == "kv_set_failed"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"limit": 0, "window_ms": 1000},
            {"limit": 1, "window_ms": 0},
            {"limit": 1, "window_ms": 1000, "refill_rate_per_ms": -1},
        ],
    )
    def test_invalid_constructor_args(self, kwargs: dict) -> None:
        with pytest.raises(ValidationAppError):
            TokenBucketRateLimiter(**kwargs)

    def test_empty_key_rejected(self) -> None:
        limiter = TokenBucketRateLimiter(limit=1, window_ms=1000)

        with pytest.raises(ValidationAppError):
            asyncio.run(limiter.consume(""))
