"""Tests for the fixed-window rate limiter."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from adapter_gateway.config import Settings
from adapter_gateway.models import RateLimitPolicy
from adapter_gateway.ratelimit import (
    InMemoryWindowStore,
    RateLimiter,
    RedisWindowStore,
    WindowStore,
)

from conftest import FakeClock


def _limiter(clock, limit=2, window=60, **kwargs):
    return RateLimiter(
        default_policy=RateLimitPolicy(limit=limit, window_seconds=window), clock=clock, **kwargs
    )


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_two_per_minute_denies_third(self):
        """With 2/min the third call in the window is denied."""
        limiter = _limiter(FakeClock())

        first = await limiter.allow("caller-a", "stripe-api")
        second = await limiter.allow("caller-a", "stripe-api")
        third = await limiter.allow("caller-a", "stripe-api")

        assert (first.allowed, second.allowed, third.allowed) == (True, True, False)
        assert second.remaining == 0

    @pytest.mark.asyncio
    async def test_window_elapses(self):
        """After the window passes the caller is allowed again."""
        clock = FakeClock()
        limiter = _limiter(clock)

        for _ in range(3):
            await limiter.allow("caller-a", "stripe-api")
        clock.advance(61)

        assert (await limiter.allow("caller-a", "stripe-api")).allowed is True

    @pytest.mark.asyncio
    async def test_reset_at_is_window_end(self):
        clock = FakeClock(1000.0)
        limiter = _limiter(clock, limit=1)

        await limiter.allow("caller-a", "stripe-api")
        clock.advance(10)
        denied = await limiter.allow("caller-a", "stripe-api")

        assert denied.reset_at == 1060.0

    @pytest.mark.asyncio
    async def test_keys_are_per_caller_and_adapter(self):
        limiter = _limiter(FakeClock(), limit=1)

        assert (await limiter.allow("caller-a", "stripe-api")).allowed
        assert (await limiter.allow("caller-b", "stripe-api")).allowed
        assert (await limiter.allow("caller-a", "paystack-api")).allowed
        assert not (await limiter.allow("caller-a", "stripe-api")).allowed

    @pytest.mark.asyncio
    async def test_concurrent_requests_never_exceed_limit(self):
        limiter = _limiter(FakeClock(), limit=5)

        decisions = await asyncio.gather(
            *(limiter.allow("caller-a", "stripe-api") for _ in range(50))
        )

        assert sum(d.allowed for d in decisions) == 5

    def test_policy_precedence(self):
        limiter = RateLimiter(
            default_policy=RateLimitPolicy(100, 60),
            overrides={"stripe-api": RateLimitPolicy(2, 60)},
        )
        adapter_policy = RateLimitPolicy(10, 60)

        assert limiter.policy_for("stripe-api", adapter_policy).limit == 2
        assert limiter.policy_for("paystack-api", adapter_policy).limit == 10
        assert limiter.policy_for("paystack-api").limit == 100

    @pytest.mark.asyncio
    async def test_store_errors_fail_open(self):
        store = AsyncMock(spec=WindowStore)
        store.hit.side_effect = RedisConnectionError("down")
        limiter = _limiter(FakeClock(), store=store)

        decision = await limiter.allow("caller-a", "stripe-api")

        assert decision.allowed is True

    def test_from_settings(self):
        settings = Settings(
            gateway_rate_limit_default=20,
            gateway_rate_limit_overrides="stripe-api=2/60, paystack-api=5",
        )

        limiter = RateLimiter.from_settings(settings)

        assert isinstance(limiter.store, InMemoryWindowStore)
        assert limiter.default_policy == RateLimitPolicy(20, 60)
        assert limiter.policy_for("stripe-api") == RateLimitPolicy(2, 60)
        assert limiter.policy_for("paystack-api") == RateLimitPolicy(5, 60)

    def test_from_settings_with_redis(self):
        settings = Settings(gateway_redis_url="redis://localhost:6379/0")

        limiter = RateLimiter.from_settings(settings)

        assert isinstance(limiter.store, RedisWindowStore)


class TestInMemoryWindowStore:
    @pytest.mark.asyncio
    async def test_denied_requests_do_not_extend_count(self):
        store = InMemoryWindowStore()

        await store.hit("k", 1, 60, 0.0)
        allowed, count, _ = await store.hit("k", 1, 60, 1.0)

        assert allowed is False
        assert count == 1

    @pytest.mark.asyncio
    async def test_sweep_drops_expired_windows(self):
        store = InMemoryWindowStore(sweep_every=2)

        await store.hit("old", 1, 1, 0.0)
        await store.hit("new", 1, 60, 10.0)

        assert len(store) == 1
