"""Fixed-window rate limiting per (caller, adapter)."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from .config import Settings
from .models import RateLimitPolicy


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float


@dataclass
class _Window:
    count: int
    window_start: float
    window_seconds: float

    def expired(self, now: float) -> bool:
        return now >= self.window_start + self.window_seconds


class WindowStore(ABC):
    @abstractmethod
    async def hit(
        self, key: str, limit: int, window_seconds: float, now: float
    ) -> Tuple[bool, int, float]:
        """Atomically count one request; return ``(allowed, count, reset_at)``."""

    async def ping(self) -> bool:
        return True


class InMemoryWindowStore(WindowStore):
    """Process-local windows. Check and increment happen under one lock."""

    def __init__(self, sweep_every: int = 1000) -> None:
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}
        self._sweep_every = sweep_every
        self._hits = 0

    async def hit(self, key, limit, window_seconds, now):
        with self._lock:
            self._hits += 1
            if self._hits % self._sweep_every == 0:
                self._sweep(now)

            window = self._windows.get(key)
            if window is None or window.expired(now):
                window = _Window(count=0, window_start=now, window_seconds=window_seconds)
                self._windows[key] = window

            reset_at = window.window_start + window.window_seconds
            if window.count >= limit:
                return False, window.count, reset_at
            window.count += 1
            return True, window.count, reset_at

    def _sweep(self, now: float) -> None:
        for key in [k for k, w in self._windows.items() if w.expired(now)]:
            del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)


class RedisWindowStore(WindowStore):
    """Shared windows in Redis: ``SET NX PX`` + ``INCR`` + ``PTTL`` in one transaction."""

    def __init__(self, redis_url: str) -> None:
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def hit(self, key, limit, window_seconds, now):
        client = await self._get_redis()
        window_ms = max(1, int(window_seconds * 1000))
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, px=window_ms, nx=True)
            pipe.incr(key)
            pipe.pttl(key)
            _, count, ttl_ms = await pipe.execute()

        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_ms
        count = int(count)
        return count <= limit, count, now + ttl_ms / 1000.0

    async def ping(self) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except RedisError as exc:
            logger.warning("Rate limit store unreachable: %s", exc)
            return False


class RateLimiter:
    def __init__(
        self,
        store: Optional[WindowStore] = None,
        default_policy: RateLimitPolicy = RateLimitPolicy(limit=100, window_seconds=60),
        overrides: Optional[Mapping[str, RateLimitPolicy]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store or InMemoryWindowStore()
        self.default_policy = default_policy
        self.overrides: Dict[str, RateLimitPolicy] = dict(overrides or {})
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        store: WindowStore
        if settings.gateway_redis_url:
            store = RedisWindowStore(settings.gateway_redis_url)
        else:
            store = InMemoryWindowStore()
        overrides = {
            name: RateLimitPolicy(limit=limit, window_seconds=window)
            for name, (limit, window) in settings.rate_limit_overrides().items()
        }
        return cls(
            store=store,
            default_policy=RateLimitPolicy(
                limit=settings.gateway_rate_limit_default,
                window_seconds=settings.gateway_rate_limit_window_seconds,
            ),
            overrides=overrides,
        )

    def policy_for(
        self, adapter_name: str, adapter_policy: Optional[RateLimitPolicy] = None
    ) -> RateLimitPolicy:
        return self.overrides.get(adapter_name) or adapter_policy or self.default_policy

    async def allow(
        self,
        caller_id: str,
        adapter_name: str,
        adapter_policy: Optional[RateLimitPolicy] = None,
    ) -> RateLimitDecision:
        policy = self.policy_for(adapter_name, adapter_policy)
        now = self.clock()
        key = self._make_key(caller_id, adapter_name)
        try:
            allowed, count, reset_at = await self.store.hit(
                key, policy.limit, policy.window_seconds, now
            )
        except RedisError as exc:
            logger.error("Rate limit check error, allowing request: %s", exc)
            return RateLimitDecision(
                allowed=True,
                limit=policy.limit,
                remaining=policy.limit,
                reset_at=now + policy.window_seconds,
            )

        if not allowed:
            logger.warning(
                "Rate limit exceeded caller=%s adapter=%s limit=%s",
                caller_id,
                adapter_name,
                policy.limit,
            )
        return RateLimitDecision(
            allowed=allowed,
            limit=policy.limit,
            remaining=max(0, policy.limit - count),
            reset_at=reset_at,
        )

    def _make_key(self, caller_id: str, adapter_name: str) -> str:
        return f"rate_limit:{caller_id}:{adapter_name}"
