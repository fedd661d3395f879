"""Sliding-window rate limiting over a pluggable counter store.

Two stores are provided. ``RedisRateLimitStore`` keeps one sorted set per key and is
shared by every API process. ``InMemoryRateLimitStore`` keeps timestamps in a dict and
is per-process only: with several workers each one enforces its own window, so the
effective limit is multiplied by the worker count.
"""

from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: float
    current: int
    limit: int


RATE_LIMIT_PRESETS: Dict[str, RateLimitConfig] = {
    "DEFAULT": RateLimitConfig(30, 60),
    "PAYMENT_PREPARE": RateLimitConfig(10, 60),
    "PAYMENT_CONFIRM": RateLimitConfig(5, 60),
    "SUBSCRIPTION_CREATE": RateLimitConfig(3, 60),
    "REFUND_REQUEST": RateLimitConfig(3, 60),
    "GENERAL_READ": RateLimitConfig(30, 60),
    "AI_GENERATE": RateLimitConfig(20, 60),
    "AUTH": RateLimitConfig(5, 60),
}


def rate_limit_key(identifier: str, action: str) -> str:
    return f"ratelimit:{action}:{identifier}"


class InMemoryRateLimitStore:
    """Per-process timestamp lists guarded by a lock."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._timestamps: Dict[str, List[float]] = {}

    async def hit(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        window_start = now - config.window_seconds
        with self._lock:
            window = [ts for ts in self._timestamps.get(key, []) if ts > window_start]
            current = len(window)
            allowed = current < config.max_requests
            if allowed:
                window.append(now)
            if window:
                self._timestamps[key] = window
            else:
                self._timestamps.pop(key, None)

        reset_in = max(0.0, window[0] + config.window_seconds - now) if window else 0.0
        counted = current + (1 if allowed else 0)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max_requests - counted),
            reset_in=reset_in,
            current=counted,
            limit=config.max_requests,
        )

    async def clear(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._timestamps.clear()
            else:
                self._timestamps.pop(key, None)

    def prune(self, max_age_seconds: float = 3600) -> int:
        """Drop keys whose newest hit is older than max_age_seconds."""
        cutoff = self._clock() - max_age_seconds
        with self._lock:
            stale = [key for key, stamps in self._timestamps.items() if not stamps or stamps[-1] <= cutoff]
            for key in stale:
                del self._timestamps[key]
        return len(stale)


class RedisRateLimitStore:
    """Sorted-set window shared across processes.

    Trim, add, count and expire run in one MULTI block, so concurrent callers always
    see a count that includes their own member. A rejected call removes its member
    again so it does not extend the window.
    """

    def __init__(self, client: "redis.Redis", clock: Clock = time.time) -> None:
        self._client = client
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, clock: Clock = time.time) -> "RedisRateLimitStore":
        return cls(redis.from_url(url, decode_responses=True), clock=clock)

    async def hit(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        now = self._clock()
        window_start = now - config.window_seconds
        member = f"{now:.6f}-{uuid.uuid4().hex[:9]}"
        ttl = int(math.ceil(config.window_seconds)) + 60

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.expire(key, ttl)
            _, _, count, _ = await pipe.execute()

        count = int(count)
        if count > config.max_requests:
            await self._client.zrem(key, member)
            oldest = await self._client.zrange(key, 0, 0, withscores=True)
            reset_in = config.window_seconds
            if oldest:
                reset_in = max(0.0, float(oldest[0][1]) + config.window_seconds - now)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_in=reset_in,
                current=count - 1,
                limit=config.max_requests,
            )

        return RateLimitResult(
            allowed=True,
            remaining=max(0, config.max_requests - count),
            reset_in=config.window_seconds,
            current=count,
            limit=config.max_requests,
        )

    async def clear(self, key: Optional[str] = None) -> None:
        if key is not None:
            await self._client.delete(key)
            return
        async for found in self._client.scan_iter(match="ratelimit:*"):
            await self._client.delete(found)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class RateLimiter:
    """Checks (identifier, action) pairs against a window config.

    A shared-store failure degrades to the in-process fallback for that call.
    """

    def __init__(self, store, fallback: Optional[InMemoryRateLimitStore] = None) -> None:
        self.store = store
        self.fallback = fallback if fallback is not None else (
            store if isinstance(store, InMemoryRateLimitStore) else InMemoryRateLimitStore()
        )

    async def check(self, identifier: str, action: str, config: RateLimitConfig) -> RateLimitResult:
        key = rate_limit_key(identifier, action)
        if self.store is self.fallback:
            return await self.fallback.hit(key, config)
        try:
            return await self.store.hit(key, config)
        except redis.RedisError as exc:
            logger.warning("Shared rate limit store failed, using in-process fallback key=%s: %s", key, exc)
            return await self.fallback.hit(key, config)

    async def clear(self, identifier: Optional[str] = None, action: Optional[str] = None) -> None:
        key = rate_limit_key(identifier, action) if identifier and action else None
        await self.fallback.clear(key)
        if self.store is not self.fallback:
            try:
                await self.store.clear(key)
            except redis.RedisError as exc:
                logger.warning("Failed to clear shared rate limit store: %s", exc)

    async def close(self) -> None:
        if isinstance(self.store, RedisRateLimitStore):
            await self.store.close()


def build_rate_limiter(redis_url: str = "", clock: Clock = time.time) -> RateLimiter:
    """Shared store when a Redis URL is configured, in-process counters otherwise."""
    fallback = InMemoryRateLimitStore(clock=clock)
    if (redis_url or "").strip():
        return RateLimiter(RedisRateLimitStore.from_url(redis_url, clock=clock), fallback=fallback)
    logger.info("REDIS_URL not set; rate limits are enforced per process")
    return RateLimiter(fallback)


def get_rate_limit_error_message(result: RateLimitResult) -> str:
    seconds = int(math.ceil(result.reset_in))
    if seconds > 60:
        return f"Too many requests. Try again in {int(math.ceil(seconds / 60))} minutes."
    return f"Too many requests. Try again in {seconds} seconds."
