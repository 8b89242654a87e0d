"""Per-identity attempt limiter for login and registration.

Each identity (lower-cased email) gets its own fixed window that starts at its
first attempt. Windows are reset lazily on the next attempt after they run
out, so no timers are kept per identity. Counters live behind ``CounterStore``:
in-process for tests and single-instance runs, Redis when several API
instances must share them.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from pulse.billing.errors import RateLimited
from pulse.billing.timeutils import utcnow
from pulse.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: datetime

    @property
    def retry_after_seconds(self) -> int:
        return max(int((self.reset_at - utcnow()).total_seconds()), 0)


class CounterStore(Protocol):
    async def increment(self, key: str, window_seconds: int, now: datetime) -> tuple[int, datetime]:
        """Record one attempt; return the count in the current window and when it resets."""
        ...

    async def clear(self, key: str) -> None:
        ...


class InMemoryCounterStore:
    """Process-local counters. Expired windows are pruned once ``prune_threshold`` keys accumulate."""

    def __init__(self, prune_threshold: int = 256) -> None:
        self._windows: dict[str, tuple[int, datetime]] = {}
        self._lock = asyncio.Lock()
        self._prune_threshold = prune_threshold

    def _prune(self, now: datetime) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if reset_at <= now]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Pruned %d expired rate limit windows", len(expired))

    async def increment(self, key: str, window_seconds: int, now: datetime) -> tuple[int, datetime]:
        async with self._lock:
            if len(self._windows) >= self._prune_threshold:
                self._prune(now)
            count, reset_at = self._windows.get(key, (0, now))
            if reset_at <= now:
                count, reset_at = 0, now + timedelta(seconds=window_seconds)
            count += 1
            self._windows[key] = (count, reset_at)
            return count, reset_at

    async def clear(self, key: str) -> None:
        async with self._lock:
            self._windows.pop(key, None)


class RedisCounterStore:
    """INCR + EXPIRE counters; the key's TTL is the window."""

    def __init__(self, client: redis.Redis, prefix: str = "pulse:ratelimit"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def increment(self, key: str, window_seconds: int, now: datetime) -> tuple[int, datetime]:
        full_key = f"{self._prefix}:{key}"
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incr(full_key)
                pipe.ttl(full_key)
                count, ttl = await pipe.execute()
            if ttl is None or ttl < 0:
                await self._client.expire(full_key, window_seconds)
                ttl = window_seconds
        except RedisError as exc:
            # Fail open
            logger.warning("Rate limit store unavailable for %s: %s", key, exc)
            return 0, now + timedelta(seconds=window_seconds)
        return int(count), now + timedelta(seconds=int(ttl))

    async def clear(self, key: str) -> None:
        try:
            await self._client.delete(f"{self._prefix}:{key}")
        except RedisError as exc:
            logger.warning("Rate limit store unavailable clearing %s: %s", key, exc)


class LoginRateLimiter:
    def __init__(self, store: CounterStore, max_attempts: int, window_seconds: int, scope: str = "login"):
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.scope = scope

    def _key(self, identity: str) -> str:
        return f"{self.scope}:{identity.strip().lower()}"

    async def hit(self, identity: str, now: datetime | None = None) -> RateLimitDecision:
        """Count an attempt for ``identity`` and report whether it is allowed."""
        now = now or utcnow()
        count, reset_at = await self.store.increment(self._key(identity), self.window_seconds, now)
        decision = RateLimitDecision(
            allowed=count <= self.max_attempts,
            remaining=max(self.max_attempts - count, 0),
            reset_at=reset_at,
        )
        if not decision.allowed:
            logger.info("Rate limited %s attempt for %s until %s", self.scope, identity, reset_at.isoformat())
        return decision

    async def enforce(self, identity: str, now: datetime | None = None) -> RateLimitDecision:
        """Like ``hit`` but raises ``RateLimited`` once the window is exhausted."""
        decision = await self.hit(identity, now)
        if not decision.allowed:
            raise RateLimited(decision.reset_at)
        return decision

    async def reset(self, identity: str) -> None:
        await self.store.clear(self._key(identity))


def _build_store() -> CounterStore:
    if settings.rate_limit_backend == "redis":
        return RedisCounterStore.from_url(settings.redis_url)
    return InMemoryCounterStore()


@lru_cache
def get_login_limiter() -> LoginRateLimiter:
    return LoginRateLimiter(_build_store(), settings.login_max_attempts, settings.login_window_seconds, "login")


@lru_cache
def get_register_limiter() -> LoginRateLimiter:
    return LoginRateLimiter(
        _build_store(),
        settings.register_max_attempts,
        settings.register_window_seconds,
        "register",
    )
