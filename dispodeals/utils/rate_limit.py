"""Per-caller request throttling.

Each caller identity gets a sliding window per throttle profile. Counting is
delegated to a ``RateCounter``: Redis when configured so every API instance
sees the same counts, otherwise an in-process log. A Redis outage degrades to
local counting instead of failing requests.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Mapping, Protocol

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from dispodeals.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ThrottleProfile:
    name: str
    max_requests: int
    window_seconds: float


PROFILES: dict[str, ThrottleProfile] = {
    "strict": ThrottleProfile("strict", 5, 60.0),
    "moderate": ThrottleProfile("moderate", 60, 60.0),
    "lenient": ThrottleProfile("lenient", 100, 60.0),
}


@dataclass(slots=True)
class ThrottleDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


def _retry_after(oldest: float, window: float, now: float) -> int:
    wait = oldest + window - now
    return max(1, min(int(window), math.ceil(wait)))


class RateCounter(Protocol):
    async def hit(self, key: str, profile: ThrottleProfile) -> ThrottleDecision: ...


class MemoryCounter:
    """Sliding log of request timestamps per key, local to this process."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    async def hit(self, key: str, profile: ThrottleProfile) -> ThrottleDecision:
        now = self._clock()
        hits = self._hits[f"{profile.name}:{key}"]
        cutoff = now - profile.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        if len(hits) >= profile.max_requests:
            return ThrottleDecision(
                allowed=False,
                limit=profile.max_requests,
                remaining=0,
                retry_after=_retry_after(hits[0], profile.window_seconds, now),
            )
        hits.append(now)
        return ThrottleDecision(
            allowed=True,
            limit=profile.max_requests,
            remaining=profile.max_requests - len(hits),
        )

    def reset(self) -> None:
        self._hits.clear()


class RedisCounter:
    """Sliding window kept in a Redis sorted set shared by all instances."""

    def __init__(
        self,
        client,
        *,
        fallback: MemoryCounter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._fallback = fallback or MemoryCounter()
        self._clock = clock

    async def hit(self, key: str, profile: ThrottleProfile) -> ThrottleDecision:
        try:
            return await self._hit(key, profile)
        except (RedisError, OSError) as exc:
            logger.warning("Redis throttle unavailable, counting locally: %s", exc)
            return await self._fallback.hit(key, profile)

    async def _hit(self, key: str, profile: ThrottleProfile) -> ThrottleDecision:
        now = self._clock()
        redis_key = f"throttle:{profile.name}:{key}"
        member = f"{now:.6f}:{uuid.uuid4().hex[:8]}"
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, 0, now - profile.window_seconds)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.zrange(redis_key, 0, 0, withscores=True)
            pipe.expire(redis_key, math.ceil(profile.window_seconds))
            _, _, count, oldest, _ = await pipe.execute()
        if count > profile.max_requests:
            await self._client.zrem(redis_key, member)
            oldest_score = oldest[0][1] if oldest else now
            return ThrottleDecision(
                allowed=False,
                limit=profile.max_requests,
                remaining=0,
                retry_after=_retry_after(oldest_score, profile.window_seconds, now),
            )
        return ThrottleDecision(
            allowed=True,
            limit=profile.max_requests,
            remaining=profile.max_requests - count,
        )


class RequestThrottle:
    def __init__(self, counter: RateCounter, *, trusted_secrets: tuple[str, ...] = ()) -> None:
        self.counter = counter
        self._trusted = frozenset(s for s in trusted_secrets if s)

    def is_trusted(self, headers: Mapping[str, str]) -> bool:
        auth = headers.get("authorization") or ""
        if not auth.startswith("Bearer "):
            return False
        return auth[len("Bearer "):] in self._trusted

    @staticmethod
    def identify(headers: Mapping[str, str], client_host: str | None = None) -> str:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
        return client_host or "unknown"

    async def check(
        self,
        profile_name: str,
        headers: Mapping[str, str],
        client_host: str | None = None,
    ) -> ThrottleDecision | None:
        """Count one request; returns None for trusted callers.

        Raises RateLimitExceeded when the caller is over its window.
        """
        if self.is_trusted(headers):
            return None
        profile = PROFILES[profile_name]
        identity = self.identify(headers, client_host)
        decision = await self.counter.hit(identity, profile)
        if not decision.allowed:
            logger.info("Throttled %s on %s profile", identity, profile.name)
            raise RateLimitExceeded(
                f"Too many requests. Please try again in {decision.retry_after} seconds.",
                retry_after=decision.retry_after,
                limit=decision.limit,
            )
        return decision


def build_counter(redis_url: str | None) -> RateCounter:
    if not redis_url:
        return MemoryCounter()
    return RedisCounter(aioredis.from_url(redis_url, decode_responses=True))
