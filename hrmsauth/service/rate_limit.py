from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Protocol

from hrmsauth.logging import get_logger
from hrmsauth.service.results import ErrorKind, Result
from hrmsauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

TimeFn = Callable[[], float]

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int


class RateCounter(Protocol):
    """Keyed sliding-window attempt counter; ``hit`` must be atomic per key."""

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateDecision: ...


class InMemoryRateCounter:
    """Process-local sliding-window log.

    Not shared across service instances; multi-instance deployments use
    ``RedisRateCounter`` for a single global limit. Keys whose newest hit has
    left its window are dropped every ``sweep_interval`` hits.
    """

    def __init__(self, now: Optional[TimeFn] = None, *, sweep_interval: int = 1024) -> None:
        self._now = now or time.monotonic
        self._hits: Dict[str, Deque[float]] = {}
        self._windows: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._sweep_interval = max(1, sweep_interval)
        self._calls = 0

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        now = self._now()
        cutoff = now - window_seconds
        with self._lock:
            self._calls += 1
            if self._calls % self._sweep_interval == 0:
                self._sweep(now)
            hits = self._hits.setdefault(key, deque())
            self._windows[key] = window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                retry_after = math.ceil(hits[0] + window_seconds - now)
                return RateDecision(False, limit, 0, max(1, retry_after))
            hits.append(now)
            return RateDecision(True, limit, limit - len(hits), 0)

    def _sweep(self, now: float) -> None:
        stale = [
            key
            for key, hits in self._hits.items()
            if not hits or hits[-1] <= now - self._windows.get(key, DEFAULT_WINDOW_SECONDS)
        ]
        for key in stale:
            self._hits.pop(key, None)
            self._windows.pop(key, None)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
                self._windows.clear()
            else:
                self._hits.pop(key, None)
                self._windows.pop(key, None)


class RedisRateCounter:
    """Sliding-window counter shared by every instance through Redis."""

    def __init__(self, cache: RedisCache, now: Optional[TimeFn] = None) -> None:
        self.cache = cache
        # Wall clock: Redis scores must agree across hosts
        self._now = now or time.time

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        allowed, remaining, retry_after = await self.cache.hit_sliding_window(
            key, limit, window_seconds, self._now()
        )
        return RateDecision(allowed, limit, remaining, max(1, retry_after) if not allowed else 0)


class RateLimiter:
    """Applies named policies to caller identifiers."""

    def __init__(self, counter: RateCounter) -> None:
        self.counter = counter

    async def check(self, policy: RateLimitPolicy, subject: str) -> Result[RateDecision]:
        limit = policy.limit
        window_seconds = policy.window_seconds
        if limit <= 0:
            return Result.success(RateDecision(True, limit, limit, 0))
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                policy=policy.name,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        decision = await self.counter.hit(f"{policy.name}:{subject}", limit, window_seconds)
        if decision.allowed:
            return Result.success(decision)
        logger.warning(
            "rate_limit_exceeded",
            policy=policy.name,
            limit=limit,
            retry_after=decision.retry_after,
        )
        return Result(
            value=decision,
            error=ErrorKind.RATE_LIMITED,
            message="too many attempts, try again later",
            detail={"retry_after": decision.retry_after},
        )
