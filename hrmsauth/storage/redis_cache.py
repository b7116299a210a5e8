from __future__ import annotations

import hashlib
import math
import uuid
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding the shared rate-limit windows."""

    # Sliding-window log: one sorted-set member per admitted attempt, scored
    # by timestamp in milliseconds. Prune, count and admit run atomically.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_ms = window_ms
  if oldest[2] then
    retry_ms = tonumber(oldest[2]) + window_ms - now_ms
  end
  return {0, 0, retry_ms}
end

redis.call('ZADD', key, now_ms, member)
redis.call('PEXPIRE', key, window_ms)
return {1, limit - count - 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so client-supplied values cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def hit_sliding_window(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> Tuple[bool, int, int]:
        """Record one attempt for ``key`` if the window has room.

        Returns ``(allowed, remaining, retry_after_seconds)``.
        """
        now_ms = int(now * 1000)
        allowed, remaining, retry_ms = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now_ms, int(window_seconds * 1000), limit, f"{now_ms}-{uuid.uuid4().hex}"],
        )
        retry_after = math.ceil(int(retry_ms) / 1000) if int(retry_ms) > 0 else 0
        return bool(int(allowed)), max(0, int(remaining)), retry_after

    async def close(self) -> None:
        await self.client.aclose()
