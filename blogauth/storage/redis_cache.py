from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis

from blogauth.logging import get_logger

logger = get_logger(__name__)


class RedisRateLimiter:
    """Token-bucket rate limiter shared across processes through Redis."""

    # Refill and consume in one atomic step; returns {allowed, retry_after_seconds}
    _BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local per_second = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local last = tonumber(state[2]) or now

tokens = math.min(capacity, tokens + math.max(0, now - last) * per_second)

local allowed = 0
local retry_after = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
else
  retry_after = math.ceil((1 - tokens) / per_second)
end

redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / per_second), 1))
return {allowed, retry_after}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(self._BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Ping Redis with a short-lived sync client so startup checks stay loop-free."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _bucket_key(key: str) -> str:
        # Keys embed emails and IPs; hash them so nothing user-controlled reaches Redis verbatim.
        return f"blogauth:rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def hit(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
        """Consume one token; returns ``(allowed, retry_after_seconds)``."""
        per_second = float(limit) / float(window_seconds)
        allowed, retry_after = await self._bucket(
            keys=[self._bucket_key(key)],
            args=[time.time(), per_second, limit],
        )
        return bool(int(allowed)), int(retry_after)

    async def close(self) -> None:
        await self.client.aclose()
