from __future__ import annotations

import secrets
import time
from typing import Callable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class SlidingWindowLimiter:
    """Sliding-window request counter backed by a Redis sorted set.

    Each call records one member scored by its millisecond timestamp, drops
    members older than the window, counts what is left and refreshes the
    key's TTL. The four commands run in one MULTI/EXEC transaction so
    concurrent callers cannot undercount.

    Backend failures fail open: a cache outage must not lock users out.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        key_prefix: str = "rl:",
        redis_url: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.key_prefix = key_prefix
        self.redis_url = redis_url
        self._clock = clock

    @classmethod
    def from_url(
        cls, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
    ) -> "SlidingWindowLimiter":
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, redis_url=redis_url)

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup."""
        if not self.redis_url:
            return
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def allow(self, key: str, limit: int, window_seconds: float) -> bool:
        now_ms = int(self._clock() * 1000)
        window_ms = int(window_seconds * 1000)
        window_start = now_ms - window_ms
        redis_key = f"{self.key_prefix}{key}"
        member = f"{now_ms}-{secrets.token_hex(8)}"
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.zadd(redis_key, {member: now_ms})
            # Exclusive upper bound: entries scored exactly at the window start survive
            pipe.zremrangebyscore(redis_key, 0, f"({window_start}")
            pipe.zcard(redis_key)
            pipe.pexpire(redis_key, window_ms + 1000)
            results = await pipe.execute()
        except (RedisError, OSError) as exc:
            logger.warning(
                "rate_limit_backend_error",
                key=redis_key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return True
        count = int(results[2])
        allowed = count <= limit
        if not allowed:
            logger.info("rate_limit_exceeded", key=redis_key, count=count, limit=limit)
        return allowed

    async def close(self) -> None:
        await self.client.aclose()
