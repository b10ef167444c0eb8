"""Redis Streams — the durable transport for domain events.

Learn: Unlike Redis pub/sub (fire-and-forget, lost if nobody listens),
a stream entry persists after XADD. Consumers read through consumer
groups; an entry stays in the group's pending list until XACK, so a
crashed consumer re-reads it. That is at-least-once delivery, and why
every event carries a deterministic id consumers dedupe on.

Stream naming: tessera:events:{event_type}, plus the fan-in stream
tessera:events that carries every entry. One stream per type keeps
consumers (billing sync, notifications) subscribed to exactly what they
care about; audit-style consumers read the fan-in stream.
"""

from typing import Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tessera.config import settings
from tessera.errors import UnavailableError

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=settings.bus_timeout_seconds,
        socket_connect_timeout=settings.bus_timeout_seconds,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


class EventBus(Protocol):
    """Durable, at-least-once append addressed by event type."""

    async def append(self, event_type: str, fields: dict[str, str]) -> str:
        """Durably enqueue one entry; return the transport's entry id."""
        ...


class RedisStreamBus:
    """EventBus backed by one Redis stream per event type."""

    def __init__(
        self,
        redis: Optional[aioredis.Redis] = None,
        prefix: Optional[str] = None,
        maxlen: Optional[int] = None,
    ):
        self._redis = redis
        self.prefix = prefix or settings.event_stream_prefix
        self.maxlen = maxlen or settings.event_stream_maxlen

    def stream_for(self, event_type: str) -> str:
        return f"{self.prefix}:{event_type}"

    async def append(self, event_type: str, fields: dict[str, str]) -> str:
        try:
            redis = self._redis or get_redis()
        except RuntimeError as e:
            raise UnavailableError(str(e)) from e

        try:
            # MULTI/EXEC: the per-type entry and its fan-in copy land together
            async with redis.pipeline(transaction=True) as pipe:
                pipe.xadd(
                    self.stream_for(event_type),
                    fields,
                    maxlen=self.maxlen,
                    approximate=True,
                )
                pipe.xadd(self.prefix, fields, maxlen=self.maxlen, approximate=True)
                entry_id, _ = await pipe.execute()
        except (RedisError, OSError) as e:
            raise UnavailableError(f"Event bus unavailable: {e}") from e
        return entry_id
