"""Redis-based memory cache backend."""

import re
from typing import Any, Optional, Dict

import redis.asyncio as aioredis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
)

from kvstash.utils.logger import log_info, log_debug
from .base import CacheBackend, CacheStats
from .errors import AtomicityError, BackendUnavailable

# Errors that mean the service is gone rather than that one command failed
UNAVAILABLE_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


def _escape_pattern(text: str) -> str:
    """Escape Redis glob metacharacters so a prefix matches literally."""
    return re.sub(r"([*?\[\]\\])", r"\\\1", text)


def _ttl_ms(ttl: Optional[float]) -> Optional[int]:
    if ttl is None or ttl <= 0:
        return None
    return max(1, int(ttl * 1000))


class RedisCacheBackend(CacheBackend):
    """Redis-backed memory cache shared by every process using the same server.

    Expiry uses Redis' native key TTLs and counters use ``INCRBY`` inside a
    MULTI/EXEC transaction. Connection failures and client timeouts never
    raise from the key/value operations; they flip ``available`` so the
    manager can fall back.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379",
                 namespace: str = "", timeout: float = 2.0, name: str = "redis"):
        super().__init__(name, namespace)
        self.redis_url = redis_url
        self.timeout = timeout
        self.redis: Optional[aioredis.Redis] = None

    async def initialize(self) -> bool:
        """Connect and ping the server."""
        try:
            if self.redis is None:
                self.redis = aioredis.from_url(
                    self.redis_url,
                    decode_responses=False,  # payloads are bytes
                    socket_connect_timeout=self.timeout,
                    socket_timeout=self.timeout,
                )
            await self.redis.ping()
            self.available = True
            log_info("Redis cache backend connected", redis_url=self.redis_url)
            return True

        except (RedisError, OSError) as e:
            self._mark_unavailable(e)
            return False

    def _client(self) -> aioredis.Redis:
        if self.redis is None:
            raise RedisConnectionError("Redis client not initialized")
        return self.redis

    async def get(self, key: str, default: Any = None) -> Any:
        """Get payload from Redis."""
        try:
            data = await self._client().get(self._make_key(key))
        except UNAVAILABLE_ERRORS as e:
            self._mark_unavailable(e)
            return default
        except RedisError:
            self._record_error()
            return default

        if data is None:
            self._record_miss()
            return default

        self._record_hit()
        return data

    async def set(self, key: str, payload: bytes, ttl: Optional[float] = None) -> bool:
        """Set payload in Redis with a native expiry."""
        try:
            await self._client().set(self._make_key(key), payload, px=_ttl_ms(ttl))
            return True
        except UNAVAILABLE_ERRORS as e:
            self._mark_unavailable(e)
            return False
        except RedisError:
            self._record_error()
            return False

    async def delete(self, key: str) -> bool:
        """Delete key from Redis."""
        try:
            await self._client().delete(self._make_key(key))
            return True
        except UNAVAILABLE_ERRORS as e:
            self._mark_unavailable(e)
            return False
        except RedisError:
            self._record_error()
            return False

    async def exists(self, key: str) -> bool:
        """Check if key exists in Redis."""
        try:
            return await self._client().exists(self._make_key(key)) > 0
        except UNAVAILABLE_ERRORS as e:
            self._mark_unavailable(e)
            return False
        except RedisError:
            self._record_error()
            return False

    async def flush(self) -> bool:
        """Delete every key carrying our namespace."""
        try:
            client = self._client()
            pattern = f"{_escape_pattern(self.namespace)}*"
            batch = []
            deleted = 0

            async for redis_key in client.scan_iter(match=pattern, count=100):
                batch.append(redis_key)
                if len(batch) >= 100:
                    deleted += await client.delete(*batch)
                    batch = []

            if batch:
                deleted += await client.delete(*batch)

            log_debug("Redis namespace flushed", namespace=self.namespace, deleted=deleted)
            return True

        except UNAVAILABLE_ERRORS as e:
            self._mark_unavailable(e)
            return False
        except RedisError:
            self._record_error()
            return False

    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Atomic increment; a new counter is created with the TTL in the same transaction."""
        redis_key = self._make_key(key)
        try:
            async with self._client().pipeline(transaction=True) as pipe:
                pipe.set(redis_key, 0, px=_ttl_ms(ttl), nx=True)
                pipe.incrby(redis_key, amount)
                _, value = await pipe.execute()
            return int(value)

        except UNAVAILABLE_ERRORS as e:
            self._mark_unavailable(e)
            raise BackendUnavailable(f"Redis unavailable: {e}") from e
        except ResponseError as e:
            self._record_error()
            raise AtomicityError(f"Value under '{key}' is not an integer: {e}") from e

    async def cleanup_expired(self) -> int:
        """Redis expires keys on its own."""
        return 0

    def get_stats(self) -> Dict[str, Any]:
        """Get Redis cache statistics."""
        stats = CacheStats.for_backend(self)

        return {
            **stats.to_dict(),
            "backend": self.name,
            "namespace": self.namespace,
            "redis_url": self.redis_url,
            "connected": self.available and self.redis is not None,
            "note": "Size and memory stats require scanning all keys"
        }

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis:
            try:
                await self.redis.aclose()
            except (RedisError, OSError):
                self._record_error()
            finally:
                self.redis = None
