"""In-memory cache backend with LRU eviction."""

import asyncio
import time
from typing import Any, Optional, Dict
from collections import OrderedDict

from .base import CacheBackend, CacheEntry, CacheStats, expires_at_for
from .codec import decode_counter, encode_counter
from .errors import AtomicityError


class MemoryCacheBackend(CacheBackend):
    """In-process cache with LRU eviction policy.

    Used as the memory backend when no Redis URL is configured. Entries live
    only as long as the process, so counters are not shared between processes.
    """

    def __init__(self, max_size: int = 1000, namespace: str = "", name: str = "memory"):
        super().__init__(name, namespace)
        self.max_size = max_size
        self.cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    async def initialize(self) -> bool:
        self.available = True
        return True

    def _live_entry(self, full_key: str) -> Optional[CacheEntry]:
        """Return the unexpired entry for full_key, evicting it if expired."""
        entry = self.cache.get(full_key)
        if entry is None:
            return None
        if entry.is_expired():
            del self.cache[full_key]
            return None
        return entry

    def _store(self, entry: CacheEntry) -> None:
        self.cache.pop(entry.key, None)
        self.cache[entry.key] = entry

        # Enforce size limit with LRU eviction
        while len(self.cache) > self.max_size:
            self.cache.popitem(last=False)

    async def get(self, key: str, default: Any = None) -> Any:
        """Get payload from memory cache."""
        async with self._lock:
            full_key = self._make_key(key)
            entry = self._live_entry(full_key)
            if entry is None:
                self._record_miss()
                return default

            # Move to end (most recently used)
            self.cache.move_to_end(full_key)
            entry.touch()
            self._record_hit()
            return entry.payload

    async def set(self, key: str, payload: bytes, ttl: Optional[float] = None) -> bool:
        """Set payload in memory cache."""
        async with self._lock:
            full_key = self._make_key(key)
            self._store(
                CacheEntry(key=full_key, payload=payload, expires_at=expires_at_for(ttl))
            )
            return True

    async def delete(self, key: str) -> bool:
        """Delete key from memory cache."""
        async with self._lock:
            self.cache.pop(self._make_key(key), None)
            return True

    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        async with self._lock:
            return self._live_entry(self._make_key(key)) is not None

    async def flush(self) -> bool:
        """Clear all cache entries in this namespace."""
        async with self._lock:
            for full_key in [k for k in self.cache if k.startswith(self.namespace)]:
                del self.cache[full_key]
            return True

    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Add amount to a counter under the backend lock."""
        async with self._lock:
            full_key = self._make_key(key)
            entry = self._live_entry(full_key)

            if entry is None:
                value = amount
                expires_at = expires_at_for(ttl)
            else:
                try:
                    value = decode_counter(entry.payload) + amount
                except ValueError as e:
                    raise AtomicityError(f"Value under '{key}' is not an integer") from e
                expires_at = entry.expires_at

            self._store(
                CacheEntry(key=full_key, payload=encode_counter(value), expires_at=expires_at)
            )
            return value

    async def cleanup_expired(self) -> int:
        """Remove expired entries."""
        async with self._lock:
            now = time.time()
            expired_keys = [
                key for key, entry in self.cache.items() if entry.is_expired(now)
            ]

            for key in expired_keys:
                del self.cache[key]

            return len(expired_keys)

    def get_stats(self) -> Dict[str, Any]:
        """Get memory cache statistics."""
        stats = CacheStats.for_backend(self)
        stats.size = len(self.cache)

        if self.cache:
            stats.memory_usage = sum(len(entry.payload) for entry in self.cache.values())
            created = [entry.created_at for entry in self.cache.values()]
            stats.oldest_entry = CacheStats.from_timestamp(min(created))
            stats.newest_entry = CacheStats.from_timestamp(max(created))

        return {
            **stats.to_dict(),
            "backend": self.name,
            "namespace": self.namespace,
            "max_size": self.max_size,
            "eviction_policy": "LRU",
        }

    async def close(self) -> None:
        """Close memory cache (cleanup)."""
        async with self._lock:
            self.cache.clear()
