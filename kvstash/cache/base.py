"""Abstract base classes for cache backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Dict
import time

from kvstash.utils.logger import log_warning


@dataclass
class CacheEntry:
    """A stored payload with its absolute expiry."""

    key: str
    payload: bytes
    expires_at: Optional[float] = None  # Unix timestamp, None = never
    created_at: float = field(default_factory=time.time)
    access_count: int = 0

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if the cache entry has expired."""
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    def touch(self) -> None:
        """Update access count on cache hit."""
        self.access_count += 1


def expires_at_for(ttl: Optional[float], now: Optional[float] = None) -> Optional[float]:
    """Absolute expiry for a TTL; ``None`` or a non-positive TTL never expires."""
    if ttl is None or ttl <= 0:
        return None
    return (now if now is not None else time.time()) + ttl


class CacheBackend(ABC):
    """Abstract base class for cache backends.

    Every backend stores opaque ``bytes`` payloads under keys namespaced by
    ``namespace``. Ordinary unavailability is reported through return values
    and the ``available`` flag, never by raising, except from ``increment``
    where a silent failure would under-count.
    """

    def __init__(self, name: str, namespace: str = ""):
        self.name = name
        self.namespace = namespace
        self.available = True
        self.hits = 0
        self.misses = 0
        self.errors = 0

    @abstractmethod
    async def initialize(self) -> bool:
        """Prepare the backend; return False if it cannot be used."""
        pass

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        """Get the payload stored under key, or default on a miss."""
        pass

    @abstractmethod
    async def set(self, key: str, payload: bytes, ttl: Optional[float] = None) -> bool:
        """Store payload under key with TTL."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key from cache. Succeeds when the key is already absent."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a live entry exists for key."""
        pass

    @abstractmethod
    async def flush(self) -> bool:
        """Remove every entry in this backend's namespace."""
        pass

    @abstractmethod
    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Atomically add amount to the counter under key and return it.

        An absent or expired counter starts at ``amount`` with ``ttl``; a live
        counter keeps its expiry.
        """
        pass

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Remove expired entries and return count removed."""
        pass

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close cache backend and cleanup resources."""
        pass

    # Utility methods

    def _make_key(self, key: str) -> str:
        """Apply the namespace prefix to a logical key."""
        return f"{self.namespace}{key}"

    def _mark_unavailable(self, error: Exception) -> None:
        """Flag the backend as unreachable so the manager can fall back."""
        if self.available:
            log_warning(
                "Cache backend unavailable",
                backend=self.name,
                error_type=type(error).__name__,
                error=str(error),
            )
        self.available = False
        self._record_error()

    def _record_hit(self) -> None:
        """Record cache hit."""
        self.hits += 1

    def _record_miss(self) -> None:
        """Record cache miss."""
        self.misses += 1

    def _record_error(self) -> None:
        """Record cache error."""
        self.errors += 1

    def get_hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0


class CacheStats:
    """Cache statistics data structure."""

    def __init__(self):
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self.size = 0
        self.memory_usage = 0
        self.oldest_entry = None
        self.newest_entry = None

    @classmethod
    def for_backend(cls, backend: CacheBackend) -> "CacheStats":
        """Seed statistics with a backend's counters."""
        stats = cls()
        stats.hits = backend.hits
        stats.misses = backend.misses
        stats.errors = backend.errors
        return stats

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "hit_rate_percent": self.hit_rate,
            "size": self.size,
            "memory_usage_bytes": self.memory_usage,
            "oldest_entry": (
                self.oldest_entry.isoformat() if self.oldest_entry else None
            ),
            "newest_entry": (
                self.newest_entry.isoformat() if self.newest_entry else None
            ),
        }

    @staticmethod
    def from_timestamp(value: Optional[float]) -> Optional[datetime]:
        """Convert a Unix timestamp to a datetime for reporting."""
        return datetime.fromtimestamp(value) if value is not None else None

    @property
    def hit_rate(self) -> float:
        """Calculate hit rate percentage."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0
