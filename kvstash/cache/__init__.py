"""Multi-backend caching with transparent fallback.

This module provides a single key/value contract over several backends:
- Memory: Redis when a URL is configured, otherwise an in-process LRU store
- Persistent: SQLite table with an expiry column, the fallback of last resort
- File: one file per key, for low-traffic or development use

The cache manager handles backend selection and fallback. GroupedCache and
Throttle are built on top of it.
"""

from .base import CacheBackend, CacheEntry
from .codec import JsonCodec, PayloadCodec
from .errors import (
    AtomicityError,
    BackendUnavailable,
    CacheError,
    LockTimeout,
    SerializationError,
)
from .manager import CacheBackendKind, CacheManager
from .grouped import GroupedCache
from .throttle import Throttle, ThrottleDecision
from .redis_cache import RedisCacheBackend
from .persistent_cache import PersistentCacheBackend
from .file_cache import FileCacheBackend
from .memory_cache import MemoryCacheBackend

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "CacheManager",
    "CacheBackendKind",
    "GroupedCache",
    "Throttle",
    "ThrottleDecision",
    "JsonCodec",
    "PayloadCodec",
    "CacheError",
    "BackendUnavailable",
    "SerializationError",
    "LockTimeout",
    "AtomicityError",
    "RedisCacheBackend",
    "PersistentCacheBackend",
    "FileCacheBackend",
    "MemoryCacheBackend",
]
