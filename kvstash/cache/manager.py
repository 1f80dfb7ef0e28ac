"""Cache manager with backend selection and degrade-once fallback."""

import asyncio
import inspect
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Union

from kvstash.config import CacheSettings
from kvstash.utils.logger import log_info, log_warning, log_error, log_debug
from .base import CacheBackend
from .codec import JsonCodec, PayloadCodec
from .errors import BackendUnavailable, SerializationError
from .file_cache import FileCacheBackend
from .memory_cache import MemoryCacheBackend
from .persistent_cache import PersistentCacheBackend
from .redis_cache import RedisCacheBackend

# Distinguishes "not cached" from a cached None
_MISSING = object()


class CacheBackendKind(Enum):
    """Cache backend kinds."""

    MEMORY = "memory"
    PERSISTENT = "persistent"
    FILE = "file"

    @classmethod
    def resolve(cls, kind: Union["CacheBackendKind", str]) -> "CacheBackendKind":
        """Resolve a kind or its string tag, raising ValueError for unknown tags."""
        if isinstance(kind, cls):
            return kind
        try:
            return cls(str(kind).strip().lower())
        except ValueError:
            valid = [k.value for k in cls]
            raise ValueError(f"Unknown cache backend '{kind}'. Valid options: {valid}") from None


class CacheManager:
    """Single key/value façade over one active backend.

    The preferred backend is created on first use. If it cannot be brought
    up, or reports itself unavailable after any operation, every later call
    goes to the persistent backend and the manager stays ``degraded`` for the
    rest of its lifetime; only an explicit ``reset()`` re-adopts the
    preferred backend. The persistent backend is the last resort and has no
    fallback of its own.

    ``remember`` does not de-duplicate concurrent misses: two callers racing
    on a cold key may both run the generator and both store, last write wins.
    """

    def __init__(
        self,
        backend_kind: Union[CacheBackendKind, str] = CacheBackendKind.PERSISTENT,
        key_prefix: str = "",
        default_ttl: int = 3600,
        settings: Optional[CacheSettings] = None,
        codec: Optional[PayloadCodec] = None,
    ):
        self._backend_kind = CacheBackendKind.resolve(backend_kind)
        self._key_prefix = key_prefix
        self._default_ttl = default_ttl
        self.settings = settings if settings is not None else CacheSettings()
        self.codec: PayloadCodec = codec or JsonCodec()

        self.primary_backend: Optional[CacheBackend] = None
        self.fallback_backend: Optional[CacheBackend] = None
        self.active_backend: Optional[CacheBackend] = None
        self._degraded = False
        self._initialized = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: CacheSettings, codec: Optional[PayloadCodec] = None) -> "CacheManager":
        """Build a manager from the backend, prefix and TTL in settings."""
        return cls(
            settings.cache_backend,
            settings.cache_prefix,
            settings.cache_ttl_seconds,
            settings=settings,
            codec=codec,
        )

    @property
    def backend_kind(self) -> CacheBackendKind:
        return self._backend_kind

    @property
    def key_prefix(self) -> str:
        return self._key_prefix

    @property
    def default_ttl(self) -> int:
        return self._default_ttl

    @property
    def degraded(self) -> bool:
        """True once the manager has fallen back from its preferred backend."""
        return self._degraded

    # Backend selection

    def _create_backend(self, kind: CacheBackendKind) -> CacheBackend:
        """Create (but do not initialize) a backend of the given kind."""
        settings = self.settings

        if kind is CacheBackendKind.MEMORY:
            if settings.cache_redis_url:
                return RedisCacheBackend(
                    redis_url=settings.cache_redis_url,
                    namespace=self._key_prefix,
                    timeout=settings.cache_redis_timeout_seconds,
                )
            return MemoryCacheBackend(
                max_size=settings.cache_max_memory_size,
                namespace=self._key_prefix,
            )

        if kind is CacheBackendKind.FILE:
            return FileCacheBackend(
                cache_dir=settings.cache_file_dir,
                namespace=self._key_prefix,
                lock_timeout=settings.cache_file_lock_timeout_seconds,
            )

        return PersistentCacheBackend(
            db_path=settings.cache_db_path,
            namespace=self._key_prefix,
            timeout=settings.cache_db_timeout_seconds,
        )

    async def initialize(self) -> bool:
        """Bring up the preferred backend, falling back if it is unavailable."""
        if self._initialized:
            return self.active_backend is not None

        async with self._lock:
            if self._initialized:
                return self.active_backend is not None

            log_info(
                "Initializing cache manager",
                backend_kind=self._backend_kind.value,
                key_prefix=self._key_prefix,
            )

            self.primary_backend = self._create_backend(self._backend_kind)
            if self._backend_kind is not CacheBackendKind.PERSISTENT:
                self.fallback_backend = self._create_backend(CacheBackendKind.PERSISTENT)

            if await self.primary_backend.initialize():
                self.active_backend = self.primary_backend
            else:
                await self._degrade("preferred backend failed to initialize")

            self._initialized = True

            if self.active_backend is None:
                log_error("No cache backend available", backend_kind=self._backend_kind.value)
                return False

            log_info(
                "Cache manager initialized",
                active_backend=self.active_backend.name,
                degraded=self._degraded,
            )
            return True

    async def _degrade(self, reason: str) -> bool:
        """Switch to the persistent fallback. Returns True if calls can be retried."""
        if self.fallback_backend is None or self._degraded:
            log_debug("No fallback for cache backend", backend=self._backend_kind.value, reason=reason)
            return False

        self._degraded = True
        failed = self.primary_backend.name if self.primary_backend else "none"

        if await self.fallback_backend.initialize():
            self.active_backend = self.fallback_backend
            log_warning(
                "Cache running in degraded mode",
                preferred_backend=failed,
                fallback_backend=self.fallback_backend.name,
                reason=reason,
            )
            return True

        log_error("Fallback cache backend unavailable", preferred_backend=failed, reason=reason)
        self.active_backend = None
        return False

    async def _handle_backend_failure(self, backend: CacheBackend, operation: str) -> bool:
        """React to a failed call on backend; True if the call should be retried."""
        if backend is not self.primary_backend or backend is not self.active_backend:
            return False

        async with self._lock:
            if self.active_backend is not backend:
                # Another coroutine already degraded us
                return self.active_backend is not None
            return await self._degrade(f"{operation} failed on {backend.name}")

    async def _run(
        self,
        operation: str,
        call: Callable[[CacheBackend], Awaitable[Any]],
        failed: Any,
        key: str = "",
    ) -> Any:
        """Run call against the active backend, retrying once after a fallback."""
        if not await self.initialize():
            return failed

        backend = self.active_backend
        result = failed
        while backend is not None:
            try:
                result = await call(backend)
                backend_failed = not backend.available
            except Exception as e:
                log_error(
                    f"Cache {operation} failed",
                    backend=backend.name,
                    key=key[:50],
                    error_type=type(e).__name__,
                    error=str(e),
                )
                backend._record_error()
                result = failed
                backend_failed = True

            if not backend_failed:
                return result

            if not await self._handle_backend_failure(backend, operation):
                return result
            backend = self.active_backend

        return result

    def _ttl(self, ttl: Optional[float]) -> float:
        return self._default_ttl if ttl is None else ttl

    # Key/value operations

    async def get(self, key: str, default: Any = None) -> Any:
        """Get a value, or default on a miss or any cache failure."""
        payload = await self._run("get", lambda b: b.get(key, _MISSING), _MISSING, key)
        if payload is _MISSING:
            return default

        try:
            return self.codec.decode(payload)
        except SerializationError as e:
            log_warning("Discarding undecodable cache entry", key=key[:50], error=str(e))
            await self._run("delete", lambda b: b.delete(key), False, key)
            return default

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store a value; ttl=None uses the default TTL and ttl<=0 never expires."""
        try:
            payload = self.codec.encode(value)
        except SerializationError as e:
            log_warning("Cache value not serializable", key=key[:50], error=str(e))
            return False

        ttl = self._ttl(ttl)
        return await self._run("set", lambda b: b.set(key, payload, ttl), False, key)

    async def delete(self, key: str) -> bool:
        """Delete a key. Deleting an absent key succeeds."""
        return await self._run("delete", lambda b: b.delete(key), False, key)

    async def exists(self, key: str) -> bool:
        """Check whether a live entry exists."""
        return await self._run("exists", lambda b: b.exists(key), False, key)

    async def flush(self) -> bool:
        """Remove every entry under this manager's prefix."""
        return await self._run("flush", lambda b: b.flush(), False)

    async def remember(
        self,
        key: str,
        generator: Callable[[], Any],
        ttl: Optional[float] = None,
    ) -> Any:
        """Return the cached value, or compute it once, store it and return it.

        ``generator`` may be a plain callable or a coroutine function. Its
        exceptions propagate and nothing is stored.
        """
        value = await self.get(key, _MISSING)
        if value is not _MISSING:
            return value

        value = generator()
        if inspect.isawaitable(value):
            value = await value

        await self.set(key, value, ttl)
        return value

    # Batch operations

    async def set_multiple(self, values: Mapping[str, Any], ttl: Optional[float] = None) -> bool:
        """Set every key; returns False if any single set failed."""
        failed = []
        for key, value in values.items():
            if not await self.set(key, value, ttl):
                failed.append(key)

        if failed:
            log_warning("Cache set_multiple partially failed", failed_keys=failed[:20], failed_count=len(failed))
        return not failed

    async def get_multiple(self, keys: Iterable[str], default: Any = None) -> Dict[str, Any]:
        """Get every key; misses and failures map to default."""
        result = {}
        for key in keys:
            result[key] = await self.get(key, default)
        return result

    async def delete_multiple(self, keys: Iterable[str]) -> bool:
        """Delete every key; returns False if any single delete failed."""
        failed = []
        for key in keys:
            if not await self.delete(key):
                failed.append(key)

        if failed:
            log_warning("Cache delete_multiple partially failed", failed_keys=failed[:20], failed_count=len(failed))
        return not failed

    # Counters

    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Atomically add amount to a counter and return the new value.

        An absent counter starts at ``amount`` and expires after ``ttl``.
        Raises AtomicityError when the backend cannot guarantee an atomic
        update and BackendUnavailable when no backend can serve the call.
        """
        ttl = self._ttl(ttl)
        await self.initialize()

        backend = self.active_backend
        while True:
            if backend is None:
                raise BackendUnavailable("No cache backend available for increment")
            try:
                return await backend.increment(key, amount, ttl)
            except BackendUnavailable:
                if not await self._handle_backend_failure(backend, "increment"):
                    raise
                backend = self.active_backend

    async def decrement(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Atomically subtract amount from a counter."""
        return await self.increment(key, -amount, ttl)

    # Maintenance

    async def cleanup_expired(self) -> int:
        """Remove expired entries from the active backend."""
        return await self._run("cleanup", lambda b: b.cleanup_expired(), 0)

    async def reset(self) -> bool:
        """Re-adopt the preferred backend after a degradation, if it is reachable."""
        if not self._initialized:
            return await self.initialize()

        async with self._lock:
            if not self._degraded:
                return True

            if await self.primary_backend.initialize():
                self.active_backend = self.primary_backend
                self._degraded = False
                log_info("Preferred cache backend re-adopted", backend=self.primary_backend.name)
                return True

            log_warning("Preferred cache backend still unavailable", backend=self.primary_backend.name)
            return False

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        if not self._initialized or not self.active_backend:
            return {"status": "not_initialized" if not self._initialized else "unavailable",
                    "backend_kind": self._backend_kind.value}

        stats = self.active_backend.get_stats()
        stats.update(
            {
                "manager_status": "degraded" if self._degraded else "active",
                "backend_kind": self._backend_kind.value,
                "primary_backend": (
                    self.primary_backend.name if self.primary_backend else None
                ),
                "active_backend": self.active_backend.name,
                "fallback_backend": (
                    self.fallback_backend.name if self.fallback_backend else None
                ),
                "degraded": self._degraded,
                "key_prefix": self._key_prefix,
                "default_ttl": self._default_ttl,
            }
        )
        return stats

    async def _test_backend(self, backend: CacheBackend) -> bool:
        """Round-trip a probe value through a backend."""
        test_key = f"__health__{time.time_ns()}"
        probe = b'{"test":true}'
        try:
            if not await backend.set(test_key, probe, ttl=60):
                return False
            result = await backend.get(test_key)
            await backend.delete(test_key)
            return result == probe
        except Exception as e:
            log_debug("Cache health probe failed", backend=backend.name, error=str(e))
            return False

    async def health_check(self) -> Dict[str, Any]:
        """Probe every configured backend without changing the active one."""
        await self.initialize()

        health = {
            "timestamp": time.time(),
            "initialized": self._initialized,
            "degraded": self._degraded,
            "active_backend": self.active_backend.name if self.active_backend else None,
            "backends": {},
        }

        for backend in (self.primary_backend, self.fallback_backend):
            if backend is None:
                continue
            if backend is self.fallback_backend and backend is not self.active_backend:
                # Never bring up the fallback just to probe it
                health["backends"][backend.name] = None
                continue
            health["backends"][backend.name] = await self._test_backend(backend)

        health["overall_health"] = bool(
            self.active_backend and health["backends"].get(self.active_backend.name)
        )
        return health

    async def close(self) -> None:
        """Close all cache backends."""
        try:
            for backend in (self.primary_backend, self.fallback_backend):
                if backend is not None:
                    await backend.close()
            log_debug("Cache manager closed", backend_kind=self._backend_kind.value)

        finally:
            self._initialized = False
            self._degraded = False
            self.primary_backend = None
            self.fallback_backend = None
            self.active_backend = None
