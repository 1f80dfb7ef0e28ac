"""File-based persistent cache backend.

One file per key, each holding the payload and its expiry. Intended for
low-traffic or development use: every write takes a per-key file lock and
every read opens a file, which does not scale to high-concurrency traffic.
"""

import hashlib
import os
import pickle
import re
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from filelock import FileLock, Timeout

from kvstash.utils.logger import log_warning, log_debug
from .base import CacheBackend, CacheStats, expires_at_for
from .codec import decode_counter, encode_counter
from .errors import AtomicityError, BackendUnavailable, LockTimeout, SerializationError

CACHE_SUFFIX = ".cache"


def _namespace_dir(namespace: str) -> str:
    """Directory name for a namespace, safe on any filesystem."""
    safe = re.sub(r"[^A-Za-z0-9_-]", "_", namespace)
    return safe or "_default"


class FileCacheBackend(CacheBackend):
    """File-based cache backend with per-key write locks.

    Writes go to a temporary file that is atomically renamed over the cache
    file while holding ``<file>.lock``, so readers never block and never see
    a half-written file. Anything unreadable is treated as a miss.
    """

    def __init__(self, cache_dir: str = ".kvstash/files", namespace: str = "",
                 lock_timeout: float = 2.0, name: str = "file"):
        super().__init__(name, namespace)
        self.root_dir = Path(cache_dir)
        self.cache_dir = self.root_dir / _namespace_dir(namespace)
        self.lock_timeout = lock_timeout

    async def initialize(self) -> bool:
        """Create the namespace directory."""
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self.available = True
            return True
        except OSError as e:
            self._mark_unavailable(e)
            return False

    def _get_file_path(self, key: str) -> Path:
        """Get file path for cache key."""
        key_hash = hashlib.sha256(self._make_key(key).encode("utf-8")).hexdigest()
        return self.cache_dir / f"{key_hash}{CACHE_SUFFIX}"

    @contextmanager
    def _locked(self, path: Path, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the exclusive write lock for path."""
        lock = FileLock(f"{path}.lock", timeout=self.lock_timeout if timeout is None else timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise LockTimeout(f"Timed out waiting for {lock.lock_file}") from e
        try:
            yield
        finally:
            lock.release()

    def _read_envelope(self, path: Path) -> Optional[Dict[str, Any]]:
        """Load a cache file; None if it does not exist."""
        try:
            with open(path, "rb") as f:
                envelope = pickle.load(f)  # nosec B301 - files are written only by this backend
        except FileNotFoundError:
            return None
        except (pickle.UnpicklingError, EOFError, AttributeError, ImportError,
                IndexError, KeyError, TypeError, ValueError) as e:
            raise SerializationError(f"Corrupt cache file {path.name}: {e}") from e

        if not isinstance(envelope, dict) or not isinstance(envelope.get("payload"), bytes):
            raise SerializationError(f"Unexpected cache file layout in {path.name}")
        return envelope

    def _write_envelope(self, path: Path, key: str, payload: bytes,
                        expires_at: Optional[float]) -> None:
        """Write a cache file atomically. Caller holds the lock."""
        envelope = {
            "key": self._make_key(key),
            "payload": payload,
            "expires_at": expires_at,
            "created_at": time.time(),
        }
        fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                pickle.dump(envelope, f, protocol=pickle.HIGHEST_PROTOCOL)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _discard(self, path: Path) -> None:
        """Remove a dead file unless a writer currently holds its lock."""
        try:
            with self._locked(path, timeout=0):
                path.unlink(missing_ok=True)
        except LockTimeout:
            pass  # a writer is replacing it right now

    def _load_live(self, key: str) -> Optional[Dict[str, Any]]:
        """Envelope for key if present and unexpired; dead files are removed."""
        path = self._get_file_path(key)
        try:
            envelope = self._read_envelope(path)
        except SerializationError as e:
            log_warning("Discarding unreadable cache file", backend=self.name, error=str(e))
            self._record_error()
            self._discard(path)
            return None

        if envelope is None or envelope.get("key") != self._make_key(key):
            return None

        expires_at = envelope.get("expires_at")
        if expires_at is not None and expires_at <= time.time():
            self._discard(path)
            return None

        return envelope

    async def get(self, key: str, default: Any = None) -> Any:
        """Get payload from file cache."""
        try:
            envelope = self._load_live(key)
        except OSError as e:
            self._mark_unavailable(e)
            return default

        if envelope is None:
            self._record_miss()
            return default

        self._record_hit()
        return envelope["payload"]

    async def set(self, key: str, payload: bytes, ttl: Optional[float] = None) -> bool:
        """Set payload in file cache; a lock timeout skips the write."""
        path = self._get_file_path(key)
        try:
            with self._locked(path):
                self._write_envelope(path, key, payload, expires_at_for(ttl))
            return True

        except LockTimeout as e:
            log_warning("File cache write skipped, lock busy", key=key[:50], error=str(e))
            self._record_error()
            return False
        except OSError as e:
            self._mark_unavailable(e)
            return False

    async def delete(self, key: str) -> bool:
        """Delete key from file cache."""
        path = self._get_file_path(key)
        try:
            with self._locked(path):
                path.unlink(missing_ok=True)
            return True

        except LockTimeout as e:
            log_warning("File cache delete skipped, lock busy", key=key[:50], error=str(e))
            self._record_error()
            return False
        except OSError as e:
            self._mark_unavailable(e)
            return False

    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        try:
            return self._load_live(key) is not None
        except OSError as e:
            self._mark_unavailable(e)
            return False

    async def flush(self) -> bool:
        """Remove all cache files in our namespace directory."""
        try:
            for file_path in self.cache_dir.glob(f"*{CACHE_SUFFIX}"):
                file_path.unlink(missing_ok=True)
            return True
        except OSError as e:
            self._mark_unavailable(e)
            return False

    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Read-modify-write under the key's file lock."""
        path = self._get_file_path(key)
        try:
            with self._locked(path):
                envelope = self._load_live(key)

                if envelope is None:
                    value = amount
                    expires_at = expires_at_for(ttl)
                else:
                    try:
                        value = decode_counter(envelope["payload"]) + amount
                    except ValueError as e:
                        raise AtomicityError(f"Value under '{key}' is not an integer") from e
                    expires_at = envelope.get("expires_at")

                self._write_envelope(path, key, encode_counter(value), expires_at)
                return value

        except LockTimeout as e:
            self._record_error()
            raise AtomicityError(f"Could not lock counter '{key}': {e}") from e
        except OSError as e:
            self._mark_unavailable(e)
            raise BackendUnavailable(str(e)) from e

    async def cleanup_expired(self) -> int:
        """Remove expired and unreadable files."""
        removed = 0
        now = time.time()
        try:
            for file_path in self.cache_dir.glob(f"*{CACHE_SUFFIX}"):
                try:
                    envelope = self._read_envelope(file_path)
                except SerializationError:
                    envelope = {"expires_at": now}

                if envelope is None:
                    continue

                expires_at = envelope.get("expires_at")
                if expires_at is not None and expires_at <= now:
                    self._discard(file_path)
                    removed += 1

        except OSError as e:
            self._mark_unavailable(e)

        log_debug("Expired cache files removed", backend=self.name, removed=removed)
        return removed

    def get_stats(self) -> Dict[str, Any]:
        """Get file cache statistics."""
        stats = CacheStats.for_backend(self)

        try:
            files = [p.stat() for p in self.cache_dir.glob(f"*{CACHE_SUFFIX}")]
        except OSError:
            files = []

        stats.size = len(files)
        if files:
            stats.memory_usage = sum(st.st_size for st in files)
            stats.oldest_entry = datetime.fromtimestamp(min(st.st_mtime for st in files))
            stats.newest_entry = datetime.fromtimestamp(max(st.st_mtime for st in files))

        return {
            **stats.to_dict(),
            "backend": self.name,
            "namespace": self.namespace,
            "cache_dir": str(self.cache_dir),
            "disk_usage_bytes": stats.memory_usage,
            "lock_timeout_seconds": self.lock_timeout,
        }

    async def close(self) -> None:
        """Nothing to release; files are closed after every operation."""
        return None
