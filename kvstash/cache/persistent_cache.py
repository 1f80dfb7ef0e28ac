"""SQLite-backed persistent cache backend."""

import asyncio
import os
import sqlite3
import time
from typing import Any, Optional, Dict

import aiosqlite

from kvstash.utils.logger import log_info, log_debug
from .base import CacheBackend, CacheStats, expires_at_for
from .codec import decode_counter, encode_counter
from .errors import AtomicityError, BackendUnavailable

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS cache_entries (
        namespaced_key TEXT PRIMARY KEY,
        payload BLOB NOT NULL,
        expires_at REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cache_entries_expires_at ON cache_entries (expires_at)",
]

UPSERT_SQL = """
    INSERT INTO cache_entries (namespaced_key, payload, expires_at)
    VALUES (?, ?, ?)
    ON CONFLICT (namespaced_key)
    DO UPDATE SET payload = excluded.payload, expires_at = excluded.expires_at
"""


def _like_prefix(prefix: str) -> str:
    """LIKE pattern matching keys that start with prefix literally."""
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{escaped}%"


class PersistentCacheBackend(CacheBackend):
    """Durable cache in a SQLite table with an explicit expiry column.

    This is the fallback of last resort. Expired rows are removed lazily on
    read; ``cleanup_expired`` reclaims space in bulk. One connection is used
    per instance and statements are serialized by an asyncio lock so that an
    open transaction is never shared between coroutines; SQLite's own locking
    coordinates separate processes.
    """

    def __init__(self, db_path: str = ".kvstash/cache.db", namespace: str = "",
                 timeout: float = 5.0, name: str = "persistent"):
        super().__init__(name, namespace)
        self.db_path = db_path
        self.timeout = timeout
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> bool:
        """Open the database and create the schema."""
        if self._conn is not None:
            return True

        try:
            if self.db_path != ":memory:":
                os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)

            # Autocommit mode; increment issues its own BEGIN IMMEDIATE
            conn = await aiosqlite.connect(
                self.db_path, timeout=self.timeout, isolation_level=None
            )
            if self.db_path != ":memory:":
                await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA synchronous=NORMAL")
            await conn.execute(f"PRAGMA busy_timeout={int(self.timeout * 1000)}")
            for statement in SCHEMA:
                await conn.execute(statement)

            self._conn = conn
            self.available = True
            log_info("Persistent cache backend ready", db_path=self.db_path)
            return True

        except (sqlite3.Error, OSError) as e:
            self._mark_unavailable(e)
            return False

    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise sqlite3.OperationalError("Persistent cache not initialized")
        return self._conn

    async def _fetch_one(self, sql: str, parameters: tuple) -> Optional[tuple]:
        async with self._db().execute(sql, parameters) as cursor:
            return await cursor.fetchone()

    async def get(self, key: str, default: Any = None) -> Any:
        """Get payload, deleting the row if it has expired."""
        full_key = self._make_key(key)
        async with self._lock:
            try:
                row = await self._fetch_one(
                    "SELECT payload, expires_at FROM cache_entries WHERE namespaced_key = ?",
                    (full_key,),
                )
                if row is None:
                    self._record_miss()
                    return default

                payload, expires_at = row
                if expires_at is not None and expires_at <= time.time():
                    # Only drop the row we looked at, not a fresh replacement
                    await self._db().execute(
                        "DELETE FROM cache_entries WHERE namespaced_key = ? AND expires_at = ?",
                        (full_key, expires_at),
                    )
                    self._record_miss()
                    return default

                self._record_hit()
                return bytes(payload)

            except (sqlite3.Error, ValueError) as e:
                self._mark_unavailable(e)
                return default

    async def set(self, key: str, payload: bytes, ttl: Optional[float] = None) -> bool:
        """Insert or replace the row for key."""
        async with self._lock:
            try:
                await self._db().execute(
                    UPSERT_SQL, (self._make_key(key), payload, expires_at_for(ttl))
                )
                return True
            except (sqlite3.Error, ValueError) as e:
                self._mark_unavailable(e)
                return False

    async def delete(self, key: str) -> bool:
        """Delete the row for key."""
        async with self._lock:
            try:
                await self._db().execute(
                    "DELETE FROM cache_entries WHERE namespaced_key = ?",
                    (self._make_key(key),),
                )
                return True
            except (sqlite3.Error, ValueError) as e:
                self._mark_unavailable(e)
                return False

    async def exists(self, key: str) -> bool:
        """Check for a live row."""
        async with self._lock:
            try:
                row = await self._fetch_one(
                    "SELECT 1 FROM cache_entries WHERE namespaced_key = ? "
                    "AND (expires_at IS NULL OR expires_at > ?)",
                    (self._make_key(key), time.time()),
                )
                return row is not None
            except (sqlite3.Error, ValueError) as e:
                self._mark_unavailable(e)
                return False

    async def flush(self) -> bool:
        """Delete every row in our namespace."""
        async with self._lock:
            try:
                if self.namespace:
                    await self._db().execute(
                        "DELETE FROM cache_entries WHERE namespaced_key LIKE ? ESCAPE '\\'",
                        (_like_prefix(self.namespace),),
                    )
                else:
                    await self._db().execute("DELETE FROM cache_entries")
                return True
            except (sqlite3.Error, ValueError) as e:
                self._mark_unavailable(e)
                return False

    async def increment(self, key: str, amount: int = 1, ttl: Optional[float] = None) -> int:
        """Read-modify-write inside BEGIN IMMEDIATE.

        BEGIN IMMEDIATE takes the database write lock up front, so no other
        connection can change the row between our read and our write.
        """
        full_key = self._make_key(key)
        async with self._lock:
            try:
                conn = self._db()
            except sqlite3.Error as e:
                self._mark_unavailable(e)
                raise BackendUnavailable(str(e)) from e

            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                self._record_error()
                raise AtomicityError(f"Could not lock cache database: {e}") from e
            except (sqlite3.Error, ValueError) as e:
                self._mark_unavailable(e)
                raise BackendUnavailable(str(e)) from e

            try:
                now = time.time()
                row = await self._fetch_one(
                    "SELECT payload, expires_at FROM cache_entries WHERE namespaced_key = ?",
                    (full_key,),
                )

                if row is None or (row[1] is not None and row[1] <= now):
                    value = amount
                    expires_at = expires_at_for(ttl, now)
                else:
                    try:
                        value = decode_counter(bytes(row[0])) + amount
                    except ValueError as e:
                        raise AtomicityError(f"Value under '{key}' is not an integer") from e
                    expires_at = row[1]

                await conn.execute(UPSERT_SQL, (full_key, encode_counter(value), expires_at))
                await conn.commit()
                return value

            except BaseException as e:
                await conn.rollback()
                if isinstance(e, sqlite3.Error):
                    self._record_error()
                    raise AtomicityError(f"Increment of '{key}' failed: {e}") from e
                raise

    async def cleanup_expired(self) -> int:
        """Remove expired rows in our namespace."""
        async with self._lock:
            try:
                cursor = await self._db().execute(
                    "DELETE FROM cache_entries WHERE namespaced_key LIKE ? ESCAPE '\\' "
                    "AND expires_at IS NOT NULL AND expires_at <= ?",
                    (_like_prefix(self.namespace), time.time()),
                )
                removed = cursor.rowcount
                await cursor.close()
                log_debug("Expired cache rows removed", backend=self.name, removed=removed)
                return removed
            except (sqlite3.Error, ValueError) as e:
                self._mark_unavailable(e)
                return 0

    async def count_entries(self) -> Dict[str, Any]:
        """Count rows and payload bytes in our namespace."""
        async with self._lock:
            row = await self._fetch_one(
                "SELECT COUNT(*), COALESCE(SUM(LENGTH(payload)), 0), "
                "SUM(CASE WHEN expires_at IS NOT NULL AND expires_at <= ? THEN 1 ELSE 0 END) "
                "FROM cache_entries WHERE namespaced_key LIKE ? ESCAPE '\\'",
                (time.time(), _like_prefix(self.namespace)),
            )
        count, size, expired = row if row else (0, 0, 0)
        return {"count": count, "size_bytes": size, "expired": expired or 0}

    def get_stats(self) -> Dict[str, Any]:
        """Get persistent cache statistics."""
        stats = CacheStats.for_backend(self)

        return {
            **stats.to_dict(),
            "backend": self.name,
            "namespace": self.namespace,
            "db_path": self.db_path,
            "connected": self._conn is not None,
        }

    async def close(self) -> None:
        """Close the database connection."""
        async with self._lock:
            if self._conn is not None:
                try:
                    await self._conn.close()
                finally:
                    self._conn = None
