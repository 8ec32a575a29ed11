"""
cache/store.py -- Shared Cache Store: the SharedCache protocol and its SQLite backend.

The identity core keeps two kinds of short-lived state here:
  - the token revocation list ("blacklist:<sha256 of raw token>"), one key per
    revoked token with a TTL equal to the token's remaining lifetime
  - counters that must be correct across several running instances

SQLiteCache is the default backend for single-node deployments, development
and tests. Multi-instance deployments point CACHE_URL at Redis (see
cache/redis_store.py); build_cache() picks the backend from the URL.

Usage:
    cache = SQLiteCache()
    cache.set("blacklist:ab12...", "1", ttl_seconds=900)
    cache.exists("blacklist:ab12...")   # True until the TTL runs out
    cache.purge_expired()               # call periodically to trim old entries

Layer rule: cache/ may import from core/ only.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional, Protocol

from core.errors import InternalError

logger = logging.getLogger("tenantgate.cache")

_DEFAULT_DB = Path(__file__).parent / "tenantgate_cache.db"

_DDL = """
CREATE TABLE IF NOT EXISTS kv_cache (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class SharedCache(Protocol):
    """Key-value store with per-key TTL and atomic increment.

    Only set/get/exists/delete sit on a request path today (the revocation
    list). incr() is part of the backend contract so a fixed-window counter
    can move here without a new backend method. The reset throttle counts
    rows in the credential store and the login limit counts in slowapi.
    """

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def get(self, key: str) -> Optional[str]: ...

    def exists(self, key: str) -> bool: ...

    def incr(self, key: str, ttl_seconds: int) -> int: ...

    def delete(self, key: str) -> None: ...

    def purge_expired(self) -> int: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


class SQLiteCache:
    """SQLite-backed SharedCache.

    One connection is shared by every request thread, so each operation holds
    a lock for the duration of its statement(s). Expired rows read as absent
    and are deleted lazily on access or in bulk by purge_expired().
    """

    def __init__(self, db_path: Path | str = _DEFAULT_DB) -> None:
        # isolation_level=None puts the driver in autocommit mode so incr()
        # can open its own BEGIN IMMEDIATE transaction.
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
        self._lock = threading.Lock()
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store value under key, replacing any existing entry."""
        expires_at = time.time() + max(1, int(ttl_seconds))
        with self._guard("set"):
            self._conn.execute(
                "INSERT OR REPLACE INTO kv_cache (key, value, expires_at) VALUES (?, ?, ?)",
                (key, str(value), expires_at),
            )

    def get(self, key: str) -> Optional[str]:
        """Return the value for key if it exists and hasn't expired."""
        with self._guard("get"):
            row = self._conn.execute("SELECT value, expires_at FROM kv_cache WHERE key = ?", (key,)).fetchone()
            if row is None:
                return None
            value, expires_at = row
            if expires_at <= time.time():
                self._conn.execute("DELETE FROM kv_cache WHERE key = ?", (key,))
                return None
            return value

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def incr(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment the counter at key and return the new value.

        The TTL is set when the counter is created (or re-created after it
        expired) and is not extended by later increments, giving a fixed
        counting window per key.
        """
        now = time.time()
        with self._guard("incr"):
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute("SELECT value, expires_at FROM kv_cache WHERE key = ?", (key,)).fetchone()
                if row is None or row[1] <= now:
                    count = 1
                    expires_at = now + max(1, int(ttl_seconds))
                else:
                    count = int(row[0]) + 1
                    expires_at = row[1]
                self._conn.execute(
                    "INSERT OR REPLACE INTO kv_cache (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, str(count), expires_at),
                )
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        return count

    def delete(self, key: str) -> None:
        with self._guard("delete"):
            self._conn.execute("DELETE FROM kv_cache WHERE key = ?", (key,))

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._guard("purge_expired"):
            cursor = self._conn.execute("DELETE FROM kv_cache WHERE expires_at <= ?", (time.time(),))
            return cursor.rowcount

    def ping(self) -> bool:
        try:
            with self._guard("ping"):
                self._conn.execute("SELECT 1").fetchone()
        except InternalError:
            return False
        return True

    def close(self) -> None:
        self._conn.close()

    def _guard(self, op: str) -> "_LockedOp":
        return _LockedOp(self._lock, op)


class _LockedOp:
    """Holds the connection lock and turns sqlite3 errors into InternalError."""

    def __init__(self, lock: threading.Lock, op: str) -> None:
        self._lock = lock
        self._op = op

    def __enter__(self) -> None:
        self._lock.acquire()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._lock.release()
        if exc_type is not None and issubclass(exc_type, sqlite3.Error):
            logger.error("cache %s failed: %s", self._op, exc)
            raise InternalError("Cache store unavailable.") from exc
        return False


def build_cache(cache_url: str) -> SharedCache:
    """Return the SharedCache backend selected by cache_url.

    "" or "sqlite://"     -> SQLiteCache at the default path
    "sqlite:///<path>"    -> SQLiteCache at <path> (":memory:" allowed)
    "redis://..."         -> RedisCache
    "rediss://..."        -> RedisCache over TLS
    """
    if cache_url.startswith(("redis://", "rediss://")):
        from cache.redis_store import RedisCache

        return RedisCache(cache_url)
    if cache_url.startswith("sqlite:///"):
        return SQLiteCache(cache_url[len("sqlite:///") :])
    if cache_url in ("", "sqlite://"):
        return SQLiteCache()
    raise ValueError(f"Unsupported CACHE_URL scheme: {cache_url!r}")
