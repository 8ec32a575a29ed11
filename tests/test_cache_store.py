"""
tests/test_cache_store.py -- Tests for the Shared Cache Store backends.

Covers:
  - SQLiteCache: set/get/exists/delete, TTL expiry, incr window, purge,
    thread-safe incr, sqlite errors surfaced as InternalError
  - RedisCache: command mapping and error translation against a mocked client
  - build_cache(): backend selection by URL
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cache.redis_store import RedisCache
from cache.store import SQLiteCache, build_cache
from core.errors import InternalError


class TestSQLiteCache:
    def test_set_get_exists_delete(self, cache) -> None:
        cache.set("blacklist:abc", "1", 60)
        assert cache.get("blacklist:abc") == "1"
        assert cache.exists("blacklist:abc")
        cache.delete("blacklist:abc")
        assert cache.get("blacklist:abc") is None
        assert not cache.exists("blacklist:abc")

    def test_expired_entry_reads_as_absent(self, cache) -> None:
        with patch("cache.store.time.time", return_value=1_000.0):
            cache.set("k", "v", 10)
        with patch("cache.store.time.time", return_value=1_011.0):
            assert cache.get("k") is None

    def test_incr_counts_within_window(self, cache) -> None:
        assert cache.incr("counter", 60) == 1
        assert cache.incr("counter", 60) == 2
        assert cache.incr("counter", 60) == 3

    def test_incr_restarts_after_window(self, cache) -> None:
        with patch("cache.store.time.time", return_value=1_000.0):
            cache.incr("counter", 10)
            cache.incr("counter", 10)
        with patch("cache.store.time.time", return_value=1_011.0):
            assert cache.incr("counter", 10) == 1

    def test_incr_is_atomic_across_threads(self, cache) -> None:
        def bump() -> None:
            for _ in range(50):
                cache.incr("shared", 60)

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert cache.get("shared") == "200"

    def test_purge_expired(self, cache) -> None:
        with patch("cache.store.time.time", return_value=time.time() - 3600):
            cache.set("old", "1", 10)
        cache.set("fresh", "1", 60)
        assert cache.purge_expired() == 1
        assert cache.exists("fresh")

    def test_sqlite_error_becomes_internal_error(self) -> None:
        broken = SQLiteCache(":memory:")
        broken.close()
        with pytest.raises(InternalError):
            broken.get("k")
        assert broken.ping() is False

    def test_file_backed_cache(self, tmp_path) -> None:
        c = SQLiteCache(tmp_path / "cache.db")
        c.set("k", "v", 60)
        assert c.ping()
        c.close()
        reopened = SQLiteCache(tmp_path / "cache.db")
        assert reopened.get("k") == "v"
        reopened.close()


class TestRedisCache:
    @pytest.fixture
    def client(self) -> MagicMock:
        return MagicMock()

    def test_set_uses_expiry(self, client) -> None:
        RedisCache("redis://localhost", client=client).set("k", "v", 30)
        client.set.assert_called_once_with("k", "v", ex=30)

    def test_ttl_floor_is_one_second(self, client) -> None:
        RedisCache("redis://localhost", client=client).set("k", "v", 0)
        client.set.assert_called_once_with("k", "v", ex=1)

    def test_exists_and_get(self, client) -> None:
        client.exists.return_value = 1
        client.get.return_value = "v"
        cache = RedisCache("redis://localhost", client=client)
        assert cache.exists("k") is True
        assert cache.get("k") == "v"

    def test_incr_runs_window_script(self, client) -> None:
        script = MagicMock(return_value=3)
        client.register_script.return_value = script
        assert RedisCache("redis://localhost", client=client).incr("k", 60) == 3
        script.assert_called_once_with(keys=["k"], args=[60])

    def test_errors_become_internal_error(self, client) -> None:
        client.exists.side_effect = RedisConnectionError("refused")
        with pytest.raises(InternalError):
            RedisCache("redis://localhost", client=client).exists("k")

    def test_ping_false_on_error(self, client) -> None:
        client.ping.side_effect = RedisConnectionError("refused")
        assert RedisCache("redis://localhost", client=client).ping() is False

    def test_purge_is_a_no_op(self, client) -> None:
        assert RedisCache("redis://localhost", client=client).purge_expired() == 0


class TestBuildCache:
    def test_default_is_sqlite(self, tmp_path) -> None:
        c = build_cache(f"sqlite:///{tmp_path / 'c.db'}")
        assert isinstance(c, SQLiteCache)
        c.close()

    def test_redis_url(self) -> None:
        with patch("cache.redis_store.Redis.from_url") as from_url:
            c = build_cache("redis://cache.internal:6379/0")
        assert isinstance(c, RedisCache)
        assert from_url.call_args.args[0] == "redis://cache.internal:6379/0"

    def test_unknown_scheme(self) -> None:
        with pytest.raises(ValueError):
            build_cache("memcached://x")
