"""
cache/redis_store.py -- Redis backend for the Shared Cache Store.

Used when CACHE_URL is a redis:// or rediss:// URL. Every TenantGate instance
pointed at the same Redis shares one revocation list and one set of counters,
which is what makes logout and counting windows correct across instances.

Atomicity comes from Redis itself: SET ... EX is a single command, and the
increment-with-window runs as a Lua script so the INCR and the first EXPIRE
cannot be separated by a crash or a concurrent caller.

Layer rule: cache/ may import from core/ only.
"""

from __future__ import annotations

import logging
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

from core.errors import InternalError

logger = logging.getLogger("tenantgate.cache")

# INCR, and set the TTL only when this call created the key.
_INCR_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""


class RedisCache:
    """SharedCache backed by a Redis server."""

    DEFAULT_OPERATION_TIMEOUT = 2.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT, client: Redis | None = None):
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_window = self.client.register_script(_INCR_WINDOW_SCRIPT)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self.client.set(key, str(value), ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            raise self._fail("set", exc) from exc

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except RedisError as exc:
            raise self._fail("get", exc) from exc

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except RedisError as exc:
            raise self._fail("exists", exc) from exc

    def incr(self, key: str, ttl_seconds: int) -> int:
        try:
            return int(self._incr_window(keys=[key], args=[max(1, int(ttl_seconds))]))
        except RedisError as exc:
            raise self._fail("incr", exc) from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except RedisError as exc:
            raise self._fail("delete", exc) from exc

    def purge_expired(self) -> int:
        # Redis evicts expired keys on its own.
        return 0

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError:
            return False

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _fail(op: str, exc: Exception) -> InternalError:
        logger.error("redis %s failed: %s", op, exc)
        return InternalError("Cache store unavailable.")
