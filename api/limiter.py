"""
api/limiter.py -- The slowapi limiter behind the login rate limit [H2].

One Limiter for the whole app: api/main.py mounts it through
SlowAPIMiddleware and api/routes/v1/auth.py decorates POST /auth/login with
@limiter.limit(). A second instance would keep its own counters and never
see the hits recorded by the first.

Counters follow CACHE_URL: with Redis configured every instance counts
against the same keys; otherwise they live in process memory. The
password-reset throttle is separate and counted in the credential store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings


def storage_uri_for(cache_url: str) -> str:
    if cache_url.startswith(("redis://", "rediss://")):
        return cache_url
    return "memory://"


limiter = Limiter(key_func=get_remote_address, storage_uri=storage_uri_for(get_settings().cache_url))
