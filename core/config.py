"""
core/config.py -- TenantGate settings, read once from the environment.

Only this module touches environment variables. The HTTP layer calls
get_settings(); everything under auth/ takes a Settings instance (or the
individual values) through its constructor, so a test can build a service
with bcrypt cost 4 and a fixed key without touching os.environ.

Field names double as env var names: password_reset_max_requests is read
from PASSWORD_RESET_MAX_REQUESTS, cache_url from CACHE_URL. A .env file in
the working directory is honored; unknown keys in it are ignored.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the session-binding HMAC both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. Every issued token would silently become invalid
       on restart otherwise.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tenantgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'tenantgate_auth.db'}"


class Settings(BaseSettings):
    """Every tunable of the identity core, with production defaults.

    Only secret_key lacks a usable default; validate_secret_key() fills it
    in DEBUG mode and refuses to start without it otherwise.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "tenantgate"
    jwt_audience: str = "tenantgate-api"
    access_token_ttl_seconds: int = Field(default=24 * 3600, gt=0)
    refresh_token_ttl_days: int = Field(default=7, gt=0)

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    min_password_length: int = Field(default=8, ge=1)
    require_uppercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True
    # bcrypt work factor. 12 is the library default; tests drop to 4.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_inactivity_seconds: int = Field(default=24 * 3600, gt=0)
    session_touch_interval_seconds: int = Field(default=300, ge=0)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    password_reset_token_ttl_seconds: int = Field(default=3600, gt=0)
    password_reset_max_requests: int = Field(default=3, ge=1)
    password_reset_window_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Empty means the SQLite-backed cache next to the cache package.
    # redis://host:6379/0 switches revocation and counters to Redis.
    cache_url: str = ""
    store_timeout_seconds: float = Field(default=2.0, gt=0)
    store_workers: int = Field(default=8, ge=1, le=64)

    # ------------------------------------------------------------------
    # Audit and maintenance
    # ------------------------------------------------------------------

    audit_queue_size: int = Field(default=1000, ge=1)
    activity_retention_days: int = Field(default=90, ge=1)
    maintenance_interval_seconds: int = Field(default=6 * 3600, gt=0)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        DEBUG=true with no key: generate one and warn.
            Tokens issued before a restart stop validating.

        DEBUG off with no key: raise, so the process never starts.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 3600


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, built on first call.

    Route modules and the lifespan read configuration through this; auth/
    services receive values from AuthService.build() instead. Tests that need
    different environment variables call get_settings.cache_clear().
    """
    return Settings()
