"""
tests/conftest.py -- Shared test fixtures for TenantGate.

This module provides:
  - make_settings(): Settings with a fixed key and bcrypt cost 4
  - store / cache / service: isolated per-test CredentialStore, SQLiteCache
    and AuthService for service-level tests
  - api_client: TestClient on the real app with a patched lifespan
  - helpers that age session and reset-token rows for expiry tests

Design: the credential store lives in a temp-file SQLite database (WAL
mode), not a shared-cache :memory: one. The audit worker writes
activity_logs from its own thread while request threads write sessions;
shared-cache in-memory databases answer a second concurrent writer with
"database table is locked" immediately, while WAL file databases wait on the
busy timeout.

The DEBUG env var must be set before any project import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import timedelta

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from api.limiter import limiter
from api.main import app
from auth.models import utcnow
from auth.service import AuthService
from auth.store import CredentialStore
from cache.store import SQLiteCache
from core.config import Settings

TEST_SECRET = "k" * 64
PASSWORD = "Secret123!"


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": TEST_SECRET, "bcrypt_rounds": 4, "store_timeout_seconds": 5.0}
    values.update(overrides)
    return Settings(**values)


def new_tenant() -> str:
    return str(uuid.uuid4())


def _iso_ago(**delta) -> str:
    return (utcnow() - timedelta(**delta)).isoformat(timespec="microseconds")


def expire_session(store: CredentialStore, session_id: str) -> None:
    """Move a session's expiry into the past."""
    with store.engine.connect() as conn:
        conn.execute(
            text("UPDATE user_sessions SET expires_at = :t WHERE session_id = :s"),
            {"t": _iso_ago(minutes=1), "s": session_id},
        )
        conn.commit()


def idle_session(store: CredentialStore, session_id: str, hours: int = 25) -> None:
    """Push a session's last_activity back beyond the inactivity ceiling."""
    with store.engine.connect() as conn:
        conn.execute(
            text("UPDATE user_sessions SET last_activity = :t WHERE session_id = :s"),
            {"t": _iso_ago(hours=hours), "s": session_id},
        )
        conn.commit()


def expire_reset_token(store: CredentialStore, token_id: str) -> None:
    with store.engine.connect() as conn:
        conn.execute(
            text("UPDATE password_reset_tokens SET expires_at = :t WHERE id = :i"),
            {"t": _iso_ago(minutes=1), "i": token_id},
        )
        conn.commit()


# ---------------------------------------------------------------------------
# Service-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store(tmp_path) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


@pytest.fixture
def cache() -> Generator[SQLiteCache, None, None]:
    c = SQLiteCache(":memory:")
    yield c
    c.close()


@pytest.fixture
def service(settings, store, cache) -> Generator[AuthService, None, None]:
    svc = AuthService.build(settings, store, cache)
    yield svc
    svc.close()


@pytest.fixture
def tenant() -> str:
    return new_tenant()


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-built AuthService into app.state so TestClient routes see
    isolated test stores rather than the production databases.

    The maintenance_task is a long-sleeping coroutine that keeps asyncio
    happy (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.maintenance_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, service) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, dependencies and exception handlers.
    """
    db_path = tmp_path_factory.mktemp("api") / "auth.db"
    store = CredentialStore(db_url=f"sqlite:///{db_path}")
    cache = SQLiteCache(":memory:")
    svc = AuthService.build(make_settings(), store, cache)

    app.router.lifespan_context = _patch_lifespan(svc)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, svc

    svc.close()
    cache.close()
    store.close()


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Login is rate-limited per client IP; every TestClient request shares one IP."""
    limiter.reset()
