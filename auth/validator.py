"""
auth/validator.py -- Access-token validation and the revocation list.

validate() is the hot path: it runs on every protected request. Three checks
must all pass, cheapest rejection first:

  1. revocation list -- SHA-256 of the raw token must be absent from the
     Shared Cache ("blacklist:<hash>")
  2. signature and claims -- HS256 signature, exp/nbf, issuer, audience,
     session binding, token_type == "access"
  3. session record -- the session found by the access-token hash must be
     active, unexpired, recently active, and carry the claimed session_id

Fail closed: a cache or store error, or a DeadlineExceeded while waiting on
either, makes the token invalid. Nothing here returns an identity "by
default".

A successful validation touches the session's last_activity at most once per
session_touch_interval_seconds, which keeps the inactivity ceiling sliding
without a write on every request.

Layer rule: no imports from api/ or cache/. The cache backend is injected.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.models import Identity, TokenType, utcnow
from auth.tokens import TokenIssuer, hash_token
from core.deadline import BoundedExecutor, Deadline
from core.errors import AuthError, InternalError

logger = logging.getLogger("tenantgate.auth")

BLACKLIST_PREFIX = "blacklist:"


def blacklist_key(token_hash: str) -> str:
    return BLACKLIST_PREFIX + token_hash


class TokenValidator:
    """Verifies access tokens against the revocation list and the session store."""

    def __init__(
        self,
        store,
        cache,
        issuer: TokenIssuer,
        executor: BoundedExecutor,
        *,
        inactivity: timedelta = timedelta(hours=24),
        touch_interval: timedelta = timedelta(minutes=5),
    ) -> None:
        self._store = store
        self._cache = cache
        self._issuer = issuer
        self._executor = executor
        self._inactivity = inactivity
        self._touch_interval = touch_interval

    def is_revoked(self, token_hash: str, deadline: Deadline | None = None) -> bool:
        return bool(self._executor.call(self._cache.exists, blacklist_key(token_hash), deadline=deadline))

    def validate(self, token: str | None, deadline: Deadline | None = None) -> Identity | None:
        """Return the caller's Identity, or None if the token is not currently valid."""
        if not token:
            return None
        token_hash = hash_token(token)
        try:
            if self.is_revoked(token_hash, deadline):
                logger.debug("token rejected: revoked")
                return None
            claims = self._issuer.verify(token)
            if claims is None or claims.token_type != TokenType.ACCESS.value:
                return None
            session = self._executor.call(self._store.get_session_by_token_hash, token_hash, deadline=deadline)
        except InternalError as exc:
            logger.warning("token validation failed closed: %s", exc)
            return None

        now = utcnow()
        if session is None:
            logger.debug("token rejected: no session for token hash")
            return None
        if session.session_id != claims.session_id or session.user_id != claims.user_id:
            logger.warning("token rejected: session %s does not match claims", session.session_id)
            return None
        if not session.is_valid(self._inactivity, now):
            logger.debug("token rejected: session %s inactive, expired or idle", session.session_id)
            return None

        if now - session.last_activity >= self._touch_interval:
            self._touch(session.session_id, deadline)

        return Identity(
            user_id=claims.user_id,
            tenant_id=claims.tenant_id,
            role=claims.role,
            session_id=claims.session_id,
            expires_at=claims.expires_at,
            email=claims.email,
        )

    def authenticate(self, token: str | None, deadline: Deadline | None = None) -> Identity:
        """validate() for callers that need an exception instead of None."""
        identity = self.validate(token, deadline)
        if identity is None:
            raise AuthError("Invalid or expired token")
        return identity

    def _touch(self, session_id: str, deadline: Deadline | None) -> None:
        # The token already passed every check; a missed touch only delays the
        # sliding inactivity window.
        try:
            self._executor.call(self._store.touch_session, session_id, deadline=deadline)
        except InternalError as exc:
            logger.warning("could not touch session %s: %s", session_id, exc)
