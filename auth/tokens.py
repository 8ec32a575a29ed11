"""
auth/tokens.py -- JWT minting, verification, and token hashing.

Security design decisions:
  JWT: python-jose with HS256. Every token carries user_id, tenant_id, email,
       role, session_id, token_type, a session-binding hash, iss, aud, iat,
       nbf, exp and a random jti. The jti makes every minted token unique, so
       two refreshes inside the same second still produce distinct pairs.

  Session binding: the token_hash claim is HMAC-SHA256(SECRET_KEY, session_id).
       A token whose claims were re-signed with a different session_id but the
       original binding (or vice versa) fails verification.

  Token hashes: sessions and the revocation list are keyed by SHA-256 of the
       raw token string. The hash is deterministic, so lookup is O(1); the raw
       token is never stored.

  Verification returns None on any failure -- signature, expiry, nbf, issuer,
       audience, binding, or missing claims. Callers treat None as "invalid"
       without caring which check tripped.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import TokenClaims, TokenType, User, utcnow

logger = logging.getLogger("tenantgate.auth")

ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("user_id", "tenant_id", "role", "session_id", "token_type", "token_hash", "exp", "iat", "nbf")


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest of a raw token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def extract_bearer(auth_header: str | None) -> str | None:
    """Return the token from an "Authorization: Bearer <token>" header value, or None."""
    if not auth_header:
        return None
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class TokenIssuer:
    """Mints and verifies signed access/refresh tokens for one issuer/audience pair."""

    def __init__(
        self,
        secret_key: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
    ) -> None:
        self._secret = secret_key
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings) -> "TokenIssuer":
        return cls(
            secret_key=settings.secret_key,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
        )

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def session_binding(self, session_id: str) -> str:
        return hmac.new(self._secret.encode(), session_id.encode(), hashlib.sha256).hexdigest()

    def issue_pair(self, user: User, session_id: str) -> tuple[str, str]:
        """Return (access_token, refresh_token) for user bound to session_id."""
        now = utcnow()
        access = self._encode(user, session_id, TokenType.ACCESS, now, self.access_ttl)
        refresh = self._encode(user, session_id, TokenType.REFRESH, now, self.refresh_ttl)
        return access, refresh

    def ttl_for(self, token_type: str) -> timedelta:
        return self.refresh_ttl if token_type == TokenType.REFRESH.value else self.access_ttl

    def _encode(self, user: User, session_id: str, token_type: TokenType, now: datetime, ttl: timedelta) -> str:
        payload = {
            "sub": user.id,
            "user_id": user.id,
            "tenant_id": user.tenant_id,
            "email": user.email,
            "role": user.role,
            "session_id": session_id,
            "token_type": token_type.value,
            "token_hash": self.session_binding(session_id),
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "aud": [self.audience],
            "iat": now,
            "nbf": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, token: str) -> TokenClaims | None:
        """Verify signature, time claims, issuer, audience and session binding.

        Returns the decoded claims, or None on any failure.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"require_exp": True, "require_iat": True, "require_nbf": True},
            )
        except JWTError as exc:
            logger.debug("token rejected: %s", exc)
            return None

        if any(name not in payload for name in _REQUIRED_CLAIMS):
            return None
        if not hmac.compare_digest(str(payload["token_hash"]), self.session_binding(str(payload["session_id"]))):
            logger.debug("token rejected: session binding mismatch")
            return None

        audience = payload.get("aud")
        return TokenClaims(
            user_id=str(payload["user_id"]),
            tenant_id=str(payload["tenant_id"]),
            email=str(payload.get("email", "")),
            role=str(payload["role"]),
            session_id=str(payload["session_id"]),
            token_type=str(payload["token_type"]),
            token_hash=str(payload["token_hash"]),
            issuer=str(payload.get("iss", "")),
            audience=list(audience) if isinstance(audience, list) else [str(audience)],
            issued_at=_from_timestamp(payload["iat"]),
            not_before=_from_timestamp(payload["nbf"]),
            expires_at=_from_timestamp(payload["exp"]),
            jti=str(payload.get("jti", "")),
        )


def _from_timestamp(value) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
