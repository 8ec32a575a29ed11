"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - issued pair carries the documented claims and verifies
  - every minted token is unique (jti)
  - rejection on wrong key, issuer, audience, expiry, and tampered binding
  - bearer header parsing
"""

from __future__ import annotations

from datetime import timedelta

from jose import jwt

from auth.models import User
from auth.tokens import ALGORITHM, TokenIssuer, extract_bearer, hash_token

SECRET = "s" * 64


def _issuer(**overrides) -> TokenIssuer:
    values = {
        "secret_key": SECRET,
        "issuer": "tenantgate",
        "audience": "tenantgate-api",
        "access_ttl": timedelta(hours=1),
        "refresh_ttl": timedelta(days=7),
    }
    values.update(overrides)
    return TokenIssuer(**values)


def _user() -> User:
    return User(
        id="u-1",
        tenant_id="t-1",
        email="user@acme.test",
        password_hash="x",
        display_name="User",
        role="staff",
    )


def test_issue_pair_claims() -> None:
    access, refresh = _issuer().issue_pair(_user(), "sess-1")
    claims = jwt.get_unverified_claims(access)
    assert claims["sub"] == "u-1"
    assert claims["tenant_id"] == "t-1"
    assert claims["role"] == "staff"
    assert claims["session_id"] == "sess-1"
    assert claims["token_type"] == "access"
    assert claims["iss"] == "tenantgate"
    assert claims["aud"] == ["tenantgate-api"]
    assert jwt.get_unverified_claims(refresh)["token_type"] == "refresh"
    assert access.count(".") == 2


def test_verify_round_trip() -> None:
    issuer = _issuer()
    access, _ = issuer.issue_pair(_user(), "sess-1")
    claims = issuer.verify(access)
    assert claims is not None
    assert claims.user_id == "u-1"
    assert claims.session_id == "sess-1"
    assert "tenantgate-api" in claims.audience
    assert claims.remaining() > timedelta(minutes=59)


def test_every_token_is_unique() -> None:
    issuer = _issuer()
    first = issuer.issue_pair(_user(), "sess-1")
    second = issuer.issue_pair(_user(), "sess-1")
    assert len({*first, *second}) == 4


def test_wrong_secret_rejected() -> None:
    access, _ = _issuer().issue_pair(_user(), "sess-1")
    assert _issuer(secret_key="t" * 64).verify(access) is None


def test_wrong_issuer_rejected() -> None:
    access, _ = _issuer(issuer="someone-else").issue_pair(_user(), "sess-1")
    assert _issuer().verify(access) is None


def test_wrong_audience_rejected() -> None:
    access, _ = _issuer(audience="other-api").issue_pair(_user(), "sess-1")
    assert _issuer().verify(access) is None


def test_expired_token_rejected() -> None:
    issuer = _issuer(access_ttl=timedelta(seconds=-10))
    access, _ = issuer.issue_pair(_user(), "sess-1")
    assert issuer.verify(access) is None


def test_session_binding_must_match() -> None:
    issuer = _issuer()
    access, _ = issuer.issue_pair(_user(), "sess-1")
    claims = jwt.get_unverified_claims(access)
    claims["session_id"] = "sess-2"  # binding still covers sess-1
    forged = jwt.encode(claims, SECRET, algorithm=ALGORITHM)
    assert issuer.verify(forged) is None


def test_garbage_rejected() -> None:
    assert _issuer().verify("not.a.jwt") is None


def test_hash_token_is_deterministic_sha256() -> None:
    assert hash_token("abc") == hash_token("abc")
    assert len(hash_token("abc")) == 64
    assert hash_token("abc") != hash_token("abd")


def test_extract_bearer() -> None:
    assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
    assert extract_bearer("bearer abc") == "abc"
    assert extract_bearer("Basic abc") is None
    assert extract_bearer("Bearer ") is None
    assert extract_bearer(None) is None
