"""
auth/models.py -- Domain dataclasses for identity entities and service results.

Pattern: Data class. Dataclasses own domain shape; stores and services do the
work. The only logic here is the validity predicates that define each record's
state (a session is valid iff ..., a reset token is valid iff ...), kept next
to the fields they read so every caller evaluates them the same way.

Timestamps are timezone-aware UTC datetimes. The store serializes them to ISO
8601 strings; nothing outside auth/store.py sees the string form.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Permission bundles, lowest privilege last."""

    SUPER_ADMIN = "super_admin"
    TENANT_ADMIN = "tenant_admin"
    STAFF = "staff"
    VIEWER = "viewer"

    @classmethod
    def values(cls) -> list[str]:
        return [r.value for r in cls]


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class ResetFailure(str, Enum):
    """Why a password reset token cannot be used. Reported to the client."""

    NOT_FOUND = "not_found"
    USED = "used"
    EXPIRED = "expired"
    INACTIVE = "inactive"


_RESET_FAILURE_MESSAGES = {
    ResetFailure.NOT_FOUND: "Invalid or expired token",
    ResetFailure.USED: "Token has already been used",
    ResetFailure.EXPIRED: "Token has expired",
    ResetFailure.INACTIVE: "Token is inactive",
}


def reset_failure_message(reason: ResetFailure) -> str:
    return _RESET_FAILURE_MESSAGES[reason]


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


@dataclass
class User:
    """An identity within one tenant.

    email is unique per tenant among non-deleted users. deleted_at marks a
    soft delete; users are never hard-deleted. password_hash never leaves the
    service layer -- API models copy every other field but this one.
    """

    tenant_id: str
    email: str
    password_hash: str
    display_name: str
    role: str = Role.VIEWER.value
    phone: str = ""
    id: str | None = None
    is_active: bool = True
    last_login: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    def is_authenticatable(self) -> bool:
        """A soft-deleted or inactive user is never considered authenticated."""
        return self.is_active and self.deleted_at is None


@dataclass
class Session:
    """One outstanding login context and the hashes of its current token pair.

    Valid iff is_active, now < expires_at, and last_activity is within the
    inactivity ceiling. token_hash / refresh_token_hash are SHA-256 hex of the
    raw token strings; they rotate on every refresh.
    """

    user_id: str
    tenant_id: str
    session_id: str
    token_hash: str
    refresh_token_hash: str
    expires_at: datetime
    last_activity: datetime
    ip_address: str = ""
    user_agent: str = ""
    device_info: str = ""  # JSON blob, free-form client fingerprint
    id: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_idle(self, inactivity: timedelta, now: datetime | None = None) -> bool:
        return (now or utcnow()) - self.last_activity > inactivity

    def is_valid(self, inactivity: timedelta, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.is_active and not self.is_expired(now) and not self.is_idle(inactivity, now)


@dataclass
class PasswordResetToken:
    """Single-use recovery credential.

    issued -> valid -> {used | expired | deactivated}. The raw token exists
    only on the instance returned from issuance (token) and is never stored;
    lookups go through token_hash.
    """

    user_id: str
    tenant_id: str
    token_hash: str
    email: str
    expires_at: datetime
    id: str | None = None
    used_at: datetime | None = None
    is_active: bool = True
    ip_address: str = ""
    user_agent: str = ""
    created_at: datetime | None = None
    token: str | None = None  # raw value, issuance only

    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def failure(self, now: datetime | None = None) -> ResetFailure | None:
        """Return why this token is unusable, or None if it is valid.

        used is checked first: a consumed token stays "used" even after its
        expiry passes, so a replay always reports the same reason.
        """
        if self.is_used():
            return ResetFailure.USED
        if self.is_expired(now):
            return ResetFailure.EXPIRED
        if not self.is_active:
            return ResetFailure.INACTIVE
        return None

    def is_valid(self, now: datetime | None = None) -> bool:
        return self.failure(now) is None


@dataclass
class ActivityLog:
    """Append-only audit record. Written once, never updated."""

    tenant_id: str
    action: str
    resource_type: str
    success: bool = True
    user_id: str | None = None
    resource_id: str | None = None
    error_message: str = ""
    session_id: str = ""
    old_values: dict | None = None
    new_values: dict | None = None
    ip_address: str = ""
    user_agent: str = ""
    id: str | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Token payloads and service results (not persisted)
# ---------------------------------------------------------------------------


@dataclass
class TokenClaims:
    """Signed payload of an access or refresh token, rebuilt after verification."""

    user_id: str
    tenant_id: str
    email: str
    role: str
    session_id: str
    token_type: str
    token_hash: str  # HMAC of session_id; binds the token to its session record
    issuer: str
    audience: list[str]
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    jti: str = ""

    def remaining(self, now: datetime | None = None) -> timedelta:
        return max(timedelta(0), self.expires_at - (now or utcnow()))


@dataclass
class Identity:
    """Result of a successful access-token validation; attached to the request."""

    user_id: str
    tenant_id: str
    role: str
    session_id: str
    expires_at: datetime
    email: str = ""


@dataclass
class AuthResult:
    """Token pair plus the session it belongs to. Returned by register, login and refresh."""

    user: User
    access_token: str
    refresh_token: str
    session_id: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass
class ResetRequestResult:
    """Outcome of a reset request. Identical shape whether or not the email exists."""

    message: str
    expires_at: datetime
    sent_to_email: str
    rate_limited: bool = False
    reset_token_id: str | None = None
    token: str | None = field(default=None, repr=False)  # raw token for the delivery collaborator


@dataclass
class ResetTokenValidation:
    is_valid: bool
    reason: ResetFailure | None = None
    user_id: str | None = None
    tenant_id: str | None = None
    email: str | None = None
    expires_at: datetime | None = None
    token_id: str | None = None

    @property
    def message(self) -> str:
        return "Token is valid" if self.reason is None else reset_failure_message(self.reason)
