"""
API request and response models for TenantGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Envelopes:
  success -> {"success": true, "message": ..., "data": ...}
  error   -> {"error": ..., "message": ..., "code": ...[, "details": ...]}

password_hash and token hashes never appear in any response model.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthResult, Session, User

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    super_admin = "super_admin"
    tenant_admin = "tenant_admin"
    staff = "staff"
    viewer = "viewer"


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class SuccessResponse(BaseModel):
    """Top-level envelope for every 2xx response."""

    success: bool = True
    message: str
    data: Any = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: str
    message: str
    code: str
    details: Optional[dict[str, Any]] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register. Tenant comes from X-Tenant-ID."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    display_name: str = Field(min_length=1, max_length=255)
    phone: str = Field(default="", max_length=20)
    role: Optional[RoleEnum] = None


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class UpdateProfileRequest(BaseModel):
    """Request body for PUT /api/v1/auth/profile. Omitted fields are left unchanged."""

    display_name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=20)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


class PasswordResetRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Response data models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a User -- no password_hash, no deleted_at."""

    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    email: str
    display_name: str
    phone: str
    role: str
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            tenant_id=user.tenant_id,
            email=user.email,
            display_name=user.display_name,
            phone=user.phone,
            role=user.role,
            is_active=user.is_active,
            last_login=user.last_login,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class AuthData(BaseModel):
    """Token pair returned by register, login and refresh."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    access_token: str
    refresh_token: str
    session_id: str
    token_type: str = "Bearer"
    expires_in: int

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthData":
        return cls(
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            session_id=result.session_id,
            token_type=result.token_type,
            expires_in=result.expires_in,
        )


class SessionResponse(BaseModel):
    """One row of GET /api/v1/auth/sessions. Token hashes are not exposed."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    ip_address: str
    user_agent: str
    device_info: str
    expires_at: datetime
    last_activity: datetime
    created_at: Optional[datetime] = None
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_session_id: str = "") -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            device_info=session.device_info,
            expires_at=session.expires_at,
            last_activity=session.last_activity,
            created_at=session.created_at,
            current=session.session_id == current_session_id,
        )


class ResetRequestData(BaseModel):
    """Data for POST /api/v1/auth/password-reset. Same shape whether or not the account exists."""

    model_config = ConfigDict(frozen=True)

    expires_at: datetime
    sent_to_email: str
    rate_limited: bool = False
    reset_token_id: Optional[str] = None


class ResetTokenData(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    email: Optional[str] = None
    expires_at: Optional[datetime] = None
