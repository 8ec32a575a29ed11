"""
api/routes/v1/auth.py -- Identity REST endpoints.

Routes (all under /api/v1):
  POST   /auth/register               -- create account + first session (X-Tenant-ID)
  POST   /auth/login                  -- email/password login
  POST   /auth/logout                 -- end the current session
  POST   /auth/refresh                -- rotate the token pair (refresh token in body)
  GET    /auth/profile                -- current user
  PUT    /auth/profile                -- update display name / phone
  POST   /auth/change-password        -- rotate password, end all sessions
  GET    /auth/sessions               -- current user's active sessions
  POST   /auth/logout-all             -- end every session of the current user
  POST   /auth/password-reset         -- request a reset token (always generic)
  GET    /auth/validate-reset-token   -- check a reset token without consuming it
  POST   /auth/reset-password         -- set a new password with a reset token
  GET    /auth/users                  -- list users of the effective tenant (users:read)
  DELETE /auth/users/{user_id}        -- soft-delete a user (users:delete)

Handlers are plain def functions: FastAPI runs them on its worker thread
pool, one request per thread, and the services block on store I/O.

Security:
  [H2] POST /login is rate-limited per client IP (Settings.login_rate_limit).
  [C1] Login timing equalization lives in SessionManager.login().
  [M5] Cache-Control: no-store on every response that carries tokens.
  Reset endpoints answer identically for known and unknown emails.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response

from api.limiter import limiter
from api.models import (
    AuthData,
    ChangePasswordRequest,
    LoginRequest,
    PasswordResetRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    ResetRequestData,
    ResetTokenData,
    SessionResponse,
    SuccessResponse,
    UpdateProfileRequest,
    UserResponse,
)
from auth.dependencies import (
    get_auth_service,
    get_deadline,
    get_identity,
    register_tenant,
    require_permission,
    tenant_scope,
)
from auth.models import Identity
from auth.passwords import mask_email
from auth.service import AuthService
from core.config import get_settings
from core.deadline import Deadline
from core.errors import NotFoundError, ValidationError

# Auth policy:
# - register, login, refresh, password-reset, validate-reset-token,
#   reset-password:                public (refresh/reset carry their own token)
# - profile, change-password, sessions, logout, logout-all:
#                                  bearer access token (get_identity)
# - GET /auth/users:               users:read + tenant isolation
# - DELETE /auth/users/{id}:       users:delete + tenant isolation
router = APIRouter()


def _client(request: Request) -> dict[str, str]:
    return {
        "ip_address": request.client.host if request.client else "",
        "user_agent": request.headers.get("User-Agent", "")[:512],
    }


def _login_limit() -> str:
    return get_settings().login_rate_limit


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=SuccessResponse, status_code=201)
def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    tenant_id: str = Depends(register_tenant),
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    """Create a user in the X-Tenant-ID tenant and log it in."""
    result = service.register(
        body.email,
        body.password,
        body.display_name,
        tenant_id,
        phone=body.phone,
        role=body.role.value if body.role else None,
        deadline=deadline,
        **_client(request),
    )
    _no_store(response)
    return SuccessResponse(message="User registered successfully", data=AuthData.from_result(result))


@router.post("/auth/login", response_model=SuccessResponse)
@limiter.limit(_login_limit)  # [H2] wraps the function router.post registers
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    """Authenticate with email and password.

    Unknown email and wrong password return the same 401 message.
    """
    result = service.login(body.email, body.password, deadline=deadline, **_client(request))
    _no_store(response)
    return SuccessResponse(message="Login successful", data=AuthData.from_result(result))


@router.post("/auth/refresh", response_model=SuccessResponse)
def refresh(
    request: Request,
    response: Response,
    body: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    result = service.refresh(body.refresh_token, deadline=deadline, **_client(request))
    _no_store(response)
    return SuccessResponse(message="Token refreshed successfully", data=AuthData.from_result(result))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=SuccessResponse)
def logout(
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    service.logout(identity, deadline)
    return SuccessResponse(message="Logged out successfully")


@router.post("/auth/logout-all", response_model=SuccessResponse)
def logout_all(
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    ended = service.logout_all(identity, deadline)
    return SuccessResponse(message="Logged out from all devices", data={"sessions_terminated": ended})


@router.get("/auth/profile", response_model=SuccessResponse)
def get_profile(
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    user = service.get_profile(identity.user_id, deadline)
    return SuccessResponse(message="Profile retrieved successfully", data=UserResponse.from_user(user))


@router.put("/auth/profile", response_model=SuccessResponse)
def update_profile(
    body: UpdateProfileRequest,
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    user = service.update_profile(
        identity.user_id,
        display_name=body.display_name,
        phone=body.phone,
        deadline=deadline,
    )
    return SuccessResponse(message="Profile updated successfully", data=UserResponse.from_user(user))


@router.post("/auth/change-password", response_model=SuccessResponse)
def change_password(
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    """Change the caller's password. Every session, including this one, ends."""
    ended = service.change_password(identity.user_id, body.current_password, body.new_password, deadline=deadline)
    return SuccessResponse(
        message="Password changed successfully. Please log in again.",
        data={"sessions_terminated": ended},
    )


@router.get("/auth/sessions", response_model=SuccessResponse)
def list_sessions(
    identity: Identity = Depends(get_identity),
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    sessions = service.list_sessions(identity, deadline)
    return SuccessResponse(
        message="Sessions retrieved successfully",
        data=[SessionResponse.from_session(s, identity.session_id) for s in sessions],
    )


# ---------------------------------------------------------------------------
# Password reset (public)
# ---------------------------------------------------------------------------


@router.post("/auth/password-reset", response_model=SuccessResponse)
def request_password_reset(
    request: Request,
    body: PasswordResetRequest,
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    """Request a reset token. The raw token is handed to the notifier, never returned."""
    result = service.request_password_reset(body.email, deadline=deadline, **_client(request))
    return SuccessResponse(
        message=result.message,
        data=ResetRequestData(
            expires_at=result.expires_at,
            sent_to_email=result.sent_to_email,
            rate_limited=result.rate_limited,
            reset_token_id=result.reset_token_id,
        ),
    )


@router.get("/auth/validate-reset-token", response_model=SuccessResponse)
def validate_reset_token(
    token: str = Query(default="", max_length=255),
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    """Report whether a reset token is usable. Does not consume it."""
    if not token.strip():
        raise ValidationError("Reset token is required", details={"field": "token"})
    check = service.validate_reset_token(token, deadline)
    if not check.is_valid:
        raise NotFoundError(check.message, details={"reason": check.reason.value})
    return SuccessResponse(
        message=check.message,
        data=ResetTokenData(is_valid=True, email=mask_email(check.email or ""), expires_at=check.expires_at),
    )


@router.post("/auth/reset-password", response_model=SuccessResponse)
def reset_password(
    request: Request,
    body: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    service.reset_password(body.token, body.new_password, deadline=deadline, **_client(request))
    return SuccessResponse(message="Password has been reset successfully. Please log in with your new password.")


# ---------------------------------------------------------------------------
# User administration (permission-gated, tenant-scoped)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=SuccessResponse)
def list_users(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    identity: Identity = Depends(require_permission("users", "read")),
    tenant_id: str = Depends(tenant_scope),
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    users = service.list_users(tenant_id, limit=limit, offset=offset, deadline=deadline)
    return SuccessResponse(
        message="Users retrieved successfully",
        data=[UserResponse.from_user(u) for u in users],
    )


@router.delete("/auth/users/{user_id}", response_model=SuccessResponse)
def delete_user(
    user_id: str,
    identity: Identity = Depends(require_permission("users", "delete")),
    tenant_id: str = Depends(tenant_scope),
    service: AuthService = Depends(get_auth_service),
    deadline: Deadline = Depends(get_deadline),
) -> SuccessResponse:
    """Soft-delete a user in the effective tenant and end all of its sessions."""
    service.delete_user(identity, user_id, tenant_id, deadline)
    return SuccessResponse(message="User deleted successfully")
