"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Every protected route converges on an Identity built by TokenValidator from
the "Authorization: Bearer <token>" header. There is no cookie or API-key
path; bearer access tokens are the only credential.

  get_identity()              401 unless the bearer token validates
  require_permission(r, a)    get_identity() + role grant check, else 403
  require_role(*roles)        get_identity() + role membership, else 403
  tenant_scope()              get_identity() + tenant isolation, else 403;
                              echoes the effective tenant in X-Tenant-ID
  register_tenant()           X-Tenant-ID header for unauthenticated
                              registration; must be a UUID, else 400

All helpers raise core.errors exceptions; api/main.py renders them.

Layer rule: no imports from api/ or cache/.
  auth/dependencies.py may import from fastapi (for Depends/Request/Response)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable

from fastapi import Depends, Header, Request, Response

from auth.models import Identity
from auth.service import AuthService
from auth.tokens import extract_bearer
from core.deadline import Deadline
from core.errors import AuthError, ValidationError

TENANT_HEADER = "X-Tenant-ID"


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_deadline(request: Request) -> Deadline:
    """One deadline per request, shared by every store call the request makes."""
    deadline = getattr(request.state, "deadline", None)
    if deadline is None:
        deadline = get_auth_service(request).deadline()
        request.state.deadline = deadline
    return deadline


def get_identity(request: Request, deadline: Deadline = Depends(get_deadline)) -> Identity:
    """Require a valid bearer access token. Raises AuthError (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_identity)): ...
    """
    token = extract_bearer(request.headers.get("Authorization"))
    if token is None:
        raise AuthError("Authorization header with a Bearer token is required")
    identity = get_auth_service(request).authenticate(token, deadline)
    request.state.identity = identity
    return identity


def require_permission(resource: str, action: str) -> Callable[..., Identity]:
    """Dependency factory: the caller's role must grant (resource, action)."""

    def dependency(request: Request, identity: Identity = Depends(get_identity)) -> Identity:
        get_auth_service(request).permissions.require_permission(identity, resource, action)
        return identity

    return dependency


def require_role(*roles: str) -> Callable[..., Identity]:
    """Dependency factory: the caller's role must be one of roles."""

    def dependency(request: Request, identity: Identity = Depends(get_identity)) -> Identity:
        get_auth_service(request).permissions.require_role(identity, *roles)
        return identity

    return dependency


def tenant_scope(request: Request, response: Response, identity: Identity = Depends(get_identity)) -> str:
    """Return the tenant this request acts on, enforcing tenant isolation.

    Candidates, first present wins: path parameter tenant_id, query parameter
    tenant_id, X-Tenant-ID header. Only super_admin may name a tenant other
    than the one in its token.
    """
    tenant_id = get_auth_service(request).permissions.resolve_tenant(
        identity,
        path_tenant=request.path_params.get("tenant_id"),
        query_tenant=request.query_params.get("tenant_id"),
        header_tenant=request.headers.get(TENANT_HEADER),
    )
    request.state.tenant_id = tenant_id
    response.headers[TENANT_HEADER] = tenant_id
    return tenant_id


def register_tenant(x_tenant_id: str | None = Header(default=None, alias=TENANT_HEADER)) -> str:
    """Tenant context for registration, taken from the X-Tenant-ID header."""
    if not x_tenant_id:
        raise ValidationError("X-Tenant-ID header is required", details={"field": "tenant_id"})
    try:
        return str(uuid.UUID(x_tenant_id))
    except ValueError as exc:
        raise ValidationError("X-Tenant-ID must be a UUID", details={"field": "tenant_id"}) from exc
