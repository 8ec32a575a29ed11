"""
core/errors.py -- Error taxonomy shared by the identity core and the API layer.

Every failure a caller can observe is one of these classes. Each carries the
HTTP status and the stable machine code the API layer renders, so route
handlers never translate error strings into status codes by hand:

    ValidationError   400  BAD_REQUEST            malformed input
    AuthError         401  UNAUTHORIZED           bad credentials, bad token
    ForbiddenError    403  FORBIDDEN              authenticated, not permitted
    NotFoundError     404  NOT_FOUND              missing session/user/token
    ConflictError     409  CONFLICT               duplicate registration
    RateLimitedError  200  RATE_LIMITED           reset throttling (flagged body)
    InternalError     500  INTERNAL_SERVER_ERROR  store or cache failure

RateLimitedError keeps a 200 status so a throttled password-reset request is
indistinguishable on the wire from a normal one.

Layer rule: core/ is the kernel. No imports from api/, auth/, or cache/.
"""

from __future__ import annotations


class TenantGateError(Exception):
    """Base class for errors mapped to the {error, message, code} envelope."""

    status_code: int = 500
    code: str = "INTERNAL_SERVER_ERROR"
    title: str = "Internal error"

    def __init__(self, message: str, *, details: dict | None = None, title: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if title is not None:
            self.title = title

    def to_dict(self) -> dict:
        body = {"error": self.title, "message": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(TenantGateError):
    status_code = 400
    code = "BAD_REQUEST"
    title = "Validation failed"


class AuthError(TenantGateError):
    status_code = 401
    code = "UNAUTHORIZED"
    title = "Unauthorized"


class ForbiddenError(TenantGateError):
    status_code = 403
    code = "FORBIDDEN"
    title = "Forbidden"


class NotFoundError(TenantGateError):
    status_code = 404
    code = "NOT_FOUND"
    title = "Not found"


class ConflictError(TenantGateError):
    status_code = 409
    code = "CONFLICT"
    title = "Conflict"


class RateLimitedError(TenantGateError):
    status_code = 200
    code = "RATE_LIMITED"
    title = "Rate limited"


class InternalError(TenantGateError):
    status_code = 500
    code = "INTERNAL_SERVER_ERROR"
    title = "Internal error"


class DeadlineExceeded(InternalError):
    """A store or cache call did not finish before the caller's deadline."""

    title = "Deadline exceeded"
