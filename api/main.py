"""
api/main.py -- FastAPI application entry point for TenantGate.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- Host header must be in Settings.allowed_hosts
  2. CORSMiddleware        -- browser origins; exposes X-Tenant-ID to scripts
  3. SlowAPIMiddleware     -- applies the @limiter.limit routes (login)

Lifespan opens the credential store, the shared cache and the AuthService
(which starts the audit worker) on startup, plus the maintenance task; it
tears all of them down in reverse order on shutdown.

Every TenantGateError raised anywhere below a route is rendered here as
{error, message, code[, details]} with the status the error class carries.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.service import AuthService
from auth.store import CredentialStore
from cache.store import build_cache
from core.config import get_settings
from core.errors import TenantGateError

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tenantgate.api")

settings = get_settings()

_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
}

# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


async def _maintenance_loop(app: FastAPI, interval: int) -> None:
    """Expire sessions, reset tokens and cache entries; trim old activity.

    The store calls block, so each pass runs on a worker thread. A failing
    pass is logged and the loop keeps going. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and ends the loop.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            results = await asyncio.to_thread(app.state.auth_service.run_maintenance)
        except Exception:  # noqa: BLE001 -- keep the loop alive
            logger.exception("maintenance pass failed")
            continue
        logger.info("maintenance pass complete: %s", results)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the stores and services on startup, close them on shutdown.

    Startup order matters:
      1. Credential store -- every other component reads or writes it.
      2. Shared cache -- revocation list for validator and logout.
      3. AuthService -- wires both and starts the audit worker.
      4. Maintenance task last -- references app.state.auth_service.
    """
    logger.info("TenantGate API starting up")
    store = CredentialStore(settings.database_url)
    cache = build_cache(settings.cache_url)
    app.state.auth_service = AuthService.build(settings, store, cache)
    logger.info("Auth service initialized (cache=%s)", type(cache).__name__)
    app.state.maintenance_task = asyncio.create_task(
        _maintenance_loop(app, settings.maintenance_interval_seconds)
    )

    yield

    app.state.maintenance_task.cancel()
    app.state.auth_service.close()
    cache.close()
    store.close()
    logger.info("TenantGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TenantGate API",
    description="Multi-tenant identity: registration, sessions, token validation, password reset, permissions.",
    version=VERSION,
    lifespan=lifespan,
    # Interactive docs only in development.
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette wraps each new middleware around the previous ones, so the last
# registered runs first: SlowAPI is added first and TrustedHost last.
# ---------------------------------------------------------------------------

# SlowAPIMiddleware finds the limiter on app.state.
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Tenant-ID"],
    expose_headers=["X-Tenant-ID"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Logs method, path, status, latency and client address. Never logs headers
# or bodies: both carry tokens and passwords.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler answers with the {error, message, code[, details]} envelope.
# ---------------------------------------------------------------------------


def _error(status_code: int, error: str, message: str, code: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=error, message=message, code=code, details=details or None)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(TenantGateError)
async def tenantgate_error_handler(request: Request, exc: TenantGateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    response = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 for the login rate limit. Retry-After comes from slowapi's exc.retry_after."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "Too many requests", "Too many requests.", "RATE_LIMITED", {"limit": str(exc.detail)})
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and query params are 400 BAD_REQUEST, like service-level ValidationError."""
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return _error(400, "Validation failed", "Request validation failed.", "BAD_REQUEST", {"errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _HTTP_CODES.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _error(exc.status_code, code.replace("_", " ").capitalize(), str(exc.detail), code)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything not mapped above is a bug: 500 with a generic message.

    The traceback goes to the server log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "Internal error", "An unexpected error occurred.", "INTERNAL_SERVER_ERROR")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Lives on the app rather than the auth router and carries no rate limit or
# auth: load balancers poll it, and 503 means a store is unreachable.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request, response: Response) -> HealthResponse:
    """Return liveness, version, and the status of the database and cache."""
    components = request.app.state.auth_service.health()
    healthy = all(state == "ok" for state in components.values())
    if not healthy:
        response.status_code = 503
    return HealthResponse(status="ok" if healthy else "degraded", version=VERSION, components=components)
