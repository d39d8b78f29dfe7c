"""
api/main.py -- FastAPI application entry point for dnsdesk.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- enforces per-route rate limits from core.limiter
  3. setup_redirect        -- sends everything to /setup until the first user exists
  4. log_requests          -- one log line per request with latency

Lifespan handles startup (stores, signing secret, session manager, expired
session sweep, directory client, auth policy) and shutdown (close stores)
symmetrically. Everything request handlers need hangs off app.state; there
is no module-level mutable state.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from audit.store import AuditStore
from auth.dependencies import GateRejected
from auth.directory import DirectoryClient
from auth.policy import AuthenticationPolicy
from auth.session import SessionManager
from auth.store import UserStore
from core.config import get_settings
from core.limiter import limiter

VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("dnsdesk.api")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- an invalid directory config must stop the process
         before it serves a single request.
      2. Stores, then the signing secret (created on first run).
      3. Session manager with the injected secret; one best-effort sweep of
         expired sessions.
      4. Directory client (only when LDAP is enabled) and the auth policy.
    """
    settings = get_settings()
    logger.info("dnsdesk starting up")

    app.state.user_store = UserStore(settings.database_url)
    app.state.audit_store = AuditStore(settings.database_url)
    secret = app.state.user_store.ensure_signing_secret()
    app.state.session_manager = SessionManager(
        app.state.user_store,
        secret,
        secure_cookies=settings.secure_cookies,
    )
    purged = app.state.session_manager.purge_expired()
    logger.info("Purged %d expired session(s)", purged)

    directory_settings = settings.directory()
    directory = DirectoryClient(directory_settings) if directory_settings is not None else None
    if directory_settings is not None:
        logger.info("LDAP authentication enabled (server %s)", directory_settings.url)
        logger.info("LDAP groups mapped: %d role(s)", len(directory_settings.role_mapping))
    app.state.auth_policy = AuthenticationPolicy(
        app.state.user_store,
        app.state.session_manager,
        app.state.audit_store,
        directory=directory,
    )
    app.state.setup_required = not app.state.user_store.has_users()
    logger.info("Auth initialized (setup_required=%s)", app.state.setup_required)

    yield

    app.state.audit_store.close()
    app.state.user_store.close()
    logger.info("dnsdesk shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="dnsdesk",
    description="Operator console for hosted DNS zones.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def setup_redirect(request: Request, call_next):
    """Redirect all requests to /setup while no users exist (first-run state).

    setup_required is an in-memory flag set in lifespan and cleared by
    POST /setup. POST /setup re-checks the store itself, so two concurrent
    setup submissions cannot both create an admin.
    """
    if getattr(request.app.state, "setup_required", False):
        path = request.url.path
        if path not in ("/setup", "/api/v1/health") and not path.startswith("/static/"):
            return RedirectResponse("/setup", status_code=303)
    return await call_next(request)


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
# Web UI router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(GateRejected)
async def gate_rejected_handler(request: Request, exc: GateRejected) -> Response:
    """Return the short-circuit response produced by a request gate, unchanged."""
    return exc.response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    A dict detail is used directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only. Auth paths in particular must never
    echo internal error text to the client.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and a store connectivity check. No auth required."""
    database = "ok"
    try:
        request.app.state.user_store.has_users()
    except SQLAlchemyError:
        logger.exception("Health check: database unavailable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
