"""
api/main.py -- FastAPI application entry point for Estate Auth.

Exposes the AuthGateway over HTTP: login, refresh, MFA, logout, session and
permission queries, plus the admin surface for security config and audit logs.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. trace_and_log         -- assigns a trace id, logs method/path/status/latency
  2. security_headers      -- no-store / nosniff / frame-deny on every response
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the database, resolves the security config and builds the
AuthGateway on startup; it disposes the engine on shutdown.

Error envelope: every rejection is rendered as
  {"error": {"code", "message", "detail"?, "trace_id"}}
with the same trace id in the X-Trace-ID response header. Internal causes are
written to the server log only.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError
from auth.gateway import AuthGateway
from auth.security_config import load_security_config
from auth.store import AuditStore, SecurityConfigStore, SessionStore, UserStore, open_engine
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("estateauth.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Engine first -- creates the schema, every store shares it.
      2. Security config second -- store overrides on top of Settings defaults.
      3. Gateway last -- needs the stores and the resolved config.
    """
    logger.info("Estate Auth API starting up")
    engine = open_engine(settings.database_url)
    app.state.engine = engine
    app.state.user_store = UserStore(engine)
    app.state.session_store = SessionStore(engine)
    app.state.audit_store = AuditStore(engine)
    app.state.config_store = SecurityConfigStore(engine)
    app.state.gateway = AuthGateway(
        app.state.user_store,
        app.state.session_store,
        app.state.audit_store,
        secret_key=settings.secret_key,
        pepper=settings.password_pepper,
        config=load_security_config(settings, app.state.config_store),
        mfa_issuer=settings.mfa_issuer,
    )
    logger.info("Auth gateway initialized")

    yield

    engine.dispose()
    logger.info("Estate Auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Estate Auth API",
    description="Credential and session security: login, MFA, device-bound sessions, RBAC and audit.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware both wrap the app, so the LAST
# registered middleware is the outermost. Register innermost first:
# SlowAPI -> CORS -> TrustedHost -> security_headers -> trace_and_log.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization", "X-Device-Fingerprint"],
    expose_headers=["X-Trace-ID"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Security headers middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["Cache-Control"] = "no-store"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


# ---------------------------------------------------------------------------
# Trace id + request logging middleware
#
# Every request gets a trace id before any handler runs. Exception handlers
# read it from request.state so the error body and the log line agree.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def trace_and_log(request: Request, call_next):
    trace_id = uuid.uuid4().hex
    request.state.trace_id = trace_id
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    response.headers["X-Trace-ID"] = trace_id
    logger.info(
        "%s %s %d %.1fms %s trace=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        trace_id,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _trace_id(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id is None:
        trace_id = uuid.uuid4().hex
        request.state.trace_id = trace_id
    return trace_id


def _error_response(request: Request, status_code: int, code: str, message: str, detail: str | None = None):
    trace_id = _trace_id(request)
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=code, message=message, detail=detail, trace_id=trace_id)
        ).model_dump(exclude_none=True),
    )
    response.headers["X-Trace-ID"] = trace_id
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an AuthError with its own status and code.

    The message is the class default (or the one the gateway chose); causes
    chained onto the exception are logged, never returned.
    """
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "%s on %s %s (trace=%s)",
        exc.code,
        request.method,
        request.url.path,
        _trace_id(request),
        exc_info=exc.__cause__ is not None and exc.status_code >= 500,
    )
    response = _error_response(request, exc.status_code, exc.code, exc.message)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    slowapi stores this on the exception as exc.retry_after (int seconds).
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(request, 429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(request, 422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    When detail is already a structured dict, use its code and message rather
    than stringifying it -- str(dict) produces a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return _error_response(
            request,
            exc.status_code,
            exc.detail.get("code", f"http_{exc.status_code}"),
            exc.detail.get("message", ""),
            exc.detail.get("detail"),
        )
    return _error_response(request, exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the server log only, never
    to the response body. The client receives a generic message and the trace
    id to quote when reporting the problem.
    """
    logger.exception(
        "Unhandled exception on %s %s (trace=%s)", request.method, request.url.path, _trace_id(request)
    )
    return _error_response(request, 500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Health check database probe failed", exc_info=True)
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
