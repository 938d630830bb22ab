"""
api/main.py -- FastAPI application entry point for EstateGate.

Run with:  uvicorn asgi:app --reload

Middleware, in registration order (Starlette runs the last one registered first):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. log_requests          -- request id (X-Request-ID) and one access log line

Lifespan builds the store and the services once and hangs them on app.state;
route handlers read them from request.app.state. Shutdown closes the store.

Every response, success or failure, uses the {success, message?, data?}
envelope. The exception handlers below are the only place errors become
HTTP responses.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import HealthResponse, error_envelope
from api.routes.v1.auth import router as auth_router
from api.routes.v1.contact import router as contact_router
from api.routes.v1.reset import router as reset_router
from api.routes.v1.users import router as users_router
from auth.dependencies import require_admin
from auth.errors import AuthError, FieldError, ValidationFailed
from auth.mailer import build_mailer
from auth.models import Identity, Role
from auth.reset import PasswordResetService
from auth.service import AuthService
from auth.sessions import TokenService
from auth.store import AccountStore
from core.bootstrap import configure_logging, install_error_hooks
from core.config import get_settings

API_VERSION = "0.1.0"

logger = logging.getLogger("estategate.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Logging and fatal-error hooks first, so startup failures are logged.
      2. Store next -- every service depends on it.
      3. Services last, each receiving its collaborators explicitly.
    """
    configure_logging(_settings.log_level)
    install_error_hooks(asyncio.get_running_loop())
    logger.info("EstateGate API starting up")

    store = AccountStore(_settings.database_url)
    tokens = TokenService(store, _settings)
    mailer = build_mailer(_settings)
    reset_service = PasswordResetService(store, tokens, mailer, _settings)

    app.state.store = store
    app.state.token_service = tokens
    app.state.mailer = mailer
    app.state.reset_service = reset_service
    app.state.auth_service = AuthService(store, tokens, reset_service)
    logger.info("Auth initialized (owner_exists=%s)", store.has_role(Role.owner))

    yield

    store.close()
    logger.info("EstateGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="EstateGate API",
    description="Authentication, sessions, and password reset for the property listing platform.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below by admin-only equivalents.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Registration order; the request meets them in reverse:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    # The refresh cookie must travel on cross-origin calls from the frontend.
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request gets an id (taken from X-Request-ID when the client sends
# one) that is echoed on the response and included in the log line.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "%s %s %d %.1fms %s %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        request_id,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(reset_router, prefix="/api/v1", tags=["Password Reset"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(contact_router, prefix="/api/v1", tags=["Contact"])


# ---------------------------------------------------------------------------
# Admin-only API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(identity: Identity = Depends(require_admin)):
    """Swagger UI -- requires an admin access token."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="EstateGate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(identity: Identity = Depends(require_admin)):
    """ReDoc UI -- requires an admin access token."""
    return get_redoc_html(openapi_url="/openapi.json", title="EstateGate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same envelope so API clients can parse errors
# uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _errors_json(errors: list[FieldError]) -> list[dict]:
    return [{"path": e.path, "message": e.message} for e in errors]


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any taxonomy error raised by a service, dependency, or validator."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    errors = _errors_json(exc.errors) if isinstance(exc, ValidationFailed) else None
    return JSONResponse(status_code=exc.status_code, content=error_envelope(exc.message, exc.code, errors))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    client = request.client.host if request.client else "unknown"
    logger.warning("Rate limit exceeded on %s by %s", request.url.path, client)
    response = JSONResponse(
        status_code=429,
        content=error_envelope("Too many requests, please try again later.", "rate_limited"),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Path and query parameters FastAPI validates itself (e.g. a non-integer id)."""
    errors = []
    for error in exc.errors():
        loc = tuple(error["loc"][1:]) if len(error["loc"]) > 1 else tuple(error["loc"])
        errors.append(FieldError(".".join(str(part) for part in loc), error["msg"]))
    failure = ValidationFailed(errors)
    return JSONResponse(
        status_code=failure.status_code,
        content=error_envelope(failure.message, failure.code, _errors_json(errors)),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap FastAPI/Starlette HTTP exceptions (404 unknown route, 405, ...) in the envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(str(exc.detail), f"http_{exc.status_code}"),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The exception is logged with its traceback, never written to the response.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_envelope("An unexpected error occurred.", "internal_error"),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
