"""
api/main.py -- FastAPI application entry point for StepGuard.

Exposes the auth core over HTTP. Every route delegates to the AuthService
held on app.state; this module only owns process-level wiring.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the configured frontend

Lifespan handles startup (store, notifier, service graph, sweeper task) and
shutdown (cancel sweeper task, close DB connection) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import get_current_user
from auth.errors import AuthError, ErrorKind
from auth.models import User
from auth.service import AuthService
from auth.store import AuthStore
from auth.sweeper import ExpirySweeper
from core.clock import SystemClock
from core.config import get_settings
from notify.mailer import build_notifier

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("stepguard.api")

settings = get_settings()

# AuthError kind -> (HTTP status, error code). UNAUTHORIZED and INTERNAL never
# echo the underlying cause.
_STATUS_BY_KIND: dict[ErrorKind, tuple[int, str]] = {
    ErrorKind.NOT_FOUND: (404, "not_found"),
    ErrorKind.CONFLICT: (409, "conflict"),
    ErrorKind.INVALID_INPUT: (400, "invalid_input"),
    ErrorKind.UNAUTHORIZED: (401, "unauthorized"),
    ErrorKind.INTERNAL: (500, "internal_error"),
}


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first -- the service and the sweeper both hold it.
      2. Service second -- built from settings, store and notifier.
      3. Sweeper task last -- references the store, so it must exist.
    """
    # Startup
    logger.info("StepGuard API starting up")
    clock = SystemClock()
    store = AuthStore(settings.database_url)
    app.state.store = store
    app.state.auth_service = AuthService.build(
        settings,
        store,
        build_notifier(settings, logger=logging.getLogger("stepguard.notify")),
        clock=clock,
        logger=logging.getLogger("stepguard.auth"),
    )
    logger.info("Auth initialized")
    sweeper = ExpirySweeper(
        store,
        clock,
        interval_seconds=settings.sweep_interval_seconds,
        logger=logging.getLogger("stepguard.sweeper"),
    )
    app.state.sweep_task = asyncio.create_task(sweeper.run())

    yield

    # Shutdown
    app.state.sweep_task.cancel()
    store.close()
    logger.info("StepGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="StepGuard API",
    description="Password login, TOTP step-up, password reset and token refresh.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected equivalents below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url.rstrip("/")],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Captures wall-clock time around call_next so every response is logged with
# its latency. Bodies are never logged: they carry passwords and tokens.
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
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="StepGuard API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="StepGuard API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map an AuthError kind to its HTTP status.

    The message of an INTERNAL error is replaced with a generic one; the cause
    was already logged where it was raised. Responses on the token-bearing
    routes keep Cache-Control: no-store on failure too.
    """
    status_code, code = _STATUS_BY_KIND[exc.kind]
    message = exc.message
    if exc.kind is ErrorKind.INTERNAL:
        message = "An unexpected error occurred."
    resp = _error(status_code, code, message)
    resp.headers["Cache-Control"] = "no-store"
    if exc.kind is ErrorKind.UNAUTHORIZED:
        resp.headers["WWW-Authenticate"] = "Bearer"
    return resp


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when the request body fails validation.

    Only the location and message of each failure are echoed; the offending
    input may be a password.
    """
    problems = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]
    return _error(422, "validation_error", "Request validation failed.", str(problems))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route dependencies raise HTTPException with a dict detail. When detail is
    already structured, use it directly as the error field rather than
    stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, current version and database reachability."""
    store: AuthStore = request.app.state.store
    try:
        database = "ok" if store.ping() else "error"
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
