"""
api/main.py -- FastAPI application entry point for the expense tracker auth service.

Run with:  uvicorn asgi:app --reload

Middleware stack (registration order):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (credential store, revocation registry, lockout
policy, sweep task) and shutdown (cancel sweep task, close DB connection)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError
from auth.lockout import LockoutPolicy
from auth.revocation import build_registry
from auth.store import UserStore
from core.config import get_settings

_VERSION = "1.0.0"

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level="DEBUG" if settings.debug else settings.log_level,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("expense_tracker.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: float | None = None) -> None:
    """Evict expired blacklist entries and dead refresh descriptors periodically.

    sweep() issues blocking database calls, so each pass runs on a worker
    thread. A failed pass is logged and the loop keeps going; the next pass
    retries.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval or settings.sweep_interval_seconds)
        try:
            evicted, pruned = await asyncio.to_thread(app.state.revocation.sweep)
        except Exception:
            logger.exception("Revocation sweep failed")
            continue
        if evicted or pruned:
            logger.info("Revocation sweep: blacklist_evicted=%d refresh_pruned=%d", evicted, pruned)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the store first, then the registry and lockout
    policy that wrap it, then the sweep task that references the registry.
    """
    logger.info("Expense tracker auth API starting up")
    app.state.user_store = UserStore(settings.database_url)
    app.state.revocation = build_registry(
        app.state.user_store,
        settings.revocation_backend,
        max_entries=settings.blacklist_max_entries,
    )
    app.state.lockout = LockoutPolicy(
        app.state.user_store,
        max_attempts=settings.max_login_attempts,
        lockout_minutes=settings.lockout_minutes,
    )
    logger.info(
        "Auth initialized (revocation_backend=%s max_login_attempts=%d)",
        settings.revocation_backend,
        settings.max_login_attempts,
    )
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    app.state.sweep_task.cancel()
    app.state.user_store.close()
    logger.info("Expense tracker auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Expense Tracker Auth API",
    description="Registration, login, token refresh and session management for the expense tracker.",
    version=_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Registered in this order; Starlette makes the last registered outermost.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
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
# All handlers return the same {success: false, message, data?, errors?}
# envelope so clients can parse failures without switching on status code.
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=message, **extra).model_dump(exclude_none=True),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any auth-layer failure with its own status code and message."""
    response = _error(exc.status_code, exc.message, data=exc.data, errors=exc.errors)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one {field, message} entry per failed constraint."""
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        message = str(err.get("msg", "Invalid value"))
        errors.append(
            {
                "field": ".".join(loc) or "body",
                "message": message.removeprefix("Value error, "),
            }
        )
    return _error(400, "Validation failed", errors=errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap framework HTTP errors (404 on unknown paths, 405, ...) in the envelope."""
    response = _error(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "Too many requests, please try again later.")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    identity = getattr(request.state, "identity", None)
    logger.exception(
        "Unhandled exception on %s %s: user_id=%s ip=%s",
        request.method,
        request.url.path,
        identity.id if identity else None,
        request.client.host if request.client else "unknown",
    )
    return _error(500, "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. Exempt from rate limiting: load balancer health checks must
# not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
@limiter.exempt
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    try:
        db_status = "ok" if request.app.state.user_store.ping() else "error"
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        db_status = "error"
    return HealthResponse(version=_VERSION, components={"app": "ok", "database": db_status})
