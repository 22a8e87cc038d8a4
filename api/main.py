"""
api/main.py -- FastAPI application entry point for SiteWatch.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter
  3. SessionMiddleware  -- Starlette session for authlib's OAuth state

Lifespan wires the stores, the identity resolver, and the admission guard
onto app.state, starts the session purge task, and tears everything down
symmetrically on shutdown.

Concurrency model: every request is handled independently. Sync route
handlers run in Starlette's thread pool. There is no in-process cache shared
between requests -- the databases are the only shared state. Identity cache
write-backs go to a small dedicated thread pool and are never awaited by the
request that triggered them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.sites import router as sites_router
from auth.identity import IdentityResolver
from auth.oauth import oauth as oauth_client
from auth.provider import TokenRefresher
from auth.store import SessionStore
from core.config import get_settings
from core.errors import DuplicateError, PersistenceError, UpstreamIdentityError
from sites.admission import ReportAdmissionGuard
from sites.store import SiteStore

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sitewatch.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired sessions every session_purge_interval_seconds.

    The store call blocks on the database, so it runs in a worker thread.
    A failed sweep is logged and retried on the next tick.
    """
    while True:
        await asyncio.sleep(_settings.session_purge_interval_seconds)
        try:
            removed = await asyncio.to_thread(app.state.session_store.purge_expired)
        except PersistenceError as exc:
            logger.warning("Session purge failed: %s", exc.detail or exc.message)
            continue
        if removed:
            logger.info("Purged %d expired sessions", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create shared resources on startup and release them on shutdown.

    Startup order matters:
      1. Stores first -- everything else holds a reference to them.
      2. Write-back executor and resolver.
      3. Admission guard.
      4. Purge task last -- it references app.state.session_store.
    """
    logger.info("SiteWatch API starting up")
    app.state.session_store = SessionStore(db_url=_settings.auth_db_url)
    app.state.site_store = SiteStore(db_url=_settings.sites_db_url)
    app.state.write_back_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="identity-cache")
    app.state.identity_resolver = IdentityResolver(
        app.state.session_store,
        refresher=TokenRefresher.from_settings(),
        executor=app.state.write_back_executor,
    )
    app.state.report_guard = ReportAdmissionGuard(
        app.state.site_store,
        reason_max_length=_settings.report_reason_max_length,
    )
    app.state.oauth = oauth_client
    logger.info("Auth initialized (oauth_enabled=%s)", _settings.oauth_enabled)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.write_back_executor.shutdown(wait=True)
    app.state.site_store.close()
    app.state.session_store.close()
    logger.info("SiteWatch API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SiteWatch API",
    description="Site directory with community reports and maintainer moderation.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# Required by authlib to keep the OAuth state between the authorization
# redirect and the callback.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=_settings.secure_cookies)

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
app.include_router(sites_router, prefix="/api/v1", tags=["Sites"])


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


@app.exception_handler(DuplicateError)
async def duplicate_handler(request: Request, exc: DuplicateError) -> JSONResponse:
    """409 -- a pending report of this type already exists for the site."""
    return _error(409, exc.code, exc.message)


@app.exception_handler(UpstreamIdentityError)
async def upstream_identity_handler(request: Request, exc: UpstreamIdentityError) -> JSONResponse:
    """401 -- the provider rejected the session's token or could not be reached.

    The session is treated as unusable; no cached identity is substituted.
    """
    return _error(401, "unauthorized", "Session is no longer valid. Please sign in again.")


@app.exception_handler(PersistenceError)
async def persistence_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    """500 -- a required database operation failed. The driver message stays in the log."""
    logger.error("Persistence failure on %s %s: %s (%s)", request.method, request.url.path, exc.message, exc.detail)
    return _error(500, exc.code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; that dict is used directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
