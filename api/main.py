"""
api/main.py -- FastAPI application entry point for Gruff.

Hosts the authentication and session core over HTTP so the auth gate, the
token service and the session store run end to end.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests     -- method, path, status, latency for every request;
                         redacted request headers at DEBUG
  2. SlowAPIMiddleware -- enforces per-route rate limits (shared limiter in api/limiter.py)

Lifespan builds every collaborator from Settings exactly once and hangs it on
app.state: the signing secret, TokenConfig, the KV store, SessionStore and
UserStore. Tests replace the lifespan and wire their own instances.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import TokenConfig
from core.config import get_settings
from core.redaction import install_redaction, redact_headers
from kv.store import open_kv

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
install_redaction()
logger = logging.getLogger("gruff.api")
access_logger = logging.getLogger("gruff.access")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------

_PURGE_INTERVAL_SECONDS = 60 * 60


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired KV entries every hour.

    Only backends with purge_expired() need this (MemoryKV, SqlKV); Redis
    evicts on its own. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine cleanly.
    """
    purge = getattr(app.state.kv, "purge_expired", None)
    if purge is None:
        return
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        removed = await asyncio.to_thread(purge)
        if removed:
            logger.info("Purged %d expired KV entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build collaborators on startup, release them on shutdown.

    get_settings() raises here if JWT_SECRET is missing in production, so a
    misconfigured deployment fails at boot instead of on the first request.
    """
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info("Gruff API starting up")

    app.state.jwt_secret = settings.jwt_secret
    app.state.access_cookie_name = settings.access_cookie_name
    app.state.token_config = TokenConfig.from_settings(settings)
    app.state.kv = open_kv(settings.kv_url)
    app.state.session_store = SessionStore.from_settings(app.state.kv, settings)
    app.state.user_store = UserStore(settings.database_url)
    logger.info(
        "Auth initialized (access_ttl=%ds, refresh_ttl=%ds)",
        settings.access_token_ttl,
        settings.refresh_token_ttl,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.kv.close()
    app.state.user_store.close()
    logger.info("Gruff API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gruff Auth API",
    description="Token issuance, refresh-token sessions, and access control.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One access-log line per request. Query strings are never logged.

    Request headers go out only at DEBUG, and only after redact_headers()
    has replaced Authorization and Cookie values.
    """
    if access_logger.isEnabledFor(logging.DEBUG):
        access_logger.debug("%s %s headers=%s", request.method, request.url.path, redact_headers(request.headers))
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000
    level = logging.WARNING if response.status_code >= 500 else logging.INFO
    access_logger.log(
        level,
        "%s %s -> %d (%.1fms) client=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.client.host if request.client else "-",
    )
    return response


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves the API as {"error": {"code", "message", "detail"?}}.
# Routes and dependencies raise HTTPException with a {"code", "message"}
# detail dict; the handlers below only wrap, they never rewrite codes.
# ---------------------------------------------------------------------------


def _error(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True), headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After. Hit by repeated POST /auth/login from one address."""
    logger.warning("Rate limit exceeded on %s", request.url.path)
    retry_after = str(int(getattr(exc, "retry_after", 60)))
    return _error(429, "rate_limited", "Too many requests.", str(exc), {"Retry-After": retry_after})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 naming the offending fields.

    Input values are left out of the detail: they may include passwords.
    """
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
    return _error(422, "validation_error", "Request validation failed.", f"Invalid fields: {fields}" if fields else None)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap HTTPException. A structured {"code", "message"} detail passes through as-is."""
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=headers)
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Exception text is logged, never returned.
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and the KV store's reachability."""
    components = {"app": "ok"}
    try:
        await asyncio.to_thread(request.app.state.kv.get, "health:check")
        components["kv"] = "ok"
    except Exception:
        logger.exception("KV health check failed")
        components["kv"] = "error"
    return HealthResponse(version=__version__, components=components)
