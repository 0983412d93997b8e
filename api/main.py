"""
api/main.py -- FastAPI application entry point for Tokenward.

Run with:      python main.py
               uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for CORS_TRUSTED_ORIGINS
  2. SlowAPIMiddleware  -- enforces the default and per-route limits from api.limiter

Lifespan handles startup (stores, dispatcher, mailer, token purge task) and
shutdown (cancel purge, drain in-flight background mail, close pools)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse, MetricsResponse, SystemInfo
from api.routes.v1.tokens import router as tokens_router
from api.routes.v1.users import router as users_router
from auth.errors import EditConflictError, EntropyFailure, HashingFailure
from auth.store import open_stores
from core.config import API_VERSION, VERSION, get_settings
from core.worker import TaskDispatcher
from mailer.mailer import Mailer

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokenward.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: float) -> None:
    """Delete expired tokens every `interval` seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        removed = await asyncio.to_thread(app.state.stores.tokens.purge_expired)
        if removed:
            logger.info("Purged %d expired tokens", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Shutdown order matters:
      1. Purge task first -- nothing new touches the store from the loop.
      2. Drain the dispatcher -- mail already queued still goes out. Drain
         blocks, so it runs in a thread to keep the event loop responsive.
      3. Close the dispatcher pool, then the DB engine the tasks may use.
    """
    # Startup
    logger.info("Tokenward API starting up (env=%s)", settings.env)
    app.state.stores = open_stores(settings.db_url)
    app.state.dispatcher = TaskDispatcher(max_workers=settings.worker_max_threads)
    app.state.mailer = Mailer.from_settings(settings)
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.token_purge_interval_seconds))
    logger.info("Stores, dispatcher, and mailer initialized")

    yield

    # Shutdown
    app.state.purge_task.cancel()
    logger.info("Completing background tasks (%d in flight)", app.state.dispatcher.in_flight)
    drained = await asyncio.to_thread(app.state.dispatcher.drain, settings.shutdown_timeout_seconds)
    if not drained:
        logger.error(
            "Shutdown timeout after %.0fs with %d background tasks still running",
            settings.shutdown_timeout_seconds,
            app.state.dispatcher.in_flight,
        )
    app.state.dispatcher.close(wait=drained)
    app.state.stores.close()
    logger.info("Tokenward API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Tokenward API",
    description="Account registration, activation, password reset, and scoped bearer tokens.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_trusted_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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

app.include_router(users_router, prefix=f"/api/{API_VERSION}", tags=["Users"])
app.include_router(tokens_router, prefix=f"/api/{API_VERSION}", tags=["Tokens"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Rate limit exceeded.",
                detail=str(exc),
            )
        ).model_dump(exclude_none=True),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with one message per offending field."""
    fields = {str(err["loc"][-1]): err["msg"] for err in exc.errors() if err.get("loc")}
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                fields=fields,
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions, router 404/405 included.

    Route handlers raise HTTPException with a dict detail; use it directly as
    the error field. Headers (WWW-Authenticate) are passed through.
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
        ).model_dump(exclude_none=True),
        headers=exc.headers,
    )


@app.exception_handler(EditConflictError)
async def edit_conflict_handler(request: Request, exc: EditConflictError) -> JSONResponse:
    """A concurrent writer won the version check. The client may retry."""
    return JSONResponse(
        status_code=409,
        content=ErrorResponse(
            error=ErrorDetail(
                code="edit_conflict",
                message="Unable to update the record due to an edit conflict, please try again.",
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(HashingFailure)
@app.exception_handler(EntropyFailure)
async def crypto_failure_handler(request: Request, exc: Exception) -> JSONResponse:
    """Hashing or randomness failed. Logged in full, reported to the client generically."""
    logger.error(
        "%s on %s %s",
        type(exc).__name__,
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return _internal_error()


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _internal_error()


def _internal_error() -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="The server encountered a problem and could not process your request.",
            )
        ).model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Exempt from rate limiting -- health checks from load balancers and
# monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get(f"/api/{API_VERSION}/health", tags=["Health"])
@limiter.exempt
async def health() -> HealthResponse:
    """Return API liveness, environment, and version."""
    return HealthResponse(system_info=SystemInfo(environment=settings.env, version=VERSION))


# ---------------------------------------------------------------------------
# Runtime metrics
# ---------------------------------------------------------------------------


@app.get(f"/api/{API_VERSION}/debug/vars", tags=["Health"])
async def debug_vars(request: Request) -> MetricsResponse:
    """Return version, thread count, DB pool status, and queued background work."""
    return MetricsResponse(
        version=VERSION,
        threads=threading.active_count(),
        database=request.app.state.stores.engine.pool.status(),
        background_tasks_in_flight=request.app.state.dispatcher.in_flight,
        timestamp=int(time.time()),
    )
