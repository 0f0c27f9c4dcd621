"""
api/main.py -- FastAPI application entry point for IdentityHub.

Exposes user auth, API key management, the Jira OAuth connect flow and the
findings endpoint over HTTP.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the front end origin
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, Jira client, services, state purge task)
and shutdown (cancel purge task, dispose engines) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.findings import router as findings_router
from api.routes.v1.jira import router as jira_router
from auth.apikeys import ApiKeyManager
from auth.codec import SecretCodec
from auth.dependencies import get_current_identity
from auth.ledger import OAuthStateLedger
from auth.models import SessionIdentity
from auth.store import UserStore
from core.config import get_settings
from core.errors import DomainError, ValidationError
from tracker.client import JiraClient
from tracker.findings import FindingService
from tracker.handshake import OAuthHandshake
from tracker.lifecycle import TokenLifecycleManager

APP_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("identityhub.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    user_store: UserStore,
    ledger: OAuthStateLedger,
    jira_client: JiraClient,
    clock: Callable[[], float] = time.time,
) -> None:
    """Build the service graph on top of the given stores and attach it to app.state.

    Shared by the real lifespan and the test lifespan so both run the exact
    same composition; tests only swap the stores, the HTTP session and the clock.
    """
    codec = SecretCodec(_settings.secret_key)
    lifecycle = TokenLifecycleManager(user_store, jira_client, codec, clock=clock)
    app.state.user_store = user_store
    app.state.ledger = ledger
    app.state.jira_client = jira_client
    app.state.codec = codec
    app.state.api_keys = ApiKeyManager(user_store)
    app.state.lifecycle = lifecycle
    app.state.handshake = OAuthHandshake(user_store, ledger, jira_client, codec, clock=clock)
    app.state.findings = FindingService(lifecycle)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired OAuth states every OAUTH_STATE_PURGE_SECONDS.

    Expiry is enforced at consume time regardless; this loop only keeps the
    table small. CancelledError from task.cancel() during shutdown propagates
    out of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(_settings.oauth_state_purge_seconds)
        try:
            removed = await asyncio.to_thread(app.state.ledger.purge_expired)
        except SQLAlchemyError:
            # Retried next round.
            logger.exception("OAuth state purge failed")
            continue
        if removed:
            logger.info("Purged %d expired OAuth states", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The purge task starts last because it references app.state.ledger.
    """
    logger.info("IdentityHub API starting up")
    if not _settings.jira_client_id or not _settings.jira_client_secret:
        logger.warning("JIRA_CLIENT_ID / JIRA_CLIENT_SECRET not set -- Jira connect will fail")
    wire_services(app, UserStore(), OAuthStateLedger(), JiraClient(_settings))
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.jira_client.close()
    app.state.ledger.close()
    app.state.user_store.close()
    logger.info("IdentityHub API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="IdentityHub API",
    description="User auth, API keys, Jira Cloud connection, and NHI findings.",
    version=APP_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by session-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack -- register in the order the request should meet them.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.frontend_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(jira_router, prefix="/api/v1", tags=["Jira"])
app.include_router(findings_router, prefix="/api/v1", tags=["Findings"])


@app.get("/docs", include_in_schema=False)
async def docs(identity: SessionIdentity = Depends(get_current_identity)):
    """Swagger UI -- requires a session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="IdentityHub API")


@app.get("/redoc", include_in_schema=False)
async def redoc(identity: SessionIdentity = Depends(get_current_identity)):
    """ReDoc UI -- requires a session."""
    return get_redoc_html(openapi_url="/openapi.json", title="IdentityHub API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_payload()})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(exclude_none=True),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


def _violation(error: dict) -> str:
    loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
    field = ".".join(loc) or "request"
    return f"{field}: {error.get('msg', 'invalid value')}"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 listing one violation per failing field, each naming the field."""
    error = ValidationError([_violation(e) for e in exc.errors()])
    return JSONResponse(status_code=error.status_code, content={"error": error.to_payload()})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for FastAPI/Starlette HTTP exceptions.

    When detail is already a dict, use it directly as the error field --
    str(dict) would produce a Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(exclude_none=True),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(exclude_none=True),
    )


# ---------------------------------------------------------------------------
# Health endpoint -- defined here so it is reachable regardless of router
# state. No rate limit: load balancer probes must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check database probe failed")
        database = "error"
    return HealthResponse(version=APP_VERSION, components={"app": "ok", "database": database})
