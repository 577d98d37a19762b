"""
api/main.py -- FastAPI application entry point for DashGate.

Run with:      uvicorn asgi:app
               python main.py serve

Middleware stack (outermost to innermost, see "Middleware stack" below):
  1. log_requests              -- one access-log line per request
  2. SecurityHeadersMiddleware -- CSP nonce + hardening headers
  3. CSRFMiddleware            -- double-submit cookie check
  4. MaxBodySizeMiddleware     -- MAX_BODY_BYTES cap on non-safe methods
  5. SlowAPIMiddleware         -- per-route rate limits from api.limiter

Lifespan handles startup (store, settings, static config, discovery, background
loops) and shutdown (cancel loops, stop sources, close the store) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter, prune_storage
from api.middleware import CSRFMiddleware, MaxBodySizeMiddleware, SecurityHeadersMiddleware
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.admin_apikeys import router as admin_apikeys_router
from api.routes.admin_config import router as admin_config_router
from api.routes.admin_discovery import router as admin_discovery_router
from api.routes.admin_users import router as admin_users_router
from api.routes.auth import router as auth_router
from api.routes.dashboard import router as dashboard_router
from auth.crypto import resolve_encryption_key
from auth.resolver import IdentityResolver
from auth.sessions import SessionManager
from auth.settings import SettingsManager
from auth.store import CredentialStore, open_store
from auth.verifier import CredentialVerifier
from core.appconfig import AppCatalog, ConfigFileError
from core.config import VERSION, Settings, get_settings
from discovery.manager import DiscoveryManager
from discovery.overrides import OverrideCache
from health.probe import HealthProbe

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("dashgate.api")

SESSION_SWEEP_INTERVAL = 60 * 60
LIMITER_PRUNE_INTERVAL = 5 * 60

# ---------------------------------------------------------------------------
# Background loops
# ---------------------------------------------------------------------------


async def _session_sweep_loop(app: FastAPI) -> None:
    """Delete expired sessions and stale OIDC states every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(SESSION_SWEEP_INTERVAL)
        try:
            removed = app.state.sessions.sweep()
            if removed:
                logger.info("Session sweep removed %d expired sessions", removed)
        except Exception:
            logger.exception("Session sweep failed")


async def _limiter_prune_loop() -> None:
    while True:
        await asyncio.sleep(LIMITER_PRUNE_INTERVAL)
        prune_storage()


# ---------------------------------------------------------------------------
# State wiring
# ---------------------------------------------------------------------------


def init_state(
    app: FastAPI,
    store: CredentialStore,
    env: Settings,
    key: bytes,
    oidc_discover=None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Build every long-lived component and hang it on app.state.

    No task is started here; lifespan does that. Tests call this directly
    with in-memory stores and a MockTransport.
    """
    if oidc_discover is None:
        settings_manager = SettingsManager(store, key, env)
    else:
        settings_manager = SettingsManager(store, key, env, oidc_discover=oidc_discover)
    settings_manager.load()

    catalog = AppCatalog.from_files(env.config_path, env.resolved_mappings_path)
    overrides = OverrideCache(store)
    overrides.load()
    discovery = DiscoveryManager(settings_manager.current, overrides, env.discovery_pins(), transport=transport)

    app.state.env = env
    app.state.store = store
    app.state.settings_manager = settings_manager
    app.state.resolver = IdentityResolver.default(store, settings_manager.runtime)
    app.state.verifier = CredentialVerifier(store)
    app.state.sessions = SessionManager(store)
    app.state.catalog = catalog
    app.state.overrides = overrides
    app.state.discovery = discovery
    app.state.probe = HealthProbe(lambda: catalog.all_urls() + discovery.all_urls(), transport=transport)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup order:
    1. Store -- fatal on failure; everything else reads from it.
    2. Encryption key -- needed to decrypt stored settings.
    3. Settings, static config, overrides (init_state).
    4. OIDC bootstrap -- network, failure only logged.
    5. Discovery sources, health probe, sweep and prune loops.
    """
    env = get_settings()
    logger.info("DashGate %s starting up", VERSION)

    store = open_store(env.db_path)
    key = resolve_encryption_key(store, env.encryption_key)
    init_state(app, store, env, key)

    runtime = app.state.settings_manager.runtime()
    logger.info(
        "Auth initialized (mode=%s, local=%s, ldap=%s, oidc=%s, proxy=%s, setup_required=%s)",
        runtime.mode,
        runtime.local_enabled,
        runtime.ldap_enabled,
        runtime.oidc_enabled,
        runtime.proxy_enabled,
        app.state.settings_manager.needs_setup(),
    )
    if runtime.oidc_enabled:
        await app.state.settings_manager.bootstrap_oidc()

    await app.state.discovery.sync(app.state.settings_manager.current())
    app.state.tasks = [
        asyncio.create_task(_session_sweep_loop(app), name="session-sweep"),
        asyncio.create_task(app.state.probe.run_forever(), name="health-probe"),
        asyncio.create_task(_limiter_prune_loop(), name="limiter-prune"),
    ]

    yield

    for task in app.state.tasks:
        task.cancel()
    await asyncio.gather(*app.state.tasks, return_exceptions=True)
    await app.state.discovery.stop_all()
    store.close()
    logger.info("DashGate shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="DashGate",
    description="Self-hosted application dashboard with unified authentication.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() inserts at the front of the stack, so the LAST call wraps
# everything registered before it. Registered innermost first:
# SlowAPI -> body cap -> CSRF -> security headers, then log_requests.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)
app.add_middleware(MaxBodySizeMiddleware, max_bytes=get_settings().max_body_bytes)
app.add_middleware(CSRFMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

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

app.include_router(auth_router, tags=["Auth"])
app.include_router(dashboard_router, tags=["Dashboard"])
app.include_router(admin_users_router, prefix="/api/admin", tags=["Admin"])
app.include_router(admin_apikeys_router, prefix="/api/admin", tags=["Admin"])
app.include_router(admin_config_router, prefix="/api/admin", tags=["Admin"])
app.include_router(admin_discovery_router, prefix="/api/admin", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _retry_after(request: Request) -> int:
    """Seconds until the exhausted window resets, from the limit slowapi recorded."""
    view = getattr(request.state, "view_rate_limit", None)
    if view is None:
        return 60
    reset_at, _remaining = limiter.limiter.get_window_stats(view[0], *view[1])
    return max(1, math.ceil(reset_at - time.time()))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After in seconds."""
    retry_after = _retry_after(request)
    logger.warning(
        "Rate limit exceeded for %s on %s",
        request.client.host if request.client else "unknown",
        request.url.path,
    )
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many attempts. Please try again later.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
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


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail={"code", "message"}. When
    detail is already a dict it becomes the error field as-is.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=headers,
    )


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """Unique-constraint violations that slipped past a route's own check."""
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(
        status_code=409,
        content=ErrorResponse(error=ErrorDetail(code="conflict", message="Resource already exists.")).model_dump(),
    )


@app.exception_handler(ConfigFileError)
async def config_file_error_handler(request: Request, exc: ConfigFileError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(error=ErrorDetail(code="invalid_config", message=str(exc))).model_dump(),
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
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Liveness
#
# Defined directly in main.py so it is reachable regardless of router state.
# No rate limit and no CSRF cookie: container health checkers poll it.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return liveness and current version."""
    return HealthResponse(version=VERSION)
