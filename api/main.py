"""
api/main.py -- FastAPI application entry point for VPNWarden.

Two audiences share this app:
  /api/v1/...       administrators (X-API-Key): accounts, revocation,
                    connection log, statistics, on-demand sync
  /node-api/v1/...  gateway nodes (Bearer shared secret): session events

Run with:      uvicorn asgi:app

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the stores, the daemon client and the services on startup
and closes them on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.node import router as node_router
from auth.dependencies import require_admin
from auth.models import User
from auth.store import LocalUserStore
from core.accounts import AccountService
from core.config import LOG_DATEFMT, LOG_FORMAT, get_settings
from core.connections import ConnectionManager
from core.daemon import DaemonClient
from core.errors import StoreError
from core.expiry import ExpiryPolicy
from core.nodes import NodeDirectory
from core.reconcile import ReconciliationEngine
from credentials.store import CredentialStore

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_settings = get_settings()

logging.basicConfig(
    level=_settings.log_level.upper(),
    format=LOG_FORMAT,
    datefmt=LOG_DATEFMT,
)
logger = logging.getLogger("vpnwarden.api")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, store: CredentialStore, user_store: LocalUserStore, nodes: NodeDirectory,
                   daemon: DaemonClient) -> None:
    """Wire the services that depend on the stores into app.state.

    Shared by the real lifespan and the test fixtures so both see the same
    object graph.
    """
    settings = get_settings()
    app.state.store = store
    app.state.user_store = user_store
    app.state.nodes = nodes
    app.state.daemon = daemon
    app.state.connections = ConnectionManager(store, nodes, daemon)
    app.state.accounts = AccountService(
        store,
        app.state.connections,
        local_users=user_store,
        connection_log_retention=settings.connection_log_retention,
        user_log_retention=settings.user_log_retention,
    )
    app.state.engine = ReconciliationEngine(store, nodes, daemon, workers=settings.sync_workers)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create application resources on startup, release them on shutdown.

    An empty profile list is allowed here, unlike the sync CLI: the admin
    API is still useful, it just has no node to talk to.
    """
    settings = get_settings()
    logger.info("VPNWarden API starting up")
    store = CredentialStore(settings.database_url, ExpiryPolicy(settings.session_expiry))
    user_store = LocalUserStore(settings.database_url)
    nodes = NodeDirectory(settings.profiles)
    if not nodes.profile_ids():
        logger.warning("No VPN profiles configured -- sync and revocation will not reach any node")
    daemon = DaemonClient.from_settings(settings)
    build_services(app, store, user_store, nodes, daemon)
    logger.info("Services initialized (%d profile(s), %d node(s))", len(nodes.profile_ids()), len(nodes.node_urls()))

    yield

    daemon.close()
    store.close()
    user_store.close()
    logger.info("VPNWarden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="VPNWarden API",
    description="Gateway reconciliation, cascading revocation and connection log for VPN nodes.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in docs are replaced below by an admin-only equivalent.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://127.0.0.1"],
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
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(node_router, prefix="/node-api/v1", tags=["Node"])


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(require_admin)):
    """Swagger UI -- admin only."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="VPNWarden API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and a Retry-After header."""
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
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail; use it directly as
    the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("Credential store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="store_unavailable",
                message="The credential store is unavailable.",
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged, never returned to the client.
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
#
# Defined directly in main.py so it is always reachable. No auth, no rate
# limit -- load balancers and monitoring must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness and database reachability."""
    database = "ok" if request.app.state.store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )
