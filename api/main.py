"""
api/main.py -- FastAPI application entry point for Storegate.

Exposes the trust and policy layer (tenant resolution, authentication,
catalog and promotion enforcement) over HTTP for the storefronts and the
admin tools.

Run with:      uvicorn asgi:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter
  3. log_requests       -- one access log line per request
  4. resolve_tenant     -- Host header -> request.state.site, once per request

There is no TrustedHostMiddleware: every registered storefront domain is a
valid Host. Unknown hosts resolve to no site and tenant-scoped routes answer
404 instead.

Lifespan builds every store and service from Settings on startup and closes
them in reverse on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.catalog import router as catalog_router
from api.routes.v1.promotions import router as promotions_router
from api.routes.v1.sites import router as sites_router
from auth.audit import AuditLog
from auth.dependencies import get_current_user
from auth.errors import ServiceUnavailableError
from auth.models import AuthenticatedUser
from auth.roles import RoleLedger
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import IdentityStore
from cache.store import MemoryTTLCache
from core.config import get_settings
from enforcement.engine import EnforcementEngine
from enforcement.store import CommerceStore
from tenancy.resolver import DomainResolver
from tenancy.store import SiteStore

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("storegate.api")

# Paths that never need a tenant. Load balancers hit health by IP.
_TENANT_EXEMPT = ("/api/v1/health", "/docs", "/redoc", "/openapi.json")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: float) -> None:
    """Drop expired domain cache entries once per TTL window.

    Expired entries are already ignored on read; this only bounds memory for
    domains that are never requested again. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(interval)
        purged = app.state.domain_cache.purge_expired()
        if purged:
            logger.debug("Purged %d expired domain cache entries", purged)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build stores and services on startup, release them on shutdown.

    Startup order follows the dependency graph: identity store and audit log
    first, then the role ledger and session manager that use them, then the
    auth service on top. Tenancy and enforcement are independent of auth
    except for the shared audit log.
    """
    settings = get_settings()
    url, timeout = settings.database_url, settings.store_timeout_seconds
    logger.info("Storegate API starting up")

    app.state.session_cookie_name = settings.session_cookie_name
    app.state.identity_store = IdentityStore(url, timeout)
    app.state.audit = AuditLog(url, timeout)
    roles = RoleLedger(app.state.identity_store)
    # Session activity writes run off the request path.
    app.state.session_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="session-touch")
    sessions = SessionManager(
        app.state.identity_store,
        roles,
        app.state.audit,
        duration=timedelta(hours=settings.session_duration_hours),
        executor=app.state.session_executor,
    )
    app.state.auth_service = AuthService(
        app.state.identity_store,
        sessions,
        roles,
        app.state.audit,
        password_min_length=settings.password_min_length,
        lockout_threshold=settings.lockout_threshold,
        lockout_duration=timedelta(minutes=settings.lockout_minutes),
    )
    logger.info("Auth initialized (lockout_threshold=%d)", settings.lockout_threshold)

    app.state.site_store = SiteStore(url, timeout)
    app.state.domain_cache = MemoryTTLCache(ttl=settings.domain_cache_ttl_seconds)
    app.state.resolver = DomainResolver(app.state.site_store, app.state.domain_cache)
    logger.info("Domain resolver initialized (ttl=%ds)", settings.domain_cache_ttl_seconds)

    app.state.commerce_store = CommerceStore(url, timeout)
    app.state.enforcement = EnforcementEngine(app.state.commerce_store, audit=app.state.audit)
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.domain_cache_ttl_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.session_executor.shutdown(wait=True)
    app.state.commerce_store.close()
    app.state.site_store.close()
    app.state.audit.close()
    app.state.identity_store.close()
    logger.info("Storegate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Storegate API",
    description="Tenant resolution, authentication and catalog enforcement for multi-site storefronts.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def resolve_tenant(request: Request, call_next):
    """Resolve the Host header to a site once and store it on request.state.site.

    None is stored for unknown hosts so dependencies do not resolve again.
    The lookup may hit the database, so it runs in the thread pool.
    """
    if request.url.path not in _TENANT_EXEMPT:
        resolver: DomainResolver | None = getattr(request.app.state, "resolver", None)
        if resolver is not None:
            request.state.site = await run_in_threadpool(resolver.resolve_from_host, request.headers.get("host"))
    return await call_next(request)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %s %d %.1fms %s",
        request.method,
        request.headers.get("host", "-"),
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
app.include_router(catalog_router, prefix="/api/v1", tags=["Catalog"])
app.include_router(promotions_router, prefix="/api/v1", tags=["Promotions"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: AuthenticatedUser = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Storegate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: AuthenticatedUser = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Storegate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After when a rate limit is exceeded."""
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


@app.exception_handler(ServiceUnavailableError)
async def service_unavailable_handler(request: Request, exc: ServiceUnavailableError) -> JSONResponse:
    """Store failures during signup and login. The cause is already logged by the service."""
    response = JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="service_unavailable",
                message=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = "5"
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail ({"code", "message"}).
    A dict is used directly as the error field; anything else is wrapped.
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


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
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
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit and no tenant: load balancers call it by IP.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Liveness plus a database round-trip through each store."""
    components = {"app": "ok"}
    stores = {
        "database": getattr(request.app.state, "identity_store", None),
        "sites": getattr(request.app.state, "site_store", None),
        "catalog": getattr(request.app.state, "commerce_store", None),
    }
    for name, store in stores.items():
        if store is None:
            components[name] = "error"
            continue
        try:
            store.ping()
            components[name] = "ok"
        except SQLAlchemyError:
            logger.exception("Health check failed for %s", name)
            components[name] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
