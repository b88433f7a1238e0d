import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import arq
from arq.connections import RedisSettings
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.sessions import SessionMiddleware

from src import version
from src.app.webhooks import router as webhook_router
from src.config.settings import settings
from src.core.clients import HTTPClientManager, IdentityProviderClient
from src.core.database import async_session_maker, init_db
from src.core.errors import RoleSystemError
from src.core.logger import configure_logging
from src.domain.permissions.bundles import BundleService
from src.domain.permissions.cache import PermissionCache
from src.domain.permissions.router import router as permissions_router
from src.domain.roles.router import router as roles_router
from src.domain.users.router import router as auth_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manages the startup and shutdown lifecycle of the FastAPI application."""
    configure_logging()

    # Initialize SQLite schema and seed the default permission bundles
    await init_db()
    async with async_session_maker() as session:
        await BundleService(session, app.state.permission_cache).initialize_default_bundles()

    # Initialize ARQ Redis Pool
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    app.state.arq_pool = await arq.create_pool(redis_settings)

    yield

    # Teardown
    await app.state.arq_pool.close()
    await HTTPClientManager.teardown()


# --- Application Setup ---
app = FastAPI(
    title=settings.APP_NAME,
    debug=settings.DEBUG,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url=None,
)

# One cache and one identity client per process
app.state.permission_cache = PermissionCache()
app.state.identity_client = IdentityProviderClient()

# --- Middleware ---
# Holds the verified identity user id between requests
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.SECRET_KEY,
    max_age=3600 * 24 * 7,  # 7 days
    https_only=not settings.DEBUG,  # Allow HTTP in dev, HTTPS in prod
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """Injects a unique Request-ID into the logging context and response headers.

    Args:
        request: The incoming HTTP request.
        call_next: The next middleware or route handler in the pipeline.

    Returns:
        Response: The HTTP response with injected tracking headers.
    """
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    with logger.contextualize(request_id=request_id):
        logger.info(f"Started {request.method} {request.url.path}")
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            process_time = time.perf_counter() - start_time

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = str(process_time)

            logger.info(f"Completed {response.status_code} in {process_time:.4f}s")
            return response
        except Exception as e:
            process_time = time.perf_counter() - start_time
            logger.error(f"Request failed after {process_time:.4f}s: {e}")
            raise


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "unknown")


# --- Exception Handlers ---
@app.exception_handler(RoleSystemError)
async def role_system_exception_handler(request: Request, exc: RoleSystemError) -> JSONResponse:
    """Maps categorized domain errors onto their HTTP status and a uniform body.

    Args:
        request: The incoming HTTP request.
        exc: The raised domain error.

    Returns:
        JSONResponse: ``{"success": false, "error", "message", ...}`` at ``exc.status_code``.
    """
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_payload(), "request_id": _request_id(request)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catches unhandled exceptions and returns a standardized JSON response.

    Args:
        request: The incoming HTTP request.
        exc: The raised exception.

    Returns:
        JSONResponse: A 500 Internal Server Error payload.
    """
    logger.exception("Unhandled server exception")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred.",
            "request_id": _request_id(request),
        },
    )


# --- Routing ---
app.include_router(auth_router)
app.include_router(roles_router)
app.include_router(permissions_router)
app.include_router(webhook_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Provides a basic health check for the application.

    Returns:
        dict: The application status and name.
    """
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "version": version.VERSION,
        "build_time": version.BUILD_TIMESTAMP,
    }


@app.get("/api/v1/health", tags=["System"])
async def api_health_check(request: Request) -> dict[str, Any]:
    """Strict JSON health payload for external monitors.

    Reports live roles workers from their Redis heartbeat keys and whether the
    identity provider answers.
    """
    arq_pool = getattr(request.app.state, "arq_pool", None)
    workers_alive = 0

    if arq_pool:
        try:
            worker_keys = await arq_pool.keys("arq:worker:*")
            workers_alive = len(worker_keys)
        except Exception as e:
            logger.error(f"Failed to ping Redis for worker heartbeat: {e}")

    identity_ok, identity_detail = await request.app.state.identity_client.ping()
    status_flag = "ok" if workers_alive > 0 and identity_ok else "degraded"

    return {
        "status": status_flag,
        "service": settings.APP_NAME,
        "version": version.VERSION,
        "workers_active": workers_alive,
        "integrations": {"identity": {"status": "ok" if identity_ok else "danger", "detail": identity_detail}},
        "permission_cache": request.app.state.permission_cache.stats(),
    }
