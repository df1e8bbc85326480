import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Iterable, Mapping, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.app.api.health import router as health_router
from backend.app.api.routes import AUTH_LIMITED_PATHS, discover_routers, mount_routers
from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.logging import get_logger, setup_logging
from backend.app.db.mongo import MongoDatabase
from backend.app.exceptions import BackendError, DatabaseConnectionError
from backend.app.middleware.access_log import FORMAT_COMBINED, FORMAT_DEV, AccessLogMiddleware
from backend.app.middleware.body_parser import BodyParserMiddleware
from backend.app.middleware.cors import CorsGateMiddleware, CorsPolicy, cors_options
from backend.app.middleware.error_handler import UnhandledErrorMiddleware, unhandled_error_response
from backend.app.middleware.rate_limit import (
    RateLimiter,
    RateLimitMiddleware,
    auth_rule,
    general_rule,
)
from backend.app.middleware.request_id import RequestIdMiddleware
from backend.app.middleware.security_headers import SecurityHeadersMiddleware

logger = get_logger(__name__)


def ensure_upload_dirs(settings: Settings) -> None:
    """Create the static upload directories if they are missing."""
    settings.uploads_leaves_dir.mkdir(parents=True, exist_ok=True)


def is_route_miss(request: Request) -> bool:
    """True when no route matched, or a static mount found no file.

    A 404 raised by a route module keeps its own detail.
    """
    endpoint = request.scope.get("endpoint")
    return endpoint is None or isinstance(endpoint, StaticFiles)


async def cleanup_rate_limiters(limiters: Iterable[RateLimiter], interval: float) -> None:
    """Drop expired limiter windows every `interval` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        for limiter in limiters:
            try:
                await limiter.cleanup()
            except Exception as e:
                logger.warning(f"Rate limiter cleanup failed for '{limiter.rule.name}': {e}")


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[MongoDatabase] = None,
    routers: Optional[Mapping[str, APIRouter]] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Resolved settings (defaults to the global instance)
        database: Database handle; when it is already connected the caller
            owns its lifecycle, otherwise the app lifespan connects and
            closes it
        routers: Collaborator routers by module name; discovered from
            ``settings.routes_package`` when omitted

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or default_settings

    setup_logging(settings)

    database = database or MongoDatabase.from_settings(settings)
    general_limiter = RateLimiter.from_settings(general_rule(settings), settings)
    auth_limiter = RateLimiter.from_settings(auth_rule(settings), settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Refuses to start without a database connection, sweeps expired
        limiter windows while running and releases the limiter backends on
        shutdown.
        """
        owns_connection = not database.is_connected
        if owns_connection:
            try:
                await database.connect()
            except DatabaseConnectionError as e:
                logger.error(e.message)
                raise RuntimeError("Cannot connect to database") from e

        cleanup_task = asyncio.create_task(
            cleanup_rate_limiters(
                (general_limiter, auth_limiter),
                interval=settings.rate_limit_window_seconds,
            )
        )

        logger.info(
            "Application startup complete",
            extra={
                "environment": settings.node_env,
                "mounted_routes": app.state.mounted_routes,
            }
        )

        yield

        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass

        await general_limiter.close()
        await auth_limiter.close()

        if owns_connection:
            await database.close()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Attendance Backend",
        description="Employee attendance and leave management API",
        version="1.0.0",
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.database = database
    app.state.rate_limiters = {
        general_limiter.rule.name: general_limiter,
        auth_limiter.rule.name: auth_limiter,
    }

    cors_policy = CorsPolicy.from_settings(settings)

    # Add middleware (order matters: last added = first executed)
    # Body parser (innermost - closest to the routes)
    app.add_middleware(BodyParserMiddleware, max_body_size=settings.body_limit_bytes)

    # Uncaught route errors become the 500 envelope inside the pipeline
    app.add_middleware(UnhandledErrorMiddleware, production=settings.is_production)

    # CORS headers and preflight answers for allowed origins
    app.add_middleware(
        CORSMiddleware,
        **cors_options(cors_policy, max_age=settings.cors_max_age),
    )

    # CORS policy gate, rejection is terminal
    app.add_middleware(CorsGateMiddleware, policy=cors_policy)

    # Access log, after the limiters so rejected floods are not logged
    app.add_middleware(
        AccessLogMiddleware,
        log_format=FORMAT_DEV if settings.is_development else FORMAT_COMBINED,
    )

    # Auth limiter, counts failed login and registration attempts only
    app.add_middleware(
        RateLimitMiddleware,
        limiter=auth_limiter,
        paths=AUTH_LIMITED_PATHS,
        trust_proxy=settings.trust_proxy,
    )

    # General limiter for every API path
    app.add_middleware(
        RateLimitMiddleware,
        limiter=general_limiter,
        paths=("/api",),
        trust_proxy=settings.trust_proxy,
    )

    # Security headers (outermost stage of the pipeline)
    app.add_middleware(SecurityHeadersMiddleware)

    # Request ID for tracing, wraps everything so rejections carry it too
    app.add_middleware(RequestIdMiddleware)

    # Static uploads, the more specific mount first
    ensure_upload_dirs(settings)
    app.mount(
        "/api/uploads/leaves",
        StaticFiles(directory=settings.uploads_leaves_dir),
        name="leave_uploads",
    )
    app.mount(
        "/api/uploads",
        StaticFiles(directory=settings.uploads_dir),
        name="uploads",
    )

    app.include_router(health_router)

    if routers is None:
        routers = discover_routers(settings.routes_package)
    app.state.mounted_routes = mount_routers(app, routers)

    @app.exception_handler(BackendError)
    async def backend_error_handler(request: Request, exc: BackendError) -> JSONResponse:
        """Handle BackendError raised by route modules."""
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle HTTP errors, including the catch-all route miss."""
        if exc.status_code == 404 and is_route_miss(request):
            path = request.url.path
            if request.url.query:
                path = f"{path}?{request.url.query}"
            content = {"success": False, "error": "Route not found", "path": path}
        else:
            content = {"success": False, "error": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle request validation failures and return HTTP 400."""
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Validation failed",
                "details": jsonable_encoder(exc.errors()),
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Last resort for errors raised outside UnhandledErrorMiddleware."""
        return unhandled_error_response(request, exc, settings.is_production)

    return app


# Create the application instance
app = create_app()
