"""
Main FastAPI application entry point.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

# Import custom middleware
from federation.middleware import RequestResponseLoggingMiddleware, SecurityHeadersMiddleware

# Import dependencies for injection
from federation.core.cache import close_redis
from federation.core.config import get_cors_headers, get_cors_methods, get_cors_origins, settings
from federation.core.database import close_db, init_db
from federation.core.dependencies import get_webhook_dispatcher, shutdown_webhook_dispatcher
from federation.core.errors import OAuth2Error, StorageUnavailable, create_oauth2_error_response
from federation.core.reaper import ExpiryReaper

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown events
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events."""
    # Startup
    init_db()
    logger.info("Database schema ready")

    tasks = []
    if settings.reaper_enabled:
        tasks.append(asyncio.create_task(ExpiryReaper(settings=settings).run_forever()))
        logger.info("Started background expiry reaper")
    tasks.append(asyncio.create_task(schedule_webhook_retries()))
    logger.info("Started background webhook retry task")

    yield

    # Shutdown
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    shutdown_webhook_dispatcher()
    close_redis()
    close_db()
    logger.info("Background tasks stopped and connections closed")


async def schedule_webhook_retries():
    """Re-enqueue failed webhook deliveries once their backoff has elapsed."""
    while True:
        await asyncio.sleep(settings.webhook_retry_interval_seconds)
        try:
            await asyncio.to_thread(get_webhook_dispatcher().retry_due)
        except Exception as e:
            logger.error(f"Error scheduling webhook retries: {e}")


def register_exception_handlers(app: FastAPI):
    """Install the error handlers shared by the main app and test apps."""

    # OAuth2 exception handler
    @app.exception_handler(OAuth2Error)
    async def oauth2_exception_handler(request: Request, exc: OAuth2Error):
        """Handle OAuth2 errors according to RFC 6749."""
        logger.warning(f"OAuth2 error on {request.url.path}: {exc.error} - {exc.error_description}")
        return create_oauth2_error_response(exc)

    @app.exception_handler(OperationalError)
    async def storage_exception_handler(request: Request, exc: OperationalError):
        logger.error(f"Storage unavailable on {request.url.path}: {exc}")
        return create_oauth2_error_response(StorageUnavailable())

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Global exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error" if not settings.debug else str(exc), "type": "internal_error"},
        )


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Identity Federation Service",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan,
)

# Add CORS middleware
if settings.cors_enabled:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(),
        allow_credentials=settings.cors_credentials,
        allow_methods=get_cors_methods(),
        allow_headers=get_cors_headers(),
    )

# Add security headers middleware
app.add_middleware(SecurityHeadersMiddleware)
logger.info("Security headers middleware enabled")

# Add request/response logging middleware
app.add_middleware(
    RequestResponseLoggingMiddleware,
    enable_logging=settings.debug or settings.app_env in ["development", "staging"],
)

register_exception_handlers(app)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with service information."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "description": "Identity Federation Service",
        "docs": "/docs" if settings.debug else None,
        "health": "/health",
    }


# Include API routers
from federation.routers import include_routers  # noqa: E402

include_routers(app)

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "federation.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
