#!/usr/bin/env python3
"""
FastAPI Application Entry Point

This is the main entry point for the E-commerce Data Access Service.
It configures the FastAPI application, middleware, and routes, and owns
the lifecycle of the DataAccessContext (pools, Redis, breakers, limiters,
cache, performance monitor).

Author: Senior Solution Architect
Date: 2025-12-05
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.application.api.middleware import setup_middleware
from src.application.api.routes.admin import router as admin_router
from src.application.api.routes.health import router as health_router
from src.application.context import DataAccessContext
from src.core.config.constants import (
    HEADER_DB_READ_AVAILABLE,
    HEADER_DB_SPLIT_ENABLED,
    HEADER_DB_WRITE_AVAILABLE,
    HEADER_RATE_LIMIT,
    HEADER_RATE_REMAINING,
    HEADER_RATE_RESET,
    HEADER_REQUEST_ID,
    HEADER_RESPONSE_TIME,
)
from src.core.config.settings import Settings, get_settings
from src.core.logging.logger import get_logger, setup_logging

logger = get_logger(__name__)


# ============================================================================
# Application Lifespan
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle (startup and shutdown).

    A context assigned to `app.state.data_access` before startup (tests) is
    started if needed and left open at shutdown.
    """
    settings: Settings = app.state.settings

    setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)

    logger.info(
        "Starting E-commerce Data Access Service",
        stage="APP.0",
        environment=settings.app.ENVIRONMENT,
        version=settings.app.APP_VERSION,
    )

    owned = getattr(app.state, "data_access", None) is None
    if owned:
        app.state.data_access = DataAccessContext.create(settings)
    if not app.state.data_access.is_started:
        await app.state.data_access.start()

    logger.info("Application startup complete", stage="APP.0")

    try:
        yield
    finally:
        logger.info("Shutting down application", stage="APP.2")
        if owned:
            await app.state.data_access.close()
            app.state.data_access = None
        logger.info("Application shutdown complete", stage="APP.2")


# ============================================================================
# Application Factory
# ============================================================================


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app.APP_NAME,
        version=settings.app.APP_VERSION,
        description="Resilient data-access layer: read/write routing, circuit breaking, "
        "rate limiting and query caching",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings

    # ========================================================================
    # MIDDLEWARE REGISTRATION
    # ========================================================================
    # Middleware is executed in REVERSE order of registration. CORS is added
    # before setup_middleware so error responses and fail-fast 503s still
    # pass through it on the way out.

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.app.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            HEADER_REQUEST_ID,
            HEADER_RESPONSE_TIME,
            HEADER_RATE_LIMIT,
            HEADER_RATE_REMAINING,
            HEADER_RATE_RESET,
            HEADER_DB_WRITE_AVAILABLE,
            HEADER_DB_READ_AVAILABLE,
            HEADER_DB_SPLIT_ENABLED,
            "Retry-After",
        ],
    )
    setup_middleware(app, settings)

    # ========================================================================
    # ROUTER REGISTRATION
    # ========================================================================
    # All endpoints are prefixed with API_BASE_PATH (default: /api/v1), e.g.
    # GET /api/v1/health/database, GET /api/v1/admin/performance

    base_path = settings.app.API_BASE_PATH
    app.include_router(health_router, prefix=base_path)
    app.include_router(admin_router, prefix=base_path)

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": settings.app.APP_NAME,
            "version": settings.app.APP_VERSION,
            "environment": settings.app.ENVIRONMENT,
            "docs": "/docs",
            "health": f"{base_path}/health",
        }

    return app


# Create application instance
app = create_app()


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "src.application.app:app",
        host=settings.app.API_HOST,
        port=settings.app.API_PORT,
        reload=settings.app.ENVIRONMENT == "development",
        log_level=settings.logging.LOG_LEVEL.lower(),
    )
