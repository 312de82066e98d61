"""
Middleware Package
==================

AVAILABLE MIDDLEWARE:
---------------------
1. error_handler: exception handlers for data-access errors plus a
   last-resort 500 middleware
2. database_routing: request id, routing context, both-pools-down
   fail-fast and X-DB-* headers

MIDDLEWARE ORDERING:
--------------------
Starlette runs middleware in REVERSE order of registration (last added =
outermost). `setup_middleware` adds database routing first and error
handling last, so the error middleware wraps everything:

Request flow:  Client → ErrorHandling → DatabaseRouting → Handler
Response flow: Handler → DatabaseRouting → ErrorHandling → Client
"""

from fastapi import FastAPI

from src.core.config.settings import Settings, get_settings
from src.core.logging.logger import get_logger

from .database_routing import DatabaseRoutingMiddleware
from .error_handler import add_error_handling_middleware, register_exception_handlers

logger = get_logger(__name__)


def setup_middleware(app: FastAPI, settings: Settings | None = None) -> None:
    """Register exception handlers and middleware in the correct order."""
    settings = settings or get_settings()

    register_exception_handlers(app)
    app.add_middleware(DatabaseRoutingMiddleware, base_path=settings.app.API_BASE_PATH)
    add_error_handling_middleware(
        app, include_traceback=(settings.app.ENVIRONMENT == "development")
    )

    logger.info("All middleware components registered successfully", stage="APP.0")


__all__ = [
    "setup_middleware",
    "DatabaseRoutingMiddleware",
    "add_error_handling_middleware",
    "register_exception_handlers",
]
