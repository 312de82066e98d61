"""
Error Handling Middleware
=========================

Two layers turn exceptions into HTTP responses:

1. Exception handlers (`register_exception_handlers`) translate the known
   data-access errors into status codes with retry hints:

   RateLimitExceededError    → 429 + Retry-After + X-RateLimit-*
   CircuitBreakerOpenError   → 503 + Retry-After (breaker cooldown left)
   DatabaseUnavailableError  → 503 + Retry-After: 5
   FatalDatabaseError        → 503 (no retry hint)
   InvalidResourceTypeError  → 400
   any other DataAccessError → 500

2. ErrorHandlingMiddleware is the last line of defense for anything else:
   full details are logged server-side, the client gets a generic 500 body
   (traceback only when running in development).
"""

import math
import traceback
from collections.abc import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.core.config.constants import (
    DB_RETRY_AFTER_SECONDS,
    HEADER_RATE_LIMIT,
    HEADER_RATE_REMAINING,
    HEADER_RATE_RESET,
    HEADER_REQUEST_ID,
)
from src.core.exceptions import (
    CircuitBreakerOpenError,
    DataAccessError,
    DatabaseUnavailableError,
    FatalDatabaseError,
    InvalidResourceTypeError,
    RateLimitExceededError,
)
from src.core.logging.logger import get_logger, get_request_id
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)


def _retry_after(seconds: float | None, default: int = DB_RETRY_AFTER_SECONDS) -> str:
    if seconds is None:
        return str(default)
    return str(max(1, math.ceil(seconds)))


def _error_response(status_code: int, exc: DataAccessError, headers: dict[str, str] | None = None) -> JSONResponse:
    request_id = exc.request_id or get_request_id()
    body = exc.to_dict()
    body["request_id"] = request_id
    all_headers = {HEADER_REQUEST_ID: request_id} if request_id else {}
    all_headers.update(headers or {})
    return JSONResponse(status_code=status_code, content=body, headers=all_headers)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================


async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    """Handle rate limit exceeded errors."""
    headers = {"Retry-After": _retry_after(exc.retry_after, default=1)}
    if exc.limit is not None:
        headers[HEADER_RATE_LIMIT] = str(exc.limit)
        headers[HEADER_RATE_REMAINING] = "0"
        headers[HEADER_RATE_RESET] = headers["Retry-After"]

    logger.warning(
        "Rate limit exceeded",
        stage="APP.429",
        path=request.url.path,
        identifier=exc.identifier,
        limit=exc.limit,
    )
    return _error_response(429, exc, headers)


async def circuit_open_handler(request: Request, exc: CircuitBreakerOpenError) -> JSONResponse:
    logger.warning(
        "Request shed by open circuit",
        stage="APP.503",
        path=request.url.path,
        breaker=exc.details.get("breaker"),
    )
    return _error_response(503, exc, {"Retry-After": _retry_after(exc.retry_after)})


async def database_unavailable_handler(request: Request, exc: DatabaseUnavailableError) -> JSONResponse:
    logger.error(
        "Database unavailable",
        stage="APP.503",
        path=request.url.path,
        error=exc.message,
        code=exc.code,
    )
    return _error_response(503, exc, {"Retry-After": str(DB_RETRY_AFTER_SECONDS)})


async def fatal_database_handler(request: Request, exc: FatalDatabaseError) -> JSONResponse:
    logger.error(
        "Fatal database error",
        stage="APP.503",
        path=request.url.path,
        error=exc.message,
        code=exc.code,
    )
    return _error_response(503, exc)


async def invalid_resource_handler(request: Request, exc: InvalidResourceTypeError) -> JSONResponse:
    return _error_response(400, exc)


async def data_access_handler(request: Request, exc: DataAccessError) -> JSONResponse:
    logger.error(
        f"Data access error: {exc.message}",
        stage="APP.500",
        path=request.url.path,
        error_type=type(exc).__name__,
    )
    get_metrics_collector().record_error(type(exc).__name__, "data_access")
    return _error_response(500, exc)


def register_exception_handlers(app: FastAPI) -> None:
    """Starlette picks the handler of the most specific class in the MRO."""
    app.add_exception_handler(RateLimitExceededError, rate_limit_handler)
    app.add_exception_handler(CircuitBreakerOpenError, circuit_open_handler)
    app.add_exception_handler(DatabaseUnavailableError, database_unavailable_handler)
    app.add_exception_handler(FatalDatabaseError, fatal_database_handler)
    app.add_exception_handler(InvalidResourceTypeError, invalid_resource_handler)
    app.add_exception_handler(DataAccessError, data_access_handler)


# ============================================================================
# LAST-RESORT MIDDLEWARE
# ============================================================================


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for centralized error handling and formatting.

    Catches every exception not handled by route handlers, other middleware
    or the exception handlers above, so no unhandled exception reaches the
    server and no stack trace leaks outside development.
    """

    def __init__(self, app, include_traceback: bool = False):
        """
        Initialize error handling middleware.

        Args:
            app: The ASGI application
            include_traceback: Whether to include stack traces in error responses
                              (should be False in production for security)
        """
        super().__init__(app)
        self.include_traceback = include_traceback

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except Exception as e:
            method = request.method
            path = request.url.path
            error_type = type(e).__name__

            logger.error(
                f"Unhandled exception in request: {method} {path}",
                method=method,
                path=path,
                error_type=error_type,
                error_message=str(e),
                exc_info=True,
            )

            get_metrics_collector().record_error(error_type, "unhandled_exception")

            error_response = {
                "error": "internal_server_error",
                "message": "An unexpected error occurred while processing your request",
                "error_type": error_type,
                "request_id": get_request_id(),
            }

            if self.include_traceback:
                error_response["traceback"] = traceback.format_exc()
                error_response["detail"] = str(e)

            return JSONResponse(status_code=500, content=error_response)


def add_error_handling_middleware(app: FastAPI, include_traceback: bool = False) -> None:
    """
    Add error handling middleware to the FastAPI application.

    Should be added LAST so it runs first and wraps everything else.
    """
    app.add_middleware(ErrorHandlingMiddleware, include_traceback=include_traceback)
    logger.info("Error handling middleware registered", include_traceback=include_traceback)
