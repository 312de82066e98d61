"""
Database Routing Middleware
===========================

Per-request glue between HTTP and the data-access layer:

1. Request correlation: reads or generates X-Request-ID and binds it to the
   logging context.
2. Routing context: binds the endpoint (the matched route template, for
   performance stats, so ids in the URL never become separate keys) and the
   caller identifier (for rate limiting) so QueryRouter picks them up
   without handlers passing them explicitly.
3. Fail-fast: when the last health check found BOTH pools down, API
   requests get 503 immediately instead of queueing on dead pools.
   Health, admin and docs paths stay reachable so operators can see why.
4. Response headers: X-DB-Write-Available, X-DB-Read-Available,
   X-DB-Split-Enabled, X-Response-Time, X-Request-ID.
"""

import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Match

from src.application.services.query_router import reset_request_context, set_request_context
from src.core.config.constants import (
    DB_RETRY_AFTER_SECONDS,
    HEADER_DB_READ_AVAILABLE,
    HEADER_DB_SPLIT_ENABLED,
    HEADER_DB_WRITE_AVAILABLE,
    HEADER_REQUEST_ID,
    HEADER_RESPONSE_TIME,
)
from src.core.logging.logger import clear_request_id, get_logger, set_request_id
from src.core.resilience.rate_limiter import default_identifier
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)

EXEMPT_PREFIXES = ("/health", "/admin", "/docs", "/redoc", "/openapi.json")


def _flag(value: bool) -> str:
    return "true" if value else "false"


def route_template(request: Request) -> str | None:
    """Path template of the route serving this request, e.g. `/api/v1/products/{product_id}`."""
    partial = None
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match is Match.FULL:
            return getattr(route, "path_format", None)
        if match is Match.PARTIAL and partial is None:
            partial = getattr(route, "path_format", None)
    return partial


class DatabaseRoutingMiddleware(BaseHTTPMiddleware):
    """Binds routing context and fails fast when the database is down."""

    def __init__(self, app, base_path: str = "", identifier_fn: Callable[[Request], str] = default_identifier):
        super().__init__(app)
        self.base_path = base_path.rstrip("/")
        self.identifier_fn = identifier_fn

    def is_exempt(self, path: str) -> bool:
        if path == "/":
            return True
        if self.base_path and path.startswith(self.base_path):
            path = path[len(self.base_path):] or "/"
        return path.startswith(EXEMPT_PREFIXES)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(HEADER_REQUEST_ID) or str(uuid.uuid4())
        set_request_id(request_id)
        start_time = time.perf_counter()

        context = getattr(request.app.state, "data_access", None)
        path = request.url.path
        tokens = set_request_context(route_template(request), self.identifier_fn(request))

        try:
            health = context.pools.health if context is not None else None

            if (
                health is not None
                and context.pools.is_started
                and not health.write
                and not health.read
                and not self.is_exempt(path)
            ):
                get_metrics_collector().record_db_unavailable_rejection()
                logger.error(
                    "Both database pools unhealthy, rejecting request",
                    stage="QR.FAILFAST",
                    method=request.method,
                    path=path,
                )
                response = JSONResponse(
                    status_code=503,
                    content={
                        "error": "database_unavailable",
                        "message": "Database temporarily unavailable",
                        "request_id": request_id,
                        "retry_after": DB_RETRY_AFTER_SECONDS,
                    },
                    headers={"Retry-After": str(DB_RETRY_AFTER_SECONDS)},
                )
            else:
                response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            if health is not None:
                # Snapshot at response time, after any fallback during the request
                health = context.pools.health
                response.headers[HEADER_DB_WRITE_AVAILABLE] = _flag(health.write)
                response.headers[HEADER_DB_READ_AVAILABLE] = _flag(health.read)
                response.headers[HEADER_DB_SPLIT_ENABLED] = _flag(health.read_write_split_enabled)
            response.headers[HEADER_RESPONSE_TIME] = f"{duration_ms:.2f}ms"
            response.headers[HEADER_REQUEST_ID] = request_id

            get_metrics_collector().record_http_request(request.method, response.status_code)
            logger.info(
                f"Request completed: {request.method} {path}",
                stage="QR.HTTP",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            return response

        finally:
            reset_request_context(tokens)
            clear_request_id()
