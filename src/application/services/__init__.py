"""
Application Services Package
============================

Business-facing services used by route handlers.

Controller → QueryRouter → (limiter, cache, breaker, pools, monitor)

Route handlers never reach a pool directly: every database call goes
through QueryRouter.execute_read / execute_write / execute_transaction.
"""

from src.application.services.query_router import (
    QueryRouter,
    request_endpoint_ctx,
    request_identifier_ctx,
    reset_request_context,
    set_request_context,
)

__all__ = [
    "QueryRouter",
    "request_endpoint_ctx",
    "request_identifier_ctx",
    "reset_request_context",
    "set_request_context",
]
