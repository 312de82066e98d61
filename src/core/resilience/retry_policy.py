"""
Database Error Classification and Retry Policy

Decides which database failures deserve one more attempt and builds the
tenacity retrying controller used by the connection pool manager.

STAGE-RP: Retry Policy
----------------------
RP.1: Error classification (SQLSTATE / network)
RP.2: Bounded retry with capped incremental backoff

Author: System Architect
Date: 2025-12-09
"""

import errno
import logging
import socket
from enum import Enum

import asyncpg
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from src.core.config.constants import FATAL_SQLSTATES, MAX_DB_ATTEMPTS, RETRYABLE_SQLSTATES

# Tenacity needs std lib logger
std_logger = logging.getLogger(__name__)

_NETWORK_ERRNOS = frozenset({
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.EPIPE,
    errno.ETIMEDOUT,
    errno.ENETUNREACH,
    errno.EHOSTUNREACH,
})


class ErrorClass(str, Enum):
    """
    RETRYABLE: transient, one more attempt may succeed
    FATAL: never retried
    QUERY: caller's own error, propagated unchanged
    """

    RETRYABLE = "retryable"
    FATAL = "fatal"
    QUERY = "query"


def get_sqlstate(exc: BaseException) -> str | None:
    """Return the SQLSTATE carried by an asyncpg error, if any."""
    return getattr(exc, "sqlstate", None)


def classify_error(exc: BaseException) -> ErrorClass:
    """
    Classify a failure raised while talking to PostgreSQL.

    STAGE-RP.1: Error classification

    Fatal codes win over everything else. Lost connections, refused
    connections and timeouts are retryable even without a SQLSTATE.
    """
    code = get_sqlstate(exc)
    if code in FATAL_SQLSTATES:
        return ErrorClass.FATAL
    if code in RETRYABLE_SQLSTATES:
        return ErrorClass.RETRYABLE

    if isinstance(exc, asyncpg.exceptions.ConnectionDoesNotExistError):
        return ErrorClass.RETRYABLE
    if isinstance(exc, (TimeoutError, ConnectionError, socket.gaierror)):
        return ErrorClass.RETRYABLE
    if isinstance(exc, OSError) and exc.errno in _NETWORK_ERRNOS:
        return ErrorClass.RETRYABLE

    return ErrorClass.QUERY


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorClass.RETRYABLE


def create_retrying(
    base_delay: float,
    max_delay: float,
    max_attempts: int = MAX_DB_ATTEMPTS,
) -> AsyncRetrying:
    """
    Build the retrying controller for one database call.

    STAGE-RP.2: wait is min(base * attempt, cap); only RETRYABLE errors
    are retried and the last error is re-raised once attempts run out.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_incrementing(start=base_delay, increment=base_delay, max=max_delay),
        retry=retry_if_exception(is_retryable),
        before_sleep=before_sleep_log(std_logger, logging.WARNING),
        reraise=True,
    )
