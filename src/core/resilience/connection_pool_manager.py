"""
Connection Pool Manager with Read/Write Splitting.

This module owns the two PostgreSQL connection pools and decides, per
operation, which one serves it:
- Write pool (primary) for every write and transaction
- Read pool (replica) for reads while the replica is healthy
- Automatic fallback of reads to the write pool
- Bounded retry of transient failures (one retry, capped backoff)
- Periodic liveness probes with atomic health replacement
- Comprehensive stage-based logging

STAGE-CP: Connection Pool Management
-------------------------------------
CP.0: Initialization
CP.1: Pool selection
CP.2: Operation execution and retry
CP.3: Read fallback to the write pool
CP.4: Transactions
CP.5: Health monitoring
CP.6: Shutdown

Author: System Architect
Date: 2025-12-09
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

import asyncpg

from src.core.config.constants import MAX_DB_ATTEMPTS, PoolRole, QueryKind
from src.core.config.settings import Settings, get_settings
from src.core.exceptions.base import ConfigurationError
from src.core.exceptions.database import (
    DatabaseUnavailableError,
    FatalDatabaseError,
    TransientDatabaseError,
)
from src.core.logging.logger import get_logger
from src.core.resilience.retry_policy import (
    ErrorClass,
    classify_error,
    create_retrying,
    get_sqlstate,
)
from src.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[Any], Awaitable[T]]
PoolFactory = Callable[..., Awaitable[Any]]


# ============================================================================
# Configuration & Health Records
# ============================================================================


@dataclass(frozen=True)
class PoolConfig:
    """
    Configuration of one connection pool.

    Both sizes must be positive (min may be zero) and min <= max.
    """

    dsn: str
    min_size: int
    max_size: int
    idle_timeout_ms: int
    connect_timeout_ms: int
    statement_timeout_ms: int
    application_name: str

    def __post_init__(self):
        if self.max_size <= 0:
            raise ConfigurationError(
                "Pool max_size must be > 0",
                details={"application_name": self.application_name, "max_size": self.max_size},
            )
        if self.min_size < 0 or self.min_size > self.max_size:
            raise ConfigurationError(
                "Pool min_size must be between 0 and max_size",
                details={
                    "application_name": self.application_name,
                    "min_size": self.min_size,
                    "max_size": self.max_size,
                },
            )

    @property
    def connect_timeout(self) -> float:
        return self.connect_timeout_ms / 1000

    @classmethod
    def writer_from_settings(cls, settings: Settings) -> "PoolConfig":
        db = settings.database
        return cls(
            dsn=db.DATABASE_URL,
            min_size=db.DATABASE_POOL_MIN,
            max_size=db.DATABASE_POOL_SIZE,
            idle_timeout_ms=db.DATABASE_WRITE_IDLE_TIMEOUT_MS,
            connect_timeout_ms=db.DATABASE_CONNECT_TIMEOUT_MS,
            statement_timeout_ms=db.DATABASE_WRITE_STATEMENT_TIMEOUT_MS,
            application_name=f"{db.DATABASE_APP_NAME}_writer_{settings.ENVIRONMENT}",
        )

    @classmethod
    def reader_from_settings(cls, settings: Settings) -> "PoolConfig | None":
        """Reader config, or None when no replica URL is configured."""
        db = settings.database
        if not db.DATABASE_READONLY_URL:
            return None
        return cls(
            dsn=db.DATABASE_READONLY_URL,
            min_size=db.DATABASE_READ_POOL_MIN,
            max_size=db.DATABASE_READ_POOL_SIZE,
            idle_timeout_ms=db.DATABASE_READ_IDLE_TIMEOUT_MS,
            connect_timeout_ms=db.DATABASE_CONNECT_TIMEOUT_MS,
            statement_timeout_ms=db.DATABASE_READ_STATEMENT_TIMEOUT_MS,
            application_name=f"{db.DATABASE_APP_NAME}_reader_{settings.ENVIRONMENT}",
        )


@dataclass(frozen=True)
class ConnectionHealth:
    """
    Last-known liveness of both pools.

    Instances are never mutated; the manager swaps in a new record so a
    reader always sees a complete snapshot.
    """

    write: bool
    read: bool
    read_write_split_enabled: bool
    checked_at: float | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "write": self.write,
            "read": self.read,
            "readWriteSplitEnabled": self.read_write_split_enabled,
            "checked_at": self.checked_at,
            "details": self.details,
        }


# ============================================================================
# Connection Pool Manager
# ============================================================================


class ConnectionPoolManager:
    """
    Owner of the write and read pools.

    STAGE-CP.0: Connection Pool Manager Initialization

    Architecture:
    - asyncpg pools created through an injectable factory
    - Without a replica the read pool aliases the write pool
    - Health read without blocking (last-known-good record)
    - A pool that fails to open is retried by later health checks
    """

    def __init__(
        self,
        write_config: PoolConfig,
        read_config: PoolConfig | None = None,
        pool_factory: PoolFactory | None = None,
        health_check_interval: float = 30.0,
        health_check_timeout: float = 5.0,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 5.0,
        slow_read_ms: float = 200.0,
        slow_write_ms: float = 500.0,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize connection pool manager.

        Args:
            write_config: Primary pool configuration
            read_config: Replica pool configuration (None aliases the primary)
            pool_factory: Coroutine creating a pool (defaults to asyncpg.create_pool)
            health_check_interval: Seconds between liveness probes
            health_check_timeout: Seconds allowed for one probe
            retry_base_delay: Backoff base for the single retry
            retry_max_delay: Backoff cap
            slow_read_ms / slow_write_ms: Slow operation warning thresholds
            metrics: Prometheus metrics collector
        """
        self.write_config = write_config
        self.read_config = read_config
        self._pool_factory = pool_factory or asyncpg.create_pool
        self._split_enabled = read_config is not None and read_config.dsn != write_config.dsn

        self._health_check_interval = health_check_interval
        self._health_check_timeout = health_check_timeout
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._slow_ms = {PoolRole.READ: slow_read_ms, PoolRole.WRITE: slow_write_ms}
        self._metrics = metrics or get_metrics_collector()

        self._write_pool: Any = None
        self._read_pool: Any = None
        self._open_locks = {PoolRole.WRITE: asyncio.Lock(), PoolRole.READ: asyncio.Lock()}
        self._health_task: asyncio.Task | None = None
        self._started = False
        self._closed = False

        self._health = ConnectionHealth(
            write=False, read=False, read_write_split_enabled=self._split_enabled
        )

        logger.info(
            "Connection pool manager initialized",
            stage="CP.0",
            write_pool=write_config.application_name,
            read_pool=read_config.application_name if read_config else None,
            read_write_split_enabled=self._split_enabled,
            write_max_size=write_config.max_size,
            read_max_size=read_config.max_size if read_config else None,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        pool_factory: PoolFactory | None = None,
    ) -> "ConnectionPoolManager":
        settings = settings or get_settings()
        db = settings.database
        return cls(
            write_config=PoolConfig.writer_from_settings(settings),
            read_config=PoolConfig.reader_from_settings(settings),
            pool_factory=pool_factory,
            health_check_interval=db.DATABASE_HEALTH_CHECK_INTERVAL,
            health_check_timeout=db.DATABASE_HEALTH_CHECK_TIMEOUT,
            retry_base_delay=db.DATABASE_RETRY_BASE_DELAY,
            retry_max_delay=db.DATABASE_RETRY_MAX_DELAY,
            slow_read_ms=db.DATABASE_SLOW_READ_MS,
            slow_write_ms=db.DATABASE_SLOW_WRITE_MS,
        )

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def health(self) -> ConnectionHealth:
        """Last-known health record (never blocks)."""
        return self._health

    @property
    def read_write_split_enabled(self) -> bool:
        return self._split_enabled

    @property
    def is_started(self) -> bool:
        return self._started

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, run_health_loop: bool = True) -> None:
        """
        Open both pools, take a first health snapshot and start the probe loop.

        A pool that cannot be opened is left closed and reported unhealthy;
        the health loop keeps trying to open it.
        """
        if self._started:
            return

        await self._ensure_pool(PoolRole.WRITE)
        if self._split_enabled:
            await self._ensure_pool(PoolRole.READ)

        await self.check_health()

        if run_health_loop and self._health_check_interval > 0:
            self._health_task = asyncio.create_task(self._health_loop())

        self._started = True
        logger.info(
            "Connection pools started",
            stage="CP.0.1",
            health=self._health.to_dict(),
        )

    async def close(self) -> None:
        """
        Stop the probe loop and close each distinct pool once.

        STAGE-CP.6: Shutdown
        """
        if self._closed:
            return
        self._closed = True

        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        pools = [(PoolRole.WRITE, self._write_pool)]
        if self._read_pool is not None and self._read_pool is not self._write_pool:
            pools.append((PoolRole.READ, self._read_pool))

        for role, pool in pools:
            if pool is None:
                continue
            try:
                await pool.close()
                logger.info("Pool closed", stage="CP.6", pool=role.value)
            except Exception as e:
                logger.error(
                    f"Error closing pool: {str(e)}",
                    stage="CP.6.ERROR",
                    pool=role.value,
                    error=str(e),
                )

        self._write_pool = None
        self._read_pool = None
        self._health = ConnectionHealth(
            write=False,
            read=False,
            read_write_split_enabled=self._split_enabled,
            checked_at=time.time(),
        )
        self._started = False

    # =========================================================================
    # Pool Selection
    # =========================================================================

    def get_pool(self, kind: QueryKind | str) -> Any:
        """
        Return the pool that should serve an operation of the given kind.

        STAGE-CP.1: Pool selection

        Writes always get the write pool. Reads get the read pool while its
        last-known health is good, else the write pool.

        Raises:
            DatabaseUnavailableError: If the selected pool is not open
        """
        _, pool = self._select(QueryKind(kind))
        return pool

    def _select(self, kind: QueryKind) -> tuple[PoolRole, Any]:
        if (
            kind is QueryKind.READ
            and self._split_enabled
            and self._health.read
            and self._read_pool is not None
        ):
            return PoolRole.READ, self._read_pool
        return PoolRole.WRITE, self._require_write_pool()

    def _require_write_pool(self) -> Any:
        if self._write_pool is None:
            raise DatabaseUnavailableError(
                "Write pool is not available",
                details={"pool": PoolRole.WRITE.value},
            )
        return self._write_pool

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, kind: QueryKind | str, operation: Operation) -> T:
        """
        Run `operation(connection)` on the pool selected for `kind`.

        STAGE-CP.2: Operation execution

        The connection is released on success, failure and cancellation.
        A read-pool failure is retried exactly once on the write pool; a
        write-pool failure that is transient is retried once with backoff.

        Raises:
            FatalDatabaseError: Shutdown/protocol failure (never retried)
            DatabaseUnavailableError: Transient failure that survived the retry
            Exception: Query errors (constraint, syntax) propagate unchanged
        """
        kind = QueryKind(kind)
        role, pool = self._select(kind)

        logger.debug("Pool selected", stage="CP.1", kind=kind.value, pool=role.value)

        if role is PoolRole.READ:
            try:
                return await self._run(pool, role, kind, operation)
            except Exception as e:
                if classify_error(e) is ErrorClass.QUERY:
                    raise
                return await self._fallback_to_write(kind, operation, e)

        return await self._execute_with_retry(pool, role, kind, operation)

    async def _execute_with_retry(
        self, pool: Any, role: PoolRole, kind: QueryKind, operation: Operation
    ) -> T:
        attempt_number = 0
        try:
            async for attempt in create_retrying(self._retry_base_delay, self._retry_max_delay):
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    if attempt_number > 1:
                        self._metrics.record_db_retry(role.value, "transient")
                    return await self._run(pool, role, kind, operation)
        except Exception as e:
            self._raise_translated(e, role, attempt_number)

    async def _fallback_to_write(self, kind: QueryKind, operation: Operation, cause: Exception) -> T:
        """
        Retry a failed read once on the write pool.

        STAGE-CP.3: Read fallback
        """
        self._mark_read_unhealthy(cause)
        self._metrics.record_db_retry(PoolRole.WRITE.value, "read_fallback")

        logger.warning(
            "Read pool failed, retrying once on write pool",
            stage="CP.3",
            error=str(cause),
            code=get_sqlstate(cause),
        )

        pool = self._require_write_pool()
        try:
            return await self._run(pool, PoolRole.WRITE, kind, operation)
        except Exception as e:
            self._raise_translated(e, PoolRole.WRITE, MAX_DB_ATTEMPTS)

    async def _run(self, pool: Any, role: PoolRole, kind: QueryKind, operation: Operation) -> T:
        config = self._config_for(role)
        start_time = time.perf_counter()
        success = False
        try:
            async with pool.acquire(timeout=config.connect_timeout) as connection:
                result = await operation(connection)
            success = True
            return result
        finally:
            duration = time.perf_counter() - start_time
            self._metrics.record_query(kind.value, role.value, duration, success)
            if success:
                self._check_slow(role, kind, duration * 1000)

    def _raise_translated(self, exc: Exception, role: PoolRole, attempts: int) -> None:
        """Re-raise a driver error as the matching data-access error."""
        error_class = classify_error(exc)
        code = get_sqlstate(exc)

        if error_class is ErrorClass.QUERY:
            raise exc

        if error_class is ErrorClass.FATAL:
            logger.error(
                "Fatal database error, not retrying",
                stage="CP.2.FATAL",
                pool=role.value,
                code=code,
                error=str(exc),
            )
            raise FatalDatabaseError(
                f"Fatal database error: {exc}",
                code=code,
                details={"pool": role.value, "code": code},
            ) from exc

        logger.error(
            "Database unavailable after retry",
            stage="CP.2.ERROR",
            pool=role.value,
            attempts=attempts,
            code=code,
            error=str(exc),
        )
        raise DatabaseUnavailableError(
            f"Database unavailable: {exc}",
            code=code,
            details={"pool": role.value, "attempts": attempts, "code": code},
        ) from exc

    def _check_slow(self, role: PoolRole, kind: QueryKind, duration_ms: float) -> None:
        threshold = self._slow_ms[role]
        if duration_ms > threshold:
            self._metrics.record_slow_query(role.value)
            logger.warning(
                f"Slow {kind.value} operation on {role.value} pool",
                stage="CP.2.SLOW",
                pool=role.value,
                duration_ms=round(duration_ms, 2),
                threshold_ms=threshold,
            )

    # =========================================================================
    # Transactions
    # =========================================================================

    async def transaction(self, operation: Operation) -> T:
        """
        Run `operation(connection)` inside BEGIN/COMMIT on the write pool.

        STAGE-CP.4: Transactions

        Any exception rolls the transaction back and is re-raised. The
        operation may not be idempotent, so it is never retried.

        Raises:
            TransientDatabaseError: Retryable failure (the caller may retry the whole unit)
            FatalDatabaseError: Shutdown/protocol failure
            Exception: Query errors propagate unchanged
        """
        pool = self._require_write_pool()
        start_time = time.perf_counter()
        success = False
        try:
            async with pool.acquire(timeout=self.write_config.connect_timeout) as connection:
                async with connection.transaction():
                    result = await operation(connection)
            success = True
            return result
        except Exception as e:
            error_class = classify_error(e)
            code = get_sqlstate(e)
            logger.warning(
                "Transaction rolled back",
                stage="CP.4.ROLLBACK",
                error_class=error_class.value,
                code=code,
                error=str(e),
            )
            if error_class is ErrorClass.QUERY:
                raise
            error_type = FatalDatabaseError if error_class is ErrorClass.FATAL else TransientDatabaseError
            raise error_type(
                f"Transaction failed: {e}",
                code=code,
                details={"pool": PoolRole.WRITE.value, "code": code},
            ) from e
        finally:
            duration = time.perf_counter() - start_time
            self._metrics.record_query(QueryKind.WRITE.value, PoolRole.WRITE.value, duration, success)
            if success:
                self._check_slow(PoolRole.WRITE, QueryKind.WRITE, duration * 1000)

    # =========================================================================
    # Health Monitoring
    # =========================================================================

    async def check_health(self) -> ConnectionHealth:
        """
        Probe both pools concurrently and replace the health record.

        STAGE-CP.5: Health monitoring

        A slow or failing probe on one pool does not delay the other.
        Without a replica the read status mirrors the write status.
        """
        if self._split_enabled:
            (write_ok, write_detail), (read_ok, read_detail) = await asyncio.gather(
                self._probe(PoolRole.WRITE), self._probe(PoolRole.READ)
            )
        else:
            write_ok, write_detail = await self._probe(PoolRole.WRITE)
            read_ok, read_detail = write_ok, write_detail

        health = ConnectionHealth(
            write=write_ok,
            read=read_ok,
            read_write_split_enabled=self._split_enabled,
            checked_at=time.time(),
            details={"write": write_detail, "read": read_detail},
        )
        previous = self._health
        self._health = health

        self._metrics.set_pool_health(PoolRole.WRITE.value, write_ok)
        self._metrics.set_pool_health(PoolRole.READ.value, read_ok)

        if (previous.write, previous.read) != (write_ok, read_ok):
            log = logger.info if write_ok and read_ok else logger.warning
            log(
                "Pool health changed",
                stage="CP.5.1",
                write=write_ok,
                read=read_ok,
                read_write_split_enabled=self._split_enabled,
            )

        return health

    async def _probe(self, role: PoolRole) -> tuple[bool, dict[str, Any]]:
        pool = await self._ensure_pool(role)
        if pool is None:
            return False, {"error": "pool not available"}

        start_time = time.perf_counter()
        try:
            await asyncio.wait_for(self._ping(pool), timeout=self._health_check_timeout)
        except Exception as e:
            logger.warning(
                "Health probe failed",
                stage="CP.5.FAIL",
                pool=role.value,
                error=str(e) or e.__class__.__name__,
            )
            return False, {"error": str(e) or e.__class__.__name__}

        latency_ms = (time.perf_counter() - start_time) * 1000
        self._record_pool_size(role, pool)
        return True, {"latency_ms": round(latency_ms, 2)}

    @staticmethod
    async def _ping(pool: Any) -> None:
        async with pool.acquire() as connection:
            await connection.fetchval("SELECT 1")

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._health_check_interval)
            try:
                await self.check_health()
            except Exception as e:
                logger.error(
                    f"Health check loop error: {str(e)}",
                    stage="CP.5.ERROR",
                    error=str(e),
                )

    def _mark_read_unhealthy(self, cause: Exception) -> None:
        details = dict(self._health.details)
        details["read"] = {"error": str(cause) or cause.__class__.__name__}
        self._health = replace(self._health, read=False, checked_at=time.time(), details=details)
        self._metrics.set_pool_health(PoolRole.READ.value, False)

    # =========================================================================
    # Internal Methods - Pool Opening
    # =========================================================================

    def _config_for(self, role: PoolRole) -> PoolConfig:
        if role is PoolRole.READ and self.read_config is not None:
            return self.read_config
        return self.write_config

    async def _ensure_pool(self, role: PoolRole) -> Any:
        """Return the open pool for a role, opening it if needed (None on failure)."""
        if role is PoolRole.READ and not self._split_enabled:
            return self._write_pool

        current = self._write_pool if role is PoolRole.WRITE else self._read_pool
        if current is not None or self._closed:
            return current

        async with self._open_locks[role]:
            current = self._write_pool if role is PoolRole.WRITE else self._read_pool
            if current is not None:
                return current

            config = self._config_for(role)
            try:
                pool = await self._pool_factory(
                    dsn=config.dsn,
                    min_size=config.min_size,
                    max_size=config.max_size,
                    max_inactive_connection_lifetime=config.idle_timeout_ms / 1000,
                    timeout=config.connect_timeout,
                    command_timeout=config.statement_timeout_ms / 1000,
                    server_settings={
                        "application_name": config.application_name,
                        "statement_timeout": str(config.statement_timeout_ms),
                    },
                )
            except Exception as e:
                logger.error(
                    f"Failed to open {role.value} pool: {str(e)}",
                    stage="CP.0.ERROR",
                    pool=role.value,
                    dsn=config.dsn,
                    error=str(e),
                )
                return None

            if role is PoolRole.WRITE:
                self._write_pool = pool
            else:
                self._read_pool = pool

            logger.info(
                "Pool opened",
                stage="CP.0.2",
                pool=role.value,
                application_name=config.application_name,
                min_size=config.min_size,
                max_size=config.max_size,
            )
            return pool

    def _record_pool_size(self, role: PoolRole, pool: Any) -> None:
        try:
            self._metrics.set_pool_size(role.value, pool.get_size(), pool.get_idle_size())
        except AttributeError:
            pass

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        """
        Get detailed pool statistics.

        Returns:
            dict: Per-pool sizes, split flag and the last health record
        """
        pools = {PoolRole.WRITE.value: self._pool_stats(self._write_pool, self.write_config)}
        if self._split_enabled:
            pools[PoolRole.READ.value] = self._pool_stats(self._read_pool, self._config_for(PoolRole.READ))
        else:
            pools[PoolRole.READ.value] = {**pools[PoolRole.WRITE.value], "aliases": PoolRole.WRITE.value}

        return {
            "pools": pools,
            "read_write_split_enabled": self._split_enabled,
            "health": self._health.to_dict(),
        }

    @staticmethod
    def _pool_stats(pool: Any, config: PoolConfig) -> dict[str, Any]:
        if pool is None:
            return {
                "open": False,
                "min_size": config.min_size,
                "max_size": config.max_size,
                "application_name": config.application_name,
            }
        size = pool.get_size()
        idle = pool.get_idle_size()
        return {
            "open": True,
            "size": size,
            "idle": idle,
            "in_use": size - idle,
            "min_size": pool.get_min_size(),
            "max_size": pool.get_max_size(),
            "application_name": config.application_name,
        }
