"""
Circuit Breaker for the Data-Access Layer.

This module implements a circuit breaker with a pluggable state store so
that either a single process or a whole fleet of instances shares one view
of a failing dependency.

MECHANISM OF ACTION:
-------------------
1.  **State Store**:
    The breaker state (CLOSED, OPEN, HALF_OPEN) lives in a `CircuitStateStore`.
    `RedisCircuitStore` shares it between instances under `circuit:{name}`
    with a short expiry; `InMemoryCircuitStore` serves single-instance
    deployments. The store is picked at construction time. When the shared
    store is unreachable the breaker keeps working on its local copy and
    reports itself as degraded.
    Each breaker trusts its local copy for `refresh_interval` seconds
    before reading the store again, and concurrent callers share that read.

2.  **State Transitions**:
    - **CLOSED**: Requests are allowed.
      - On Failure: failure counter increments.
      - On Success: failure counter resets to 0.
      - Threshold Reached: failures >= failure_threshold opens the circuit.

    - **OPEN**: Requests are rejected immediately (Fail Fast).
      - Behavior: Raises `CircuitBreakerOpenError` without calling the operation.
      - Recovery: Once `reset_timeout` has elapsed since the last state change,
        the next call moves the circuit to HALF_OPEN and is attempted.

    - **HALF_OPEN**: Probing mode.
      - On Failure: back to OPEN, the timeout clock restarts.
      - On Success: after `success_threshold` consecutive successes the circuit
        closes and both counters reset.

3.  **Convergence**:
    Writes to the shared store are last-writer-wins keyed by
    `last_state_change`; an older state never overwrites a newer one.

STAGE-CB: Circuit Breaker
-------------------------
CB.0: Initialization
CB.1: Admission check
CB.2: Outcome bookkeeping
CB.3: State transition
CB.FALLBACK: Store unreachable, local state used
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, replace
from typing import Any, Protocol, TypeVar

import orjson

from src.core.config.constants import (
    CB_DEFAULT_REFRESH_INTERVAL,
    CB_DEFAULT_STATE_TTL,
    CB_DEFAULT_SUCCESS_THRESHOLD,
    REDIS_KEY_CIRCUIT,
    CircuitState,
)
from src.core.config.settings import Settings, get_settings
from src.core.exceptions import (
    CircuitBreakerOpenError,
    DatabaseUnavailableError,
    FatalDatabaseError,
    TransientDatabaseError,
)
from src.core.logging.logger import get_logger
from src.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)

T = TypeVar("T")

FailurePredicate = Callable[[BaseException], bool]


@dataclass
class CircuitBreakerState:
    """Persisted state of one named breaker."""

    name: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float | None = None
    last_state_change: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CircuitBreakerState":
        return cls(
            name=data["name"],
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            failure_count=int(data.get("failure_count", 0)),
            success_count=int(data.get("success_count", 0)),
            last_failure_time=data.get("last_failure_time"),
            last_state_change=float(data.get("last_state_change", 0.0)),
        )


# ============================================================================
# State Stores
# ============================================================================


class CircuitStateStore(Protocol):
    """Where breaker state lives. Both implementations share this interface."""

    backend: str

    async def load(self, name: str) -> CircuitBreakerState | None:
        ...

    async def save(self, state: CircuitBreakerState) -> bool:
        ...


class InMemoryCircuitStore:
    """Process-local store for single-instance deployments."""

    backend = "memory"

    def __init__(self):
        self._states: dict[str, CircuitBreakerState] = {}

    async def load(self, name: str) -> CircuitBreakerState | None:
        state = self._states.get(name)
        return replace(state) if state else None

    async def save(self, state: CircuitBreakerState) -> bool:
        current = self._states.get(state.name)
        if current is not None and current.last_state_change > state.last_state_change:
            return False
        self._states[state.name] = replace(state)
        return True


class RedisCircuitStore:
    """
    Shared store backed by Redis.

    State is stored as JSON under `circuit:{name}` with a short expiry so a
    breaker nobody touches falls back to CLOSED on its own.
    """

    backend = "redis"

    def __init__(self, redis_client, ttl: int = CB_DEFAULT_STATE_TTL):
        self._redis = redis_client
        self._ttl = ttl

    @staticmethod
    def key(name: str) -> str:
        return f"{REDIS_KEY_CIRCUIT}:{name}"

    async def load(self, name: str) -> CircuitBreakerState | None:
        raw = await self._redis.get(self.key(name))
        if not raw:
            return None
        return CircuitBreakerState.from_dict(orjson.loads(raw))

    async def save(self, state: CircuitBreakerState) -> bool:
        existing = await self.load(state.name)
        if existing is not None and existing.last_state_change > state.last_state_change:
            logger.debug(
                "Skipping stale circuit state write",
                stage="CB.3.STALE",
                breaker=state.name,
                stored_change=existing.last_state_change,
                attempted_change=state.last_state_change,
            )
            return False
        await self._redis.set(self.key(state.name), orjson.dumps(state.to_dict()).decode(), ttl=self._ttl)
        return True


def create_state_store(backend: str, redis_client=None, ttl: int = CB_DEFAULT_STATE_TTL) -> CircuitStateStore:
    """Pick the store implementation for the configured backend."""
    if backend == "redis":
        if redis_client is not None:
            return RedisCircuitStore(redis_client, ttl=ttl)
        logger.warning(
            "Redis circuit store requested without a Redis client, using in-memory store",
            stage="CB.0.FALLBACK",
        )
    return InMemoryCircuitStore()


# ============================================================================
# Circuit Breaker
# ============================================================================


def count_every_failure(exc: BaseException) -> bool:
    return True


def is_outage_error(exc: BaseException) -> bool:
    """
    Failure predicate for the database breaker.

    Only outage-type errors count; constraint violations and other query
    errors never trip the circuit.
    """
    return isinstance(
        exc,
        (
            DatabaseUnavailableError,
            FatalDatabaseError,
            TransientDatabaseError,
            ConnectionError,
            TimeoutError,
        ),
    )


class CircuitBreaker:
    """
    Guards an operation and sheds calls while its dependency is failing.

    Admission is decided from a process-local copy of the state that is
    re-read from the store at most once per `refresh_interval`. Successes
    on a healthy circuit touch neither the lock nor the store; the lock only
    guards failure bookkeeping and state transitions.

    Usage:
        breaker = CircuitBreaker("database", InMemoryCircuitStore(), 5, 60.0)
        rows = await breaker.execute(lambda: pool_manager.execute("read", fetch))
    """

    def __init__(
        self,
        name: str,
        store: CircuitStateStore | None = None,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        success_threshold: int = CB_DEFAULT_SUCCESS_THRESHOLD,
        clock: Callable[[], float] = time.time,
        is_failure: FailurePredicate | None = None,
        metrics: MetricsCollector | None = None,
        refresh_interval: float = CB_DEFAULT_REFRESH_INTERVAL,
    ):
        self.name = name
        self._store = store or InMemoryCircuitStore()
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self.refresh_interval = refresh_interval
        self._clock = clock
        self._is_failure = is_failure or count_every_failure
        self._metrics = metrics or get_metrics_collector()

        self._local = CircuitBreakerState(name=name)
        self._lock = asyncio.Lock()
        self._degraded = False
        self._refreshed_at: float | None = None
        self._refresh: asyncio.Future | None = None

        logger.info(
            "Circuit breaker initialized",
            stage="CB.0",
            breaker=name,
            backend=self._store.backend,
            failure_threshold=failure_threshold,
            reset_timeout=reset_timeout,
            success_threshold=success_threshold,
        )

    @property
    def backend(self) -> str:
        return self._store.backend

    @property
    def degraded(self) -> bool:
        """True while the shared store is unreachable and local state is used."""
        return self._degraded

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation()` through the breaker.

        Raises:
            CircuitBreakerOpenError: Circuit is open; the operation was not called
            Exception: Whatever the operation raised, after bookkeeping
        """
        await self._admit()

        try:
            result = await operation()
        except Exception as e:
            if self._is_failure(e):
                await self.record_failure(e)
            raise

        await self.record_success()
        return result

    async def _admit(self) -> None:
        """
        STAGE-CB.1: Admission check

        Decided from the local copy; the lock and a fresh store read are
        only needed when an OPEN circuit is due for its probe.
        """
        state = await self._current()
        if state.state is not CircuitState.OPEN:
            return
        self._reject_if_cooling(state)

        async with self._lock:
            state = await self._load()
            if state.state is not CircuitState.OPEN:
                return
            self._reject_if_cooling(state)

            logger.info(
                "Reset timeout elapsed, probing",
                stage="CB.1.1",
                breaker=self.name,
                open_for=round(self._clock() - state.last_state_change, 3),
            )
            await self._transition(state, CircuitState.HALF_OPEN)

    def _reject_if_cooling(self, state: CircuitBreakerState) -> None:
        elapsed = self._clock() - state.last_state_change
        if elapsed >= self.reset_timeout:
            return
        self._metrics.record_circuit_rejection(self.name)
        retry_after = self.reset_timeout - elapsed
        logger.debug(
            "Circuit open, rejecting call",
            stage="CB.1",
            breaker=self.name,
            retry_after=round(retry_after, 3),
        )
        raise CircuitBreakerOpenError(
            f"Circuit '{self.name}' is open",
            name=self.name,
            retry_after=retry_after,
        )

    # =========================================================================
    # Outcome Bookkeeping
    # =========================================================================

    async def record_success(self) -> None:
        """
        STAGE-CB.2: A call completed successfully.
        """
        local = self._local
        if local.state is CircuitState.CLOSED and local.failure_count == 0:
            return

        async with self._lock:
            state = await self._load()

            if state.state is CircuitState.HALF_OPEN:
                successes = state.success_count + 1
                if successes >= self.success_threshold:
                    logger.info(
                        f"Circuit '{self.name}' recovered! Closing.",
                        stage="CB.2.1",
                        breaker=self.name,
                        successes=successes,
                    )
                    await self._transition(state, CircuitState.CLOSED)
                else:
                    await self._save(replace(state, success_count=successes))

            elif state.state is CircuitState.CLOSED and state.failure_count:
                await self._save(replace(state, failure_count=0))

    async def record_failure(self, error: BaseException | None = None) -> None:
        """
        STAGE-CB.2: A call failed.
        """
        async with self._lock:
            state = await self._load()
            now = self._clock()
            self._metrics.record_circuit_failure(self.name)

            if state.state is CircuitState.HALF_OPEN:
                logger.warning(
                    f"Circuit '{self.name}' probe failed, reopening",
                    stage="CB.2.2",
                    breaker=self.name,
                    error=str(error) if error else None,
                )
                await self._transition(
                    state, CircuitState.OPEN, failure_count=state.failure_count + 1, last_failure_time=now
                )
                return

            failures = state.failure_count + 1

            if state.state is CircuitState.CLOSED and failures >= self.failure_threshold:
                logger.error(
                    f"Circuit '{self.name}' tripped! Opening circuit.",
                    stage="CB.2.3",
                    breaker=self.name,
                    failures=failures,
                    threshold=self.failure_threshold,
                    error=str(error) if error else None,
                )
                await self._transition(
                    state, CircuitState.OPEN, failure_count=failures, last_failure_time=now
                )
                return

            logger.warning(
                f"Circuit '{self.name}' recorded failure ({failures}/{self.failure_threshold})",
                stage="CB.2",
                breaker=self.name,
                state=state.state.value,
            )
            await self._save(replace(state, failure_count=failures, last_failure_time=now))

    # =========================================================================
    # Introspection & Admin
    # =========================================================================

    async def get_state(self) -> CircuitState:
        return (await self._current()).state

    async def get_metrics(self) -> dict[str, Any]:
        """Snapshot for the admin surface."""
        state = await self._load()
        now = self._clock()
        return {
            "name": self.name,
            "state": state.state.value,
            "failure_count": state.failure_count,
            "success_count": state.success_count,
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "reset_timeout": self.reset_timeout,
            "last_failure_time": state.last_failure_time,
            "time_since_last_failure": (
                round(now - state.last_failure_time, 3)
                if state.last_failure_time is not None
                else None
            ),
            "last_state_change": state.last_state_change or None,
            "backend": self.backend,
            "degraded": self._degraded,
        }

    async def reset(self) -> None:
        """Force the circuit CLOSED with zeroed counters (admin action)."""
        async with self._lock:
            state = await self._load()
            logger.info("Circuit manually reset", stage="CB.3.RESET", breaker=self.name)
            await self._transition(state, CircuitState.CLOSED, last_failure_time=None)

    # =========================================================================
    # Internal Methods - Store + Local Fallback
    # =========================================================================

    async def _transition(self, state: CircuitBreakerState, new_state: CircuitState, **changes) -> None:
        """
        STAGE-CB.3: State transition

        HALF_OPEN and CLOSED start with zeroed counters; OPEN keeps the
        failure count that tripped it.
        """
        fields = {
            "state": new_state,
            "success_count": 0,
            "last_state_change": self._clock(),
        }
        if new_state is not CircuitState.OPEN:
            fields["failure_count"] = 0
        fields.update(changes)

        new = replace(state, **fields)
        self._metrics.set_circuit_state(self.name, new_state.value)
        logger.info(
            f"Circuit '{self.name}' changed state to {new_state.value}",
            stage="CB.3",
            breaker=self.name,
            from_state=state.state.value,
            to_state=new_state.value,
        )
        await self._save(new)

    async def _current(self) -> CircuitBreakerState:
        """Local state, re-read from the store at most once per refresh interval."""
        if self._refreshed_at is not None and self._clock() - self._refreshed_at < self.refresh_interval:
            return self._local
        if self._refresh is None:
            self._refresh = asyncio.ensure_future(self._load())
            self._refresh.add_done_callback(self._refresh_done)
        return await asyncio.shield(self._refresh)

    def _refresh_done(self, task: asyncio.Future) -> None:
        if self._refresh is task:
            self._refresh = None

    async def _load(self) -> CircuitBreakerState:
        try:
            stored = await self._store.load(self.name)
        except Exception as e:
            self._refreshed_at = self._clock()
            self._on_store_error("load", e)
            return self._local

        self._refreshed_at = self._clock()
        self._degraded = False
        if stored is not None and stored.last_state_change >= self._local.last_state_change:
            self._local = stored
        return self._local

    async def _save(self, state: CircuitBreakerState) -> None:
        self._local = state
        try:
            await self._store.save(state)
        except Exception as e:
            self._on_store_error("save", e)

    def _on_store_error(self, operation: str, error: Exception) -> None:
        self._degraded = True
        self._metrics.record_circuit_store_error(self.name)
        logger.warning(
            "Circuit state store unavailable, using local state",
            stage="CB.FALLBACK",
            breaker=self.name,
            backend=self.backend,
            operation=operation,
            error=str(error),
        )


# ============================================================================
# Registry & Factory
# ============================================================================


class CircuitBreakerRegistry:
    """Creates and tracks named breakers sharing one state store."""

    def __init__(
        self,
        store: CircuitStateStore | None = None,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        success_threshold: int = CB_DEFAULT_SUCCESS_THRESHOLD,
        clock: Callable[[], float] = time.time,
        metrics: MetricsCollector | None = None,
        refresh_interval: float = CB_DEFAULT_REFRESH_INTERVAL,
    ):
        self._store = store or InMemoryCircuitStore()
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._success_threshold = success_threshold
        self._clock = clock
        self._metrics = metrics
        self._refresh_interval = refresh_interval
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings: Settings | None = None, redis_client=None) -> "CircuitBreakerRegistry":
        settings = settings or get_settings()
        cb = settings.circuit_breaker
        return cls(
            store=create_state_store(cb.CB_BACKEND, redis_client, ttl=cb.CB_STATE_TTL),
            failure_threshold=cb.CB_FAILURE_THRESHOLD,
            reset_timeout=cb.CB_RECOVERY_TIMEOUT,
            success_threshold=cb.CB_SUCCESS_THRESHOLD,
            refresh_interval=cb.CB_REFRESH_INTERVAL,
        )

    @property
    def backend(self) -> str:
        return self._store.backend

    def get_breaker(self, name: str, is_failure: FailurePredicate | None = None) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(
                name,
                store=self._store,
                failure_threshold=self._failure_threshold,
                reset_timeout=self._reset_timeout,
                success_threshold=self._success_threshold,
                clock=self._clock,
                is_failure=is_failure,
                metrics=self._metrics,
                refresh_interval=self._refresh_interval,
            )
        return self._breakers[name]

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    async def get_all_metrics(self) -> dict[str, dict[str, Any]]:
        return {name: await breaker.get_metrics() for name, breaker in self._breakers.items()}

    async def reset_all(self) -> None:
        for breaker in self._breakers.values():
            await breaker.reset()


def create_circuit_breaker(
    name: str,
    settings: Settings | None = None,
    redis_client=None,
    is_failure: FailurePredicate | None = None,
) -> CircuitBreaker:
    """Build a standalone breaker from settings with the configured backend."""
    settings = settings or get_settings()
    cb = settings.circuit_breaker
    return CircuitBreaker(
        name,
        store=create_state_store(cb.CB_BACKEND, redis_client, ttl=cb.CB_STATE_TTL),
        failure_threshold=cb.CB_FAILURE_THRESHOLD,
        reset_timeout=cb.CB_RECOVERY_TIMEOUT,
        success_threshold=cb.CB_SUCCESS_THRESHOLD,
        is_failure=is_failure,
        refresh_interval=cb.CB_REFRESH_INTERVAL,
    )
