"""
Rate Limiter

Sliding-window admission control per caller identity.

Features:
- Sliding window: the effective limit is always "requests in the last
  `window` seconds", with no burst at fixed-window boundaries
- Named limiter instances with independent thresholds (default/strict/auth)
- In-memory store bounded by an LRU over tracked identifiers
- Redis store (one sorted set per identifier) for multi-instance deployments
- Pluggable identifier strategies (authenticated subject, network origin)
- Fail-open: a broken store admits the request

STAGE-RL: Rate Limiting
-----------------------
RL.0: Initialization
RL.1: Admission check
RL.2: Rejection
RL.FALLBACK: Store failure, request admitted
"""

import hashlib
import math
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from fastapi import Request
from limits import parse
from slowapi.util import get_remote_address

from src.core.config.constants import (
    HEADER_RATE_LIMIT,
    HEADER_RATE_REMAINING,
    HEADER_RATE_RESET,
    HEADER_USER_ID,
    RATE_LIMIT_DEFAULT_MAX_IDENTIFIERS,
    REDIS_KEY_RATE_LIMIT,
)
from src.core.config.settings import Settings, get_settings
from src.core.exceptions import ConfigurationError, RateLimitExceededError
from src.core.logging import get_logger
from src.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)


@dataclass
class TokenBucket:
    """
    Per-identifier window state.

    `request_timestamps` only ever holds admitted requests inside the
    active window, so its length never exceeds the limit.
    """

    tokens: int
    last_refill_time: float
    request_timestamps: deque = field(default_factory=deque)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_after: float
    retry_after: float | None = None

    def headers(self) -> dict[str, str]:
        """X-RateLimit-* response headers for this decision."""
        return {
            HEADER_RATE_LIMIT: str(self.limit),
            HEADER_RATE_REMAINING: str(self.remaining),
            HEADER_RATE_RESET: str(math.ceil(self.reset_after)),
        }


# ============================================================================
# Window Stores
# ============================================================================


class WindowStore(Protocol):
    """
    Admission bookkeeping for one limiter.

    `hit` prunes timestamps older than the window, then admits when fewer
    than `limit` remain. Returns (allowed, count_in_window, oldest_timestamp).
    """

    backend: str

    async def hit(
        self, identifier: str, now: float, window: float, limit: int
    ) -> tuple[bool, int, float | None]:
        ...

    def size(self) -> int | None:
        ...


class InMemoryWindowStore:
    """
    Process-local store with bounded memory.

    Buckets live in an OrderedDict used as an LRU: touching an identifier
    moves it to the end, and the least recently seen identifier is evicted
    once `max_identifiers` is exceeded. `hit` never awaits, so each
    admission is applied atomically on the event loop.
    """

    backend = "memory"

    def __init__(self, max_identifiers: int = RATE_LIMIT_DEFAULT_MAX_IDENTIFIERS):
        if max_identifiers <= 0:
            raise ConfigurationError("max_identifiers must be > 0")
        self.max_identifiers = max_identifiers
        self._buckets: OrderedDict[str, TokenBucket] = OrderedDict()

    async def hit(
        self, identifier: str, now: float, window: float, limit: int
    ) -> tuple[bool, int, float | None]:
        bucket = self._buckets.get(identifier)
        if bucket is None:
            bucket = TokenBucket(tokens=limit, last_refill_time=now)
            self._buckets[identifier] = bucket
            while len(self._buckets) > self.max_identifiers:
                evicted, _ = self._buckets.popitem(last=False)
                logger.debug("Evicted rate limit bucket", stage="RL.1.EVICT", identifier=evicted)
        else:
            self._buckets.move_to_end(identifier)

        timestamps = bucket.request_timestamps
        cutoff = now - window
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()
        bucket.last_refill_time = now

        if len(timestamps) >= limit:
            bucket.tokens = 0
            return False, len(timestamps), timestamps[0] if timestamps else None

        timestamps.append(now)
        bucket.tokens = limit - len(timestamps)
        return True, len(timestamps), timestamps[0]

    def get_bucket(self, identifier: str) -> TokenBucket | None:
        return self._buckets.get(identifier)

    def size(self) -> int:
        return len(self._buckets)

    def clear(self) -> None:
        self._buckets.clear()


class RedisWindowStore:
    """
    Shared store: one sorted set per identifier, scored by request time.

    Prune, add, count and expire run as one MULTI/EXEC pipeline. The new
    member is added before the count is known and removed again when the
    request is refused, so racing instances never admit more than `limit`.
    """

    backend = "redis"

    def __init__(self, redis_client, name: str):
        self._redis = redis_client
        self._name = name

    def key(self, identifier: str) -> str:
        return f"{REDIS_KEY_RATE_LIMIT}:{self._name}:{identifier}"

    async def hit(
        self, identifier: str, now: float, window: float, limit: int
    ) -> tuple[bool, int, float | None]:
        key = self.key(identifier)
        member = f"{now}:{uuid.uuid4().hex[:8]}"
        count, oldest = await self._redis.zwindow_add(key, member, now, now - window, max(1, math.ceil(window)))

        if count > limit:
            await self._redis.zrem(key, member)
            return False, count - 1, oldest
        return True, count, oldest if oldest is not None else now

    def size(self) -> None:
        return None


# ============================================================================
# Limiter
# ============================================================================


def identifier_type(identifier: str) -> str:
    """Prefix of an identifier (user, token, ip) for metrics labels."""
    return identifier.split(":", 1)[0] if ":" in identifier else "unknown"


class SlidingWindowRateLimiter:
    """
    One named limiter.

    Usage:
        limiter = SlidingWindowRateLimiter("strict", limit=10, window_seconds=60)
        if not await limiter.check("ip:1.2.3.4"):
            ...
    """

    def __init__(
        self,
        name: str,
        limit: int,
        window_seconds: float,
        store: WindowStore | None = None,
        clock: Callable[[], float] = time.time,
        metrics: MetricsCollector | None = None,
    ):
        if limit <= 0 or window_seconds <= 0:
            raise ConfigurationError(
                "Rate limit and window must be positive",
                details={"name": name, "limit": limit, "window": window_seconds},
            )
        self.name = name
        self.limit = limit
        self.window = float(window_seconds)
        self._store = store or InMemoryWindowStore()
        self._clock = clock
        self._metrics = metrics or get_metrics_collector()

        logger.info(
            "Rate limiter initialized",
            stage="RL.0",
            limiter=name,
            limit=limit,
            window=self.window,
            backend=self._store.backend,
        )

    @property
    def store(self) -> WindowStore:
        return self._store

    async def check(self, identifier: str, limit: int | None = None) -> bool:
        """Admit (and record) one request for `identifier`, or refuse it."""
        return (await self.check_detailed(identifier, limit)).allowed

    async def check_detailed(self, identifier: str, limit: int | None = None) -> RateLimitDecision:
        """
        STAGE-RL.1: Admission check
        """
        if limit is None:
            limit = self.limit
        now = self._clock()

        try:
            allowed, count, oldest = await self._store.hit(identifier, now, self.window, limit)
        except Exception as e:
            self._metrics.record_rate_limit_fail_open(self.name)
            logger.warning(
                "Rate limiter store failed, admitting request",
                stage="RL.FALLBACK",
                limiter=self.name,
                identifier=identifier,
                error=str(e),
            )
            return RateLimitDecision(allowed=True, limit=limit, remaining=limit, reset_after=0.0)

        reset_after = max(0.0, oldest + self.window - now) if oldest is not None else 0.0

        if not allowed:
            self._metrics.record_rate_limit_exceeded(self.name, identifier_type(identifier))
            logger.warning(
                "Rate limit exceeded",
                stage="RL.2",
                limiter=self.name,
                identifier=identifier,
                limit=limit,
                window=self.window,
                retry_after=round(reset_after, 3),
            )
            return RateLimitDecision(
                allowed=False, limit=limit, remaining=0, reset_after=reset_after, retry_after=reset_after
            )

        return RateLimitDecision(
            allowed=True, limit=limit, remaining=max(0, limit - count), reset_after=reset_after
        )

    async def enforce(self, identifier: str, limit: int | None = None) -> RateLimitDecision:
        """
        Like `check_detailed`, but raises on rejection.

        Raises:
            RateLimitExceededError: With the retry-after hint
        """
        decision = await self.check_detailed(identifier, limit)
        if not decision.allowed:
            raise RateLimitExceededError(
                f"Rate limit exceeded for limiter '{self.name}'",
                identifier=identifier,
                limit=decision.limit,
                window=self.window,
                retry_after=decision.retry_after,
                details={"limiter": self.name},
            )
        return decision

    def stats(self) -> dict[str, Any]:
        max_identifiers = getattr(self._store, "max_identifiers", None)
        return {
            "size": self._store.size(),
            "max": max_identifiers,
            "limit": self.limit,
            "window": self.window,
            "backend": self._store.backend,
        }


# ============================================================================
# Registry
# ============================================================================


def parse_rate(rate: str) -> tuple[int, float]:
    """Parse "10/minute" or "5/15 minutes" into (limit, window_seconds)."""
    item = parse(rate)
    return item.amount, float(item.get_expiry())


class RateLimiterRegistry:
    """Named limiter instances; callers pick which one to consult."""

    def __init__(self, limiters: dict[str, SlidingWindowRateLimiter] | None = None):
        self._limiters: dict[str, SlidingWindowRateLimiter] = dict(limiters or {})

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        redis_client=None,
        clock: Callable[[], float] = time.time,
    ) -> "RateLimiterRegistry":
        """Build the default, strict and auth presets."""
        settings = settings or get_settings()
        rl = settings.rate_limit
        use_redis = rl.RATE_LIMIT_BACKEND == "redis" and redis_client is not None
        if rl.RATE_LIMIT_BACKEND == "redis" and redis_client is None:
            logger.warning(
                "Redis rate limit store requested without a Redis client, using in-memory store",
                stage="RL.0.FALLBACK",
            )

        registry = cls()
        presets = {
            "default": rl.RATE_LIMIT_DEFAULT,
            "strict": rl.RATE_LIMIT_STRICT,
            "auth": rl.RATE_LIMIT_AUTH,
        }
        for name, rate in presets.items():
            limit, window = parse_rate(rate)
            store = (
                RedisWindowStore(redis_client, name)
                if use_redis
                else InMemoryWindowStore(rl.RATE_LIMIT_MAX_IDENTIFIERS)
            )
            registry.register(
                SlidingWindowRateLimiter(name, limit, window, store=store, clock=clock)
            )
        return registry

    def register(self, limiter: SlidingWindowRateLimiter) -> None:
        self._limiters[limiter.name] = limiter

    def get(self, name: str) -> SlidingWindowRateLimiter:
        try:
            return self._limiters[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown rate limiter '{name}'",
                details={"available": sorted(self._limiters)},
            ) from None

    def names(self) -> list[str]:
        return list(self._limiters)

    def stats(self) -> dict[str, dict[str, Any]]:
        return {name: limiter.stats() for name, limiter in self._limiters.items()}


# ============================================================================
# Identifier Strategies
# ============================================================================

IdentifierStrategy = Callable[[Request], str]


def authenticated_identifier(request: Request) -> str | None:
    """
    Identity of an authenticated caller, or None.

    Priority: X-User-ID header > Authorization bearer token hash
    """
    user_id = request.headers.get(HEADER_USER_ID)
    if user_id:
        return f"user:{user_id}"

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        # Hash the token for privacy
        token_hash = hashlib.md5(auth_header.encode()).hexdigest()[:16]
        return f"token:{token_hash}"

    return None


def network_identifier(request: Request) -> str:
    """Network origin: first X-Forwarded-For hop, X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return f"ip:{first_hop}"

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return f"ip:{real_ip.strip()}"

    return f"ip:{get_remote_address(request)}"


def default_identifier(request: Request) -> str:
    return authenticated_identifier(request) or network_identifier(request)
