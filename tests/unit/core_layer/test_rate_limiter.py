"""
Unit Tests for SlidingWindowRateLimiter

Tests sliding-window admission, LRU bounding of tracked identifiers,
fail-open behavior, named presets and caller identification.
"""

import pytest
from starlette.requests import Request

from src.core.exceptions import ConfigurationError, RateLimitExceededError
from src.core.resilience.rate_limiter import (
    InMemoryWindowStore,
    RateLimiterRegistry,
    RedisWindowStore,
    SlidingWindowRateLimiter,
    default_identifier,
    identifier_type,
    network_identifier,
    parse_rate,
)
from tests.test_fixtures import build_settings


def make_request(headers: dict[str, str] | None = None, client: str = "10.0.0.1") -> Request:
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/api/products",
            "headers": raw_headers,
            "client": (client, 51234),
        }
    )


class BrokenStore:
    backend = "broken"

    async def hit(self, identifier, now, window, limit):
        raise ConnectionError("store unreachable")

    def size(self):
        return None


@pytest.fixture
def limiter(fake_clock):
    return SlidingWindowRateLimiter("default", limit=3, window_seconds=60, clock=fake_clock)


@pytest.mark.unit
class TestSlidingWindow:
    async def test_admits_up_to_limit_then_rejects(self, limiter):
        results = [await limiter.check("ip:1.2.3.4") for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_identifiers_are_independent(self, limiter):
        for _ in range(3):
            await limiter.check("ip:1.2.3.4")

        assert await limiter.check("ip:5.6.7.8") is True

    async def test_requests_age_out_of_window(self, limiter, fake_clock):
        for _ in range(3):
            await limiter.check("ip:1.2.3.4")
        assert await limiter.check("ip:1.2.3.4") is False

        fake_clock.advance(60)
        assert await limiter.check("ip:1.2.3.4") is True

    async def test_window_slides_per_request(self, limiter, fake_clock):
        await limiter.check("ip:1.2.3.4")
        fake_clock.advance(30)
        await limiter.check("ip:1.2.3.4")
        await limiter.check("ip:1.2.3.4")

        fake_clock.advance(30)
        # Only the first request has left the window
        assert await limiter.check("ip:1.2.3.4") is True
        assert await limiter.check("ip:1.2.3.4") is False

    async def test_rejected_requests_do_not_consume_capacity(self, limiter, fake_clock):
        for _ in range(10):
            await limiter.check("ip:1.2.3.4")

        fake_clock.advance(60)
        results = [await limiter.check("ip:1.2.3.4") for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_decision_reports_remaining_and_reset(self, limiter, fake_clock):
        first = await limiter.check_detailed("user:42")
        fake_clock.advance(10)
        second = await limiter.check_detailed("user:42")

        assert first.remaining == 2
        assert second.remaining == 1
        assert second.reset_after == pytest.approx(50)
        assert second.headers()["X-RateLimit-Limit"] == "3"

    async def test_enforce_raises_with_retry_after(self, limiter, fake_clock):
        for _ in range(3):
            await limiter.enforce("user:42")
        fake_clock.advance(15)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.enforce("user:42")

        assert exc_info.value.retry_after == pytest.approx(45)
        assert exc_info.value.limit == 3
        assert exc_info.value.identifier == "user:42"

    async def test_per_call_limit_override(self, limiter):
        assert await limiter.check("ip:1.2.3.4", limit=1) is True
        assert await limiter.check("ip:1.2.3.4", limit=1) is False

    async def test_zero_limit_override_refuses_everything(self, limiter):
        decision = await limiter.check_detailed("ip:1.2.3.4", limit=0)

        assert decision.allowed is False
        assert decision.limit == 0

    def test_rejects_non_positive_configuration(self):
        with pytest.raises(ConfigurationError):
            SlidingWindowRateLimiter("bad", limit=0, window_seconds=60)


@pytest.mark.unit
class TestIdentifierBound:
    async def test_least_recently_seen_identifier_is_evicted(self, fake_clock):
        store = InMemoryWindowStore(max_identifiers=2)
        limiter = SlidingWindowRateLimiter("default", 3, 60, store=store, clock=fake_clock)

        await limiter.check("ip:a")
        await limiter.check("ip:b")
        await limiter.check("ip:a")
        await limiter.check("ip:c")

        assert store.size() == 2
        assert store.get_bucket("ip:b") is None
        assert store.get_bucket("ip:a") is not None

    async def test_evicted_identifier_starts_fresh(self, fake_clock):
        store = InMemoryWindowStore(max_identifiers=1)
        limiter = SlidingWindowRateLimiter("default", 1, 60, store=store, clock=fake_clock)

        await limiter.check("ip:a")
        await limiter.check("ip:b")

        assert await limiter.check("ip:a") is True

    def test_stats(self, limiter):
        stats = limiter.stats()
        assert stats == {"size": 0, "max": 500, "limit": 3, "window": 60.0, "backend": "memory"}


@pytest.mark.unit
class TestFailOpen:
    async def test_store_failure_admits_request(self, fake_clock):
        limiter = SlidingWindowRateLimiter("default", 1, 60, store=BrokenStore(), clock=fake_clock)

        assert await limiter.check("ip:1.2.3.4") is True
        assert await limiter.check("ip:1.2.3.4") is True

    async def test_redis_failure_admits_request(self, fake_redis, fake_clock):
        limiter = SlidingWindowRateLimiter(
            "default", 1, 60, store=RedisWindowStore(fake_redis, "default"), clock=fake_clock
        )
        fake_redis.fail = True

        decision = await limiter.enforce("ip:1.2.3.4")
        assert decision.allowed is True


@pytest.mark.unit
class TestRedisWindowStore:
    async def test_sliding_window_over_sorted_set(self, fake_redis, fake_clock):
        limiter = SlidingWindowRateLimiter(
            "strict", 2, 60, store=RedisWindowStore(fake_redis, "strict"), clock=fake_clock
        )

        assert await limiter.check("user:7") is True
        assert await limiter.check("user:7") is True
        assert await limiter.check("user:7") is False
        assert len(fake_redis.zsets["ratelimit:strict:user:7"]) == 2

        fake_clock.advance(61)
        assert await limiter.check("user:7") is True

    async def test_key_expires_with_window(self, fake_redis, fake_clock):
        store = RedisWindowStore(fake_redis, "auth")
        await store.hit("ip:9.9.9.9", fake_clock(), 900, 5)

        assert fake_redis.expiry["ratelimit:auth:ip:9.9.9.9"] == fake_clock() + 900

    async def test_admission_is_one_round_trip(self, fake_redis, fake_clock):
        store = RedisWindowStore(fake_redis, "default")

        assert await store.hit("ip:1.2.3.4", fake_clock(), 60, 1) == (True, 1, fake_clock())
        assert fake_redis.commands == ["PIPELINE"]

    async def test_refused_request_is_removed_again(self, fake_redis, fake_clock):
        store = RedisWindowStore(fake_redis, "default")
        await store.hit("ip:1.2.3.4", fake_clock(), 60, 1)
        fake_clock.advance(5)

        allowed, count, oldest = await store.hit("ip:1.2.3.4", fake_clock(), 60, 1)

        assert (allowed, count) == (False, 1)
        assert oldest == fake_clock() - 5
        assert fake_redis.commands == ["PIPELINE", "PIPELINE", "ZREM"]
        assert len(fake_redis.zsets["ratelimit:default:ip:1.2.3.4"]) == 1


@pytest.mark.unit
class TestRegistry:
    def test_parse_rate(self):
        assert parse_rate("60/minute") == (60, 60.0)
        assert parse_rate("5/15 minutes") == (5, 900.0)

    def test_presets_from_settings(self):
        registry = RateLimiterRegistry.from_settings(build_settings())

        assert registry.names() == ["default", "strict", "auth"]
        assert registry.get("default").limit == 60
        assert registry.get("strict").limit == 10
        assert registry.get("auth").window == 900.0

    def test_presets_use_redis_when_configured(self, fake_redis):
        registry = RateLimiterRegistry.from_settings(build_settings(RATE_LIMIT_BACKEND="redis"), fake_redis)
        assert registry.get("default").store.backend == "redis"

    def test_unknown_limiter_is_configuration_error(self):
        registry = RateLimiterRegistry.from_settings(build_settings())
        with pytest.raises(ConfigurationError):
            registry.get("bulk")

    async def test_presets_are_independent(self, fake_clock):
        registry = RateLimiterRegistry.from_settings(build_settings(), clock=fake_clock)
        for _ in range(5):
            await registry.get("auth").check("ip:1.1.1.1")

        assert await registry.get("auth").check("ip:1.1.1.1") is False
        assert await registry.get("default").check("ip:1.1.1.1") is True


@pytest.mark.unit
class TestIdentifiers:
    def test_user_header_wins(self):
        request = make_request({"X-User-ID": "42", "Authorization": "Bearer abc"})
        assert default_identifier(request) == "user:42"

    def test_bearer_token_is_hashed(self):
        identifier = default_identifier(make_request({"Authorization": "Bearer secret-token"}))
        assert identifier.startswith("token:")
        assert "secret-token" not in identifier
        assert len(identifier) == len("token:") + 16

    def test_forwarded_for_first_hop(self):
        request = make_request({"X-Forwarded-For": "203.0.113.9, 10.0.0.2"})
        assert network_identifier(request) == "ip:203.0.113.9"

    def test_real_ip_header(self):
        assert network_identifier(make_request({"X-Real-IP": "198.51.100.4"})) == "ip:198.51.100.4"

    def test_falls_back_to_socket_address(self):
        assert default_identifier(make_request(client="192.0.2.10")) == "ip:192.0.2.10"

    def test_identifier_type(self):
        assert identifier_type("user:42") == "user"
        assert identifier_type("anonymous") == "unknown"
