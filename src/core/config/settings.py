#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
resilient data-access layer. Every knob (pool sizing, timeouts, breaker
thresholds, rate limits, cache TTLs) is read once at startup and frozen.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Frozen instance: configuration is immutable after startup
- Easy testing with reload_settings()

Author: System Architect
Date: 2025-12-05
"""

from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """
    PostgreSQL pool configuration for the write (primary) and read (replica) pools.

    STAGE-0.1: Database pool configuration

    Architectural Decision: Separate pools for reads and writes
    - Writer pool is kept small (upstream enforces a hard connection cap)
    - Reader pool is larger and tolerates longer statements
    - Without DATABASE_READONLY_URL the read pool aliases the write pool
    """

    DATABASE_URL: str = Field(default="postgresql://localhost:5432/ecommerce")
    DATABASE_READONLY_URL: str | None = Field(default=None)

    DATABASE_POOL_SIZE: int = Field(default=10)
    DATABASE_POOL_MIN: int = Field(default=1)
    DATABASE_READ_POOL_SIZE: int = Field(default=15)
    DATABASE_READ_POOL_MIN: int = Field(default=2)

    DATABASE_WRITE_IDLE_TIMEOUT_MS: int = Field(default=5000)
    DATABASE_READ_IDLE_TIMEOUT_MS: int = Field(default=15000)
    DATABASE_CONNECT_TIMEOUT_MS: int = Field(default=2000)
    DATABASE_WRITE_STATEMENT_TIMEOUT_MS: int = Field(default=25000)
    DATABASE_READ_STATEMENT_TIMEOUT_MS: int = Field(default=45000)

    DATABASE_HEALTH_CHECK_INTERVAL: float = Field(default=30.0)
    DATABASE_HEALTH_CHECK_TIMEOUT: float = Field(default=5.0)
    DATABASE_RETRY_BASE_DELAY: float = Field(default=1.0)
    DATABASE_RETRY_MAX_DELAY: float = Field(default=5.0)

    DATABASE_SLOW_READ_MS: float = Field(default=200.0)
    DATABASE_SLOW_WRITE_MS: float = Field(default=500.0)
    DATABASE_APP_NAME: str = Field(default="ecommerce")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True, frozen=True)


class RedisSettings(BaseSettings):
    """
    Redis configuration for shared breaker state, rate windows and caching.

    STAGE-0.2: Redis connection configuration
    """

    REDIS_ENABLED: bool = Field(default=True, description="Use Redis for shared state")
    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_MAX_CONNECTIONS: int = Field(default=50, description="Maximum pooled connections")
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=30, description="Health check interval in seconds")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True, frozen=True)


class CircuitBreakerSettings(BaseSettings):
    """
    Circuit breaker configuration for fault tolerance.

    STAGE-CB: Circuit breaker thresholds

    Architectural Decision: custom breaker with pluggable state store
    - "redis": state shared by every instance, local fallback on store errors
    - "memory": single-instance deployments
    """

    CB_BACKEND: Literal["redis", "memory"] = Field(default="redis")
    CB_FAILURE_THRESHOLD: int = Field(default=5, description="Failures before opening circuit")
    CB_RECOVERY_TIMEOUT: float = Field(default=60.0, description="Seconds before a probe is allowed")
    CB_SUCCESS_THRESHOLD: int = Field(default=3, description="HALF_OPEN successes to close circuit")
    CB_STATE_TTL: int = Field(default=300, description="Expiry of shared breaker state (seconds)")
    CB_REFRESH_INTERVAL: float = Field(default=1.0, description="Seconds local breaker state is trusted before re-reading the store")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True, frozen=True)


class RateLimitSettings(BaseSettings):
    """
    Rate limiting configuration.

    STAGE-RL: Rate limiting thresholds

    Limits use the slowapi / limits notation ("60/minute", "5/15 minutes").
    """

    RATE_LIMIT_BACKEND: Literal["memory", "redis"] = Field(default="memory")
    RATE_LIMIT_DEFAULT: str = Field(default="60/minute", description="Public read limit")
    RATE_LIMIT_STRICT: str = Field(default="10/minute", description="Sensitive operation limit")
    RATE_LIMIT_AUTH: str = Field(default="5/15 minutes", description="Authentication limit")
    RATE_LIMIT_MAX_IDENTIFIERS: int = Field(default=500, description="LRU bound on tracked identifiers")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True, frozen=True)


class CacheSettings(BaseSettings):
    """
    Caching configuration.

    STAGE-CACHE: Cache TTL configuration

    Optimization: Different TTLs for different content types
    """

    CACHE_ENABLED: bool = Field(default=True)
    CACHE_BACKEND: Literal["redis", "memory"] = Field(default="redis")
    CACHE_DEFAULT_TTL: int = Field(default=300)
    CACHE_L1_MAX_SIZE: int = Field(default=1000, description="In-memory backend max entries")

    CACHE_TTL_PRODUCT_CATALOG: int = Field(default=300)
    CACHE_TTL_BUNDLE_CALCULATIONS: int = Field(default=3600)
    CACHE_TTL_PRICING_RULES: int = Field(default=600)
    CACHE_TTL_POPULAR_SEARCHES: int = Field(default=1800)
    CACHE_TTL_USER_SESSION: int = Field(default=900)

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True, frozen=True)


class PerformanceSettings(BaseSettings):
    """
    Query performance monitor thresholds.

    STAGE-PM: Performance thresholds
    """

    PERF_SLOW_QUERY_MS: float = Field(default=1000.0)
    PERF_HIGH_ERROR_RATE: float = Field(default=5.0, description="Percent")
    PERF_LOW_READ_OFFLOAD_PCT: float = Field(default=30.0, description="Percent")
    PERF_MAX_ENDPOINTS: int = Field(default=1000, description="Endpoints tracked before the least recently used is evicted")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True, frozen=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration for structured logging.

    STAGE-L: Logging configuration
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True, frozen=True)


class ApplicationSettings(BaseSettings):
    """
    General application settings.

    STAGE-0: Application initialization
    """

    ENVIRONMENT: Literal["development", "test", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    DEBUG: bool = Field(default=False, description="Debug mode")
    APP_NAME: str = Field(default="Ecommerce Data Access Service", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    API_HOST: str = Field(default="0.0.0.0", description="API host")
    API_PORT: int = Field(default=8000, description="API port")
    API_BASE_PATH: str = Field(default="/api/v1", description="Prefix for all routers")
    CORS_ORIGINS: list[str] = Field(default=["*"], description="Allowed CORS origins")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True, frozen=True)


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration sections.

    STAGE-0: Centralized configuration initialization

    Usage:
        from src.core.config.settings import get_settings

        settings = get_settings()
        write_url = settings.database.DATABASE_URL
        threshold = settings.circuit_breaker.CB_FAILURE_THRESHOLD
    """

    # Database settings
    DATABASE_URL: str = Field(default="postgresql://localhost:5432/ecommerce", description="Primary DSN")
    DATABASE_READONLY_URL: str | None = Field(default=None, description="Read replica DSN (optional)")
    DATABASE_POOL_SIZE: int = Field(default=10, description="Write pool max size")
    DATABASE_POOL_MIN: int = Field(default=1, description="Write pool min size")
    DATABASE_READ_POOL_SIZE: int = Field(default=15, description="Read pool max size")
    DATABASE_READ_POOL_MIN: int = Field(default=2, description="Read pool min size")
    DATABASE_WRITE_IDLE_TIMEOUT_MS: int = Field(default=5000)
    DATABASE_READ_IDLE_TIMEOUT_MS: int = Field(default=15000)
    DATABASE_CONNECT_TIMEOUT_MS: int = Field(default=2000)
    DATABASE_WRITE_STATEMENT_TIMEOUT_MS: int = Field(default=25000)
    DATABASE_READ_STATEMENT_TIMEOUT_MS: int = Field(default=45000)
    DATABASE_HEALTH_CHECK_INTERVAL: float = Field(default=30.0, description="Seconds between pool probes")
    DATABASE_HEALTH_CHECK_TIMEOUT: float = Field(default=5.0, description="Per-probe timeout (seconds)")
    DATABASE_RETRY_BASE_DELAY: float = Field(default=1.0, description="Retry delay per attempt (seconds)")
    DATABASE_RETRY_MAX_DELAY: float = Field(default=5.0, description="Retry delay cap (seconds)")
    DATABASE_SLOW_READ_MS: float = Field(default=200.0)
    DATABASE_SLOW_WRITE_MS: float = Field(default=500.0)
    DATABASE_APP_NAME: str = Field(default="ecommerce")

    # Redis settings
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_HOST: str = Field(default="localhost", description="Redis server host")
    REDIS_PORT: int = Field(default=6379, description="Redis server port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: str | None = Field(default=None, description="Redis password (if required)")
    REDIS_MAX_CONNECTIONS: int = Field(default=50)
    REDIS_SOCKET_TIMEOUT: int = Field(default=5, description="Socket timeout in seconds")
    REDIS_SOCKET_CONNECT_TIMEOUT: int = Field(default=5, description="Connection timeout in seconds")
    REDIS_HEALTH_CHECK_INTERVAL: int = Field(default=30, description="Health check interval in seconds")

    # Circuit Breaker settings
    CB_BACKEND: Literal["redis", "memory"] = Field(default="redis")
    CB_FAILURE_THRESHOLD: int = Field(default=5, description="Failures before opening circuit")
    CB_RECOVERY_TIMEOUT: float = Field(default=60.0, description="Seconds before a probe is allowed")
    CB_SUCCESS_THRESHOLD: int = Field(default=3, description="HALF_OPEN successes to close circuit")
    CB_STATE_TTL: int = Field(default=300, description="Expiry of shared breaker state (seconds)")
    CB_REFRESH_INTERVAL: float = Field(default=1.0, description="Seconds local breaker state is trusted before re-reading the store")

    # Rate Limiting settings
    RATE_LIMIT_BACKEND: Literal["memory", "redis"] = Field(default="memory")
    RATE_LIMIT_DEFAULT: str = Field(default="60/minute", description="Public read limit")
    RATE_LIMIT_STRICT: str = Field(default="10/minute", description="Sensitive operation limit")
    RATE_LIMIT_AUTH: str = Field(default="5/15 minutes", description="Authentication limit")
    RATE_LIMIT_MAX_IDENTIFIERS: int = Field(default=500, description="LRU bound on tracked identifiers")

    # Cache settings
    CACHE_ENABLED: bool = Field(default=True)
    CACHE_BACKEND: Literal["redis", "memory"] = Field(default="redis")
    CACHE_DEFAULT_TTL: int = Field(default=300)
    CACHE_L1_MAX_SIZE: int = Field(default=1000)
    CACHE_TTL_PRODUCT_CATALOG: int = Field(default=300)
    CACHE_TTL_BUNDLE_CALCULATIONS: int = Field(default=3600)
    CACHE_TTL_PRICING_RULES: int = Field(default=600)
    CACHE_TTL_POPULAR_SEARCHES: int = Field(default=1800)
    CACHE_TTL_USER_SESSION: int = Field(default=900)

    # Performance monitor settings
    PERF_SLOW_QUERY_MS: float = Field(default=1000.0)
    PERF_HIGH_ERROR_RATE: float = Field(default=5.0)
    PERF_LOW_READ_OFFLOAD_PCT: float = Field(default=30.0)
    PERF_MAX_ENDPOINTS: int = Field(default=1000)

    # Logging settings
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    # Application settings
    ENVIRONMENT: Literal["development", "test", "staging", "production"] = Field(
        default="development",
        description="Application environment"
    )
    DEBUG: bool = Field(default=False, description="Debug mode")
    APP_NAME: str = Field(default="Ecommerce Data Access Service", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    API_HOST: str = Field(default="0.0.0.0", description="API host")
    API_PORT: int = Field(default=8000, description="API port")
    API_BASE_PATH: str = Field(default="/api/v1", description="Prefix for all routers")
    CORS_ORIGINS: list[str] = Field(default=["*"], description="Allowed CORS origins")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_pool_sizes(self):
        """Both pools need a positive size and min <= max."""
        pools = {
            "write": (self.DATABASE_POOL_MIN, self.DATABASE_POOL_SIZE),
            "read": (self.DATABASE_READ_POOL_MIN, self.DATABASE_READ_POOL_SIZE),
        }
        for role, (min_size, max_size) in pools.items():
            if max_size <= 0 or min_size < 0:
                raise ValueError(f"{role} pool sizes must be positive (min={min_size}, max={max_size})")
            if min_size > max_size:
                raise ValueError(f"{role} pool min size {min_size} exceeds max size {max_size}")
        return self

    # Nested configuration views
    @property
    def database(self) -> 'DatabaseSettings':
        """Get database pool settings."""
        return DatabaseSettings(
            **{name: getattr(self, name) for name in DatabaseSettings.model_fields}
        )

    @property
    def redis(self) -> 'RedisSettings':
        """Get Redis settings."""
        return RedisSettings(
            **{name: getattr(self, name) for name in RedisSettings.model_fields}
        )

    @property
    def circuit_breaker(self) -> 'CircuitBreakerSettings':
        """Get circuit breaker settings."""
        return CircuitBreakerSettings(
            CB_BACKEND=self.CB_BACKEND,
            CB_FAILURE_THRESHOLD=self.CB_FAILURE_THRESHOLD,
            CB_RECOVERY_TIMEOUT=self.CB_RECOVERY_TIMEOUT,
            CB_SUCCESS_THRESHOLD=self.CB_SUCCESS_THRESHOLD,
            CB_STATE_TTL=self.CB_STATE_TTL,
            CB_REFRESH_INTERVAL=self.CB_REFRESH_INTERVAL,
        )

    @property
    def rate_limit(self) -> 'RateLimitSettings':
        """Get rate limit settings."""
        return RateLimitSettings(
            RATE_LIMIT_BACKEND=self.RATE_LIMIT_BACKEND,
            RATE_LIMIT_DEFAULT=self.RATE_LIMIT_DEFAULT,
            RATE_LIMIT_STRICT=self.RATE_LIMIT_STRICT,
            RATE_LIMIT_AUTH=self.RATE_LIMIT_AUTH,
            RATE_LIMIT_MAX_IDENTIFIERS=self.RATE_LIMIT_MAX_IDENTIFIERS,
        )

    @property
    def cache(self) -> 'CacheSettings':
        """Get cache settings."""
        return CacheSettings(
            **{name: getattr(self, name) for name in CacheSettings.model_fields}
        )

    @property
    def performance(self) -> 'PerformanceSettings':
        """Get performance monitor settings."""
        return PerformanceSettings(
            PERF_SLOW_QUERY_MS=self.PERF_SLOW_QUERY_MS,
            PERF_HIGH_ERROR_RATE=self.PERF_HIGH_ERROR_RATE,
            PERF_LOW_READ_OFFLOAD_PCT=self.PERF_LOW_READ_OFFLOAD_PCT,
            PERF_MAX_ENDPOINTS=self.PERF_MAX_ENDPOINTS,
        )

    @property
    def logging(self) -> 'LoggingSettings':
        """Get logging settings."""
        return LoggingSettings(LOG_LEVEL=self.LOG_LEVEL, LOG_FORMAT=self.LOG_FORMAT)

    @property
    def app(self) -> 'ApplicationSettings':
        """Get application settings."""
        return ApplicationSettings(
            ENVIRONMENT=self.ENVIRONMENT,
            DEBUG=self.DEBUG,
            APP_NAME=self.APP_NAME,
            APP_VERSION=self.APP_VERSION,
            API_HOST=self.API_HOST,
            API_PORT=self.API_PORT,
            API_BASE_PATH=self.API_BASE_PATH,
            CORS_ORIGINS=self.CORS_ORIGINS,
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        frozen=True,
        extra="ignore"  # Ignore extra environment variables
    )


# Global settings instance (lazy singleton)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton).

    STAGE-0.3: Settings initialization

    Returns:
        Settings: Global settings instance
    """
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        Settings: New settings instance
    """
    global _settings
    _settings = Settings()
    return _settings
