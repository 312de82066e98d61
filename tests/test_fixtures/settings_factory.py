"""
Settings Test Factory

Settings for tests: in-memory backends, no retry backoff, no probe loop.
"""

from src.core.config.settings import Settings

WRITE_DSN = "postgresql://primary:5432/shop"
READ_DSN = "postgresql://replica:5432/shop"


def build_settings(**overrides) -> Settings:
    """Test settings; keyword arguments override individual fields."""
    values = {
        "ENVIRONMENT": "test",
        "DATABASE_URL": WRITE_DSN,
        "DATABASE_READONLY_URL": READ_DSN,
        "DATABASE_RETRY_BASE_DELAY": 0.0,
        "DATABASE_RETRY_MAX_DELAY": 0.0,
        "DATABASE_HEALTH_CHECK_INTERVAL": 0.0,
        "REDIS_ENABLED": False,
        "CB_BACKEND": "memory",
        "RATE_LIMIT_BACKEND": "memory",
        "CACHE_BACKEND": "memory",
        "LOG_LEVEL": "WARNING",
        "LOG_FORMAT": "console",
    }
    values.update(overrides)
    return Settings(**values)
