"""
Cache Module

Query result caching (Redis or in-memory) with central invalidation rules.
"""

from .cache_keys import CacheKeys, CacheTTL, canonical_key
from .cache_manager import (
    CacheService,
    InMemoryCacheBackend,
    RedisCacheBackend,
)
from .invalidation import (
    CacheInvalidator,
    ResourceType,
    extract_resource_from_path,
    resource_patterns,
)
from .redis_client import RedisClient

__all__ = [
    "CacheKeys",
    "CacheTTL",
    "canonical_key",
    "CacheService",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "CacheInvalidator",
    "ResourceType",
    "extract_resource_from_path",
    "resource_patterns",
    "RedisClient",
]
