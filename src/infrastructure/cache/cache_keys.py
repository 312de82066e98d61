"""
Cache Key Builders and TTLs

Every cached value is addressed by a key built here, so the invalidation
patterns in `invalidation.py` can be checked against one list of shapes.

Key shapes:
    products:{id}
    products:category:{category}
    products:search:{query}
    products:featured
    bundles:{id}
    bundles:calc:{id-id-...}
    pricing:rules:active
    pricing:calc:{product_id}:{quantity}
    session:{user_id}
    outfits:{id}
    searches:popular
"""

import hashlib
from collections.abc import Iterable
from typing import Any

import orjson

from src.core.config.settings import Settings, get_settings


def _normalize(value: Any) -> Any:
    """Order-independent form of a parameter value."""
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize(v) for v in value]
        return sorted(items, key=lambda item: orjson.dumps(item, option=orjson.OPT_SORT_KEYS))
    return value


def canonical_key(prefix: str, **params: Any) -> str:
    """
    Deterministic key for an aggregate computed from `params`.

    Parameter order, dict key order and list element order do not change
    the key; parameters set to None are treated as absent.

    Example:
        >>> canonical_key("bundles:calc", product_ids=[3, 1], tier="gold") == \\
        ...     canonical_key("bundles:calc", tier="gold", product_ids=[1, 3])
        True
    """
    normalized = _normalize(params)
    payload = orjson.dumps(normalized, option=orjson.OPT_SORT_KEYS, default=str)
    return f"{prefix}:{hashlib.md5(payload).hexdigest()}"


class CacheKeys:
    """Key builders for every cached resource."""

    @staticmethod
    def product(product_id: Any) -> str:
        return f"products:{product_id}"

    @staticmethod
    def product_category(category: str) -> str:
        return f"products:category:{category}"

    @staticmethod
    def product_search(query: str) -> str:
        return f"products:search:{query.strip().lower()}"

    @staticmethod
    def featured_products() -> str:
        return "products:featured"

    @staticmethod
    def bundle(bundle_id: Any) -> str:
        return f"bundles:{bundle_id}"

    @staticmethod
    def bundle_calculation(product_ids: Iterable[Any]) -> str:
        """Same key for any ordering of the same product ids."""
        return f"bundles:calc:{'-'.join(sorted(str(pid) for pid in product_ids))}"

    @staticmethod
    def pricing_rules() -> str:
        return "pricing:rules:active"

    @staticmethod
    def pricing_calculation(product_id: Any, quantity: int) -> str:
        return f"pricing:calc:{product_id}:{quantity}"

    @staticmethod
    def user_session(user_id: Any) -> str:
        return f"session:{user_id}"

    @staticmethod
    def outfit(outfit_id: Any) -> str:
        return f"outfits:{outfit_id}"

    @staticmethod
    def popular_searches() -> str:
        return "searches:popular"


def key_prefix(key: str) -> str:
    """First segment of a key, used to group hit/miss statistics."""
    return key.split(":", 1)[0] if ":" in key else key


class CacheTTL:
    """Per-content TTLs in seconds, read from settings."""

    def __init__(self, settings: Settings | None = None):
        cache = (settings or get_settings()).cache
        self.default = cache.CACHE_DEFAULT_TTL
        self.product_catalog = cache.CACHE_TTL_PRODUCT_CATALOG
        self.bundle_calculations = cache.CACHE_TTL_BUNDLE_CALCULATIONS
        self.pricing_rules = cache.CACHE_TTL_PRICING_RULES
        self.popular_searches = cache.CACHE_TTL_POPULAR_SEARCHES
        self.user_session = cache.CACHE_TTL_USER_SESSION

    def for_key(self, key: str) -> int:
        """TTL matching the shape of a key."""
        if key.startswith("bundles:calc:"):
            return self.bundle_calculations
        if key.startswith("products:search:") or key == CacheKeys.popular_searches():
            return self.popular_searches
        prefix = key_prefix(key)
        return {
            "products": self.product_catalog,
            "bundles": self.product_catalog,
            "outfits": self.product_catalog,
            "pricing": self.pricing_rules,
            "session": self.user_session,
        }.get(prefix, self.default)
