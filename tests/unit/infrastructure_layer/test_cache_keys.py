"""
Unit Tests for Cache Key Builders
"""

import pytest

from src.infrastructure.cache.cache_keys import CacheKeys, CacheTTL, canonical_key, key_prefix
from tests.test_fixtures import build_settings


@pytest.mark.unit
class TestCanonicalKey:
    def test_parameter_order_does_not_matter(self):
        first = canonical_key("bundles:calc", product_ids=[3, 1, 2], tier="gold")
        second = canonical_key("bundles:calc", tier="gold", product_ids=[1, 2, 3])

        assert first == second
        assert first.startswith("bundles:calc:")

    def test_nested_dict_order_does_not_matter(self):
        first = canonical_key("pricing:calc", filters={"size": "42", "color": "navy"})
        second = canonical_key("pricing:calc", filters={"color": "navy", "size": "42"})
        assert first == second

    def test_none_parameters_are_ignored(self):
        assert canonical_key("products:search", q="suit", page=None) == canonical_key(
            "products:search", q="suit"
        )

    def test_different_values_give_different_keys(self):
        assert canonical_key("bundles:calc", product_ids=[1, 2]) != canonical_key(
            "bundles:calc", product_ids=[1, 3]
        )


@pytest.mark.unit
class TestCacheKeys:
    def test_key_shapes(self):
        assert CacheKeys.product(42) == "products:42"
        assert CacheKeys.product_category("suits") == "products:category:suits"
        assert CacheKeys.product_search("  Navy Suit ") == "products:search:navy suit"
        assert CacheKeys.featured_products() == "products:featured"
        assert CacheKeys.pricing_rules() == "pricing:rules:active"
        assert CacheKeys.pricing_calculation(7, 3) == "pricing:calc:7:3"
        assert CacheKeys.user_session("u1") == "session:u1"

    def test_bundle_calculation_sorts_ids(self):
        assert CacheKeys.bundle_calculation([9, 2, 5]) == CacheKeys.bundle_calculation([5, 9, 2])
        assert CacheKeys.bundle_calculation(["2", "5"]) == "bundles:calc:2-5"

    def test_key_prefix(self):
        assert key_prefix("products:category:suits") == "products"
        assert key_prefix("standalone") == "standalone"


@pytest.mark.unit
class TestCacheTTL:
    def test_ttl_by_key_shape(self):
        ttl = CacheTTL(build_settings())

        assert ttl.for_key("products:42") == 300
        assert ttl.for_key("bundles:calc:1-2") == 3600
        assert ttl.for_key("pricing:rules:active") == 600
        assert ttl.for_key("products:search:suit") == 1800
        assert ttl.for_key("searches:popular") == 1800
        assert ttl.for_key("session:u1") == 900
        assert ttl.for_key("unknown:1") == 300

    def test_ttls_follow_settings(self):
        ttl = CacheTTL(build_settings(CACHE_TTL_PRODUCT_CATALOG=60))
        assert ttl.for_key("outfits:3") == 60
