"""
Cache Invalidation

Maps each mutated resource type to the cache-key patterns it makes stale.
The map is the single source of truth: mutation handlers name WHAT changed,
never which keys to drop.

STAGE-INV.1: Resolve patterns for a resource
STAGE-INV.2: Delete matching keys
STAGE-INV.3: Mutation hook (never raises)

Author: System Architect
Date: 2025-12-14
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from src.core.exceptions import InvalidResourceTypeError
from src.core.logging.logger import get_logger
from src.infrastructure.cache.cache_manager import CacheService
from src.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)

_GLOB_CHARS = frozenset("*?[")


class ResourceType(str, Enum):
    PRODUCT = "product"
    PRICING = "pricing"
    BUNDLE = "bundle"
    ORDER = "order"
    COLLECTION = "collection"
    ALL = "all"


@dataclass(frozen=True)
class InvalidationRule:
    """Key templates for a mutation with and without a known resource id."""

    with_id: tuple[str, ...]
    without_id: tuple[str, ...]


INVALIDATION_RULES: dict[ResourceType, InvalidationRule] = {
    ResourceType.PRODUCT: InvalidationRule(
        with_id=(
            "products:{id}",
            "products:category:{category}:*",
            "products:category:{category}",
            "products:featured",
            "bundles:calc:*",
        ),
        without_id=("products:*", "bundles:*"),
    ),
    ResourceType.PRICING: InvalidationRule(
        with_id=("pricing:*", "bundles:calc:*"),
        without_id=("pricing:*", "bundles:calc:*"),
    ),
    ResourceType.BUNDLE: InvalidationRule(
        with_id=("bundles:{id}", "bundles:calc:*"),
        without_id=("bundles:*",),
    ),
    # Orders move inventory, which shows up in product listings
    ResourceType.ORDER: InvalidationRule(
        with_id=("products:*",),
        without_id=("products:*",),
    ),
    ResourceType.COLLECTION: InvalidationRule(
        with_id=("products:*",),
        without_id=("products:*",),
    ),
    ResourceType.ALL: InvalidationRule(with_id=("*",), without_id=("*",)),
}

# ORM model names (lowercased) -> resource type
MODEL_RESOURCE_MAP: dict[str, ResourceType] = {
    "product": ResourceType.PRODUCT,
    "productvariant": ResourceType.PRODUCT,
    "productimage": ResourceType.PRODUCT,
    "pricingrule": ResourceType.PRICING,
    "pricing": ResourceType.PRICING,
    "collection": ResourceType.COLLECTION,
    "productcollection": ResourceType.COLLECTION,
    "order": ResourceType.ORDER,
    "orderitem": ResourceType.ORDER,
    "bundle": ResourceType.BUNDLE,
    "all": ResourceType.ALL,
}

# Child models that only touch the cache through their parent product
_PRODUCT_CHILD_MODELS = frozenset({"productvariant", "productimage"})

# URL segment -> resource type, checked in order
_PATH_SEGMENTS: tuple[tuple[str, ResourceType], ...] = (
    ("products", ResourceType.PRODUCT),
    ("bundles", ResourceType.BUNDLE),
    ("pricing", ResourceType.PRICING),
    ("orders", ResourceType.ORDER),
    ("collections", ResourceType.COLLECTION),
)


def parse_resource_type(value: "ResourceType | str") -> ResourceType:
    """Accept a ResourceType or its string value (case-insensitive)."""
    if isinstance(value, ResourceType):
        return value
    try:
        return ResourceType(str(value).strip().lower())
    except ValueError:
        raise InvalidResourceTypeError(
            f"Unknown cache resource type: {value!r}",
            details={"resource_type": str(value), "allowed": [t.value for t in ResourceType]},
        ) from None


def resource_patterns(
    resource_type: "ResourceType | str",
    resource_id: Any = None,
    category: str | None = None,
) -> list[str]:
    """
    Key patterns made stale by a mutation.

    Templates referencing `{category}` are skipped when no category is known.

    Example:
        >>> resource_patterns("product", 42)
        ['products:42', 'products:featured', 'bundles:calc:*']
    """
    rtype = parse_resource_type(resource_type)
    rule = INVALIDATION_RULES[rtype]
    templates = rule.with_id if resource_id is not None else rule.without_id

    patterns: list[str] = []
    for template in templates:
        if "{category}" in template and not category:
            continue
        pattern = template.format(id=resource_id, category=category)
        if pattern not in patterns:
            patterns.append(pattern)
    return patterns


def extract_resource_from_path(path: str) -> tuple[ResourceType | None, str | None]:
    """
    Resource type and id named by an API path.

    Example:
        >>> extract_resource_from_path("/api/products/42/variants")
        (<ResourceType.PRODUCT: 'product'>, '42')
    """
    segments = [segment for segment in path.split("/") if segment]
    for segment, rtype in _PATH_SEGMENTS:
        if segment not in segments:
            continue
        if rtype in (ResourceType.PRODUCT, ResourceType.BUNDLE):
            index = segments.index(segment)
            resource_id = segments[index + 1] if index + 1 < len(segments) else None
            return rtype, resource_id
        return rtype, None
    return None, None


class CacheInvalidator:
    """
    Applies the invalidation map against a CacheService.

    Usage:
        invalidator = CacheInvalidator(cache)

        # After a successful write
        await invalidator.invalidate_on_mutation("product", 42, category="suits")

        # Admin action (raises on unknown type)
        await invalidator.invalidate("pricing")
    """

    def __init__(self, cache: CacheService, metrics: MetricsCollector | None = None):
        self._cache = cache
        self._metrics = metrics or get_metrics_collector()

    async def invalidate(
        self,
        resource_type: "ResourceType | str",
        resource_id: Any = None,
        category: str | None = None,
    ) -> int:
        """
        Delete every key the map lists for this resource. Returns keys removed.

        Raises:
            InvalidResourceTypeError: unknown resource type
        """
        rtype = parse_resource_type(resource_type)
        patterns = resource_patterns(rtype, resource_id, category)

        deleted = 0
        for pattern in patterns:
            if _GLOB_CHARS.intersection(pattern):
                deleted += await self._cache.delete_pattern(pattern)
            elif await self._cache.delete(pattern):
                deleted += 1

        self._metrics.record_cache_invalidation(rtype.value, deleted)
        logger.info(
            "Cache invalidated",
            stage="INV.2",
            resource_type=rtype.value,
            resource_id=resource_id,
            patterns=patterns,
            deleted=deleted,
        )
        return deleted

    async def invalidate_on_mutation(
        self,
        resource: "ResourceType | str",
        resource_id: Any = None,
        **context: Any,
    ) -> int:
        """
        Invalidate after a successful mutation.

        `resource` may be a resource type or an ORM model name. Context keys
        understood: `category`, `action` ("create" drops all product
        listings) and `product_id` (for variant/image models).

        Never raises: a failed invalidation leaves entries to expire by TTL.

        STAGE-INV.3: Mutation hook
        """
        try:
            model = str(resource.value if isinstance(resource, ResourceType) else resource).lower()
            rtype = MODEL_RESOURCE_MAP.get(model)
            if rtype is None:
                rtype = parse_resource_type(model)

            if model in _PRODUCT_CHILD_MODELS:
                resource_id = context.get("product_id")
                if resource_id is None:
                    return 0
            elif rtype is ResourceType.PRODUCT and context.get("action") == "create":
                resource_id = None

            return await self.invalidate(rtype, resource_id, context.get("category"))
        except Exception as e:
            logger.warning(
                "Cache invalidation failed, entries will expire by TTL",
                stage="INV.3",
                resource=str(resource),
                resource_id=resource_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return 0
