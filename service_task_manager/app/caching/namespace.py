"""Cache key builders and TTL policy. Single place for key format.

Keys look like ``tm:tenant:<tenant_id>:<category>:<identifier>[:<sub_key>]``.
Key components must not contain ``KEY_SEP``; tenant ids are glob-escaped
when used in deletion patterns, so a pattern built for one tenant can
never match another tenant's keys.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple, Union

from ..domain.models import CacheCategory

KEY_SEP = ":"
TENANT_SCOPE = "tenant"
TOKEN_INDEX_SCOPE = "token_index"

# Identifier used for per-tenant collections that have no natural id
COLLECTION_IDENTIFIER = "all"

_GLOB_SPECIAL = "\\*?[]"

DEFAULT_BASE_TTLS: Mapping[CacheCategory, int] = MappingProxyType({
    CacheCategory.TASK: 3600,
    CacheCategory.TASK_LIST: 1800,
    CacheCategory.OVERDUE_LIST: 900,
    CacheCategory.STATISTICS: 1800,
    CacheCategory.TOKEN: 300,
    CacheCategory.USER: 600,
})

DEFAULT_ACTIVITY_DISCOUNT = 0.7

Category = Union[CacheCategory, str]


def _validate_key_component(value: str, name: str) -> None:
    """Raise ValueError if value is empty or contains the key separator."""
    if not value:
        raise ValueError(f"Cache key component {name!r} must not be empty")
    if KEY_SEP in value:
        raise ValueError(
            f"Cache key component {name!r} must not contain separator {KEY_SEP!r}"
        )


def _validate_key_components(components: Iterable[Tuple[str, str]]) -> None:
    for value, name in components:
        _validate_key_component(value, name)


def escape_glob(value: str) -> str:
    """Escape glob metacharacters so ``value`` only matches itself in SCAN MATCH."""
    return "".join("\\" + ch if ch in _GLOB_SPECIAL else ch for ch in value)


def _category_value(category: Category) -> str:
    return category.value if isinstance(category, CacheCategory) else str(category)


@dataclass(frozen=True)
class TTLPolicy:
    """Base TTL per category plus the discount applied for active tenants."""

    base_ttls: Mapping[CacheCategory, int] = field(default_factory=lambda: DEFAULT_BASE_TTLS)
    activity_discount: float = DEFAULT_ACTIVITY_DISCOUNT

    def __post_init__(self):
        if not 0 < self.activity_discount < 1:
            raise ValueError("activity_discount must be between 0 and 1 (exclusive)")
        for category, seconds in self.base_ttls.items():
            # A discounted TTL must still be at least one second and strictly shorter
            if seconds < 2:
                raise ValueError(f"Base TTL for {category} must be at least 2 seconds")
        object.__setattr__(self, "base_ttls", MappingProxyType(dict(self.base_ttls)))

    def resolve_ttl(self, category: Category, is_active_tenant: bool) -> int:
        try:
            base = self.base_ttls[CacheCategory(_category_value(category))]
        except (KeyError, ValueError):
            raise ValueError(f"No TTL policy for cache category {category!r}") from None
        if not is_active_tenant:
            return base
        # Tolerate float noise such as 300 * 0.7 == 209.99999999999997
        discounted = int(base * self.activity_discount + 1e-9)
        return min(base - 1, max(1, discounted))


class CacheNamespace:
    """Deterministic tenant-scoped key construction and TTL resolution.

    Pure functions over (tenant id, category, identifier, sub key); holds no
    mutable state.
    """

    def __init__(self, prefix: str = "tm", ttl_policy: Optional[TTLPolicy] = None):
        _validate_key_component(prefix, "prefix")
        self.prefix = prefix
        self.ttl_policy = ttl_policy or TTLPolicy()

    def _tenant_root(self, tenant_id: str) -> str:
        return KEY_SEP.join((self.prefix, TENANT_SCOPE, tenant_id))

    def build_key(self, tenant_id: str, category: Category,
                  identifier: Optional[str] = None, sub_key: Optional[str] = None) -> str:
        """Key for one cache entry. Collections without an id use ``all``."""
        tenant_id = str(tenant_id)
        category_value = _category_value(category)
        identifier = COLLECTION_IDENTIFIER if identifier is None else str(identifier)
        _validate_key_components([
            (tenant_id, "tenant_id"),
            (category_value, "category"),
            (identifier, "identifier"),
        ])
        parts = [self._tenant_root(tenant_id), category_value, identifier]
        if sub_key is not None:
            sub_key = str(sub_key)
            _validate_key_component(sub_key, "sub_key")
            parts.append(sub_key)
        return KEY_SEP.join(parts)

    def build_pattern(self, tenant_id: str, category: Category) -> str:
        """Glob matching all and only ``tenant_id``'s entries of ``category``."""
        tenant_id = str(tenant_id)
        category_value = _category_value(category)
        _validate_key_components([(tenant_id, "tenant_id"), (category_value, "category")])
        return KEY_SEP.join((
            escape_glob(self.prefix), TENANT_SCOPE, escape_glob(tenant_id),
            escape_glob(category_value), "*"
        ))

    def build_tenant_pattern(self, tenant_id: str) -> str:
        """Glob matching every entry of ``tenant_id``, whatever the category."""
        tenant_id = str(tenant_id)
        _validate_key_component(tenant_id, "tenant_id")
        return KEY_SEP.join((escape_glob(self.prefix), TENANT_SCOPE, escape_glob(tenant_id), "*"))

    def category_pattern(self, category: Category) -> str:
        """Glob over every tenant's entries of ``category``. For counting, never for deletion."""
        category_value = _category_value(category)
        _validate_key_component(category_value, "category")
        return KEY_SEP.join((escape_glob(self.prefix), TENANT_SCOPE, "*", escape_glob(category_value), "*"))

    def token_index_key(self, token_hash: str) -> str:
        """Hash-indexed pointer to the tenant that owns a cached token record."""
        _validate_key_component(token_hash, "token_hash")
        return KEY_SEP.join((self.prefix, TOKEN_INDEX_SCOPE, token_hash))

    def token_index_pattern(self) -> str:
        return KEY_SEP.join((escape_glob(self.prefix), TOKEN_INDEX_SCOPE, "*"))

    def activity_key(self, tenant_id: str) -> str:
        """Marker whose presence means the tenant read something recently."""
        return self.build_key(tenant_id, CacheCategory.ACTIVITY, "last_read")

    def rate_limit_key(self, tenant_id: str, operation_class: str, window_start: int) -> str:
        return self.build_key(tenant_id, CacheCategory.RATE_LIMIT, operation_class, str(window_start))

    def resolve_ttl(self, category: Category, is_active_tenant: bool) -> int:
        """Base TTL for ``category``, discounted when the tenant is active."""
        return self.ttl_policy.resolve_ttl(category, is_active_tenant)
