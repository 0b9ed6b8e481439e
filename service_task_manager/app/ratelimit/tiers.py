"""
Built-in rate limit tiers and endpoint classification.
"""

from types import MappingProxyType
from typing import Dict, List, Mapping

from ..domain.models import OperationClass, Tier

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_BURST_FRACTION = 0.2

# Writes cost more than reads; auth is doubled so login retries are not starved
DEFAULT_OPERATION_MULTIPLIERS: Mapping[str, float] = MappingProxyType({
    OperationClass.READ.value: 1.0,
    OperationClass.WRITE.value: 0.5,
    OperationClass.BULK.value: 0.1,
    OperationClass.AUTH.value: 2.0,
})


def _tier(name: str, base_limit: int) -> Tier:
    return Tier(
        name=name,
        base_limit=base_limit,
        window_seconds=DEFAULT_WINDOW_SECONDS,
        burst_fraction=DEFAULT_BURST_FRACTION,
        operation_multipliers=DEFAULT_OPERATION_MULTIPLIERS,
    )


DEFAULT_TIERS: Mapping[str, Tier] = MappingProxyType({
    "basic": _tier("basic", 100),
    "premium": _tier("premium", 500),
    "enterprise": _tier("enterprise", 2000),
    "admin": _tier("admin", 10000),
})

DEFAULT_TIER = "basic"

# Path fragments that always count against a stricter quota
RESTRICTED_ENDPOINTS = (
    ("/task/bulk", OperationClass.BULK),
    ("/auth/register", OperationClass.AUTH),
    ("/auth/login", OperationClass.AUTH),
    ("/task/create", OperationClass.WRITE),
    ("/task/update", OperationClass.WRITE),
    ("/task/delete", OperationClass.WRITE),
)

_WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def get_tier(name: str) -> Tier:
    """Resolve a tier by name; unknown names fall back to ``basic``."""
    return DEFAULT_TIERS.get((name or "").lower(), DEFAULT_TIERS[DEFAULT_TIER])


def available_tiers() -> List[str]:
    return list(DEFAULT_TIERS)


def is_valid_tier(name: str) -> bool:
    return (name or "").lower() in DEFAULT_TIERS


def tier_summary(tier: Tier) -> Dict[str, object]:
    """Per-operation limits of a tier, for status endpoints and logs."""
    return {
        "tier": tier.name,
        "base_limit": tier.base_limit,
        "window_seconds": tier.window_seconds,
        "burst_fraction": tier.burst_fraction,
        "operation_limits": {op.value: tier.limit_for(op.value) for op in OperationClass},
        "burst_ceilings": {op.value: tier.burst_ceiling_for(op.value) for op in OperationClass},
    }


def classify_endpoint(path: str, method: str = "GET") -> OperationClass:
    """Operation class an HTTP request is counted against."""
    normalized = path.lower().rstrip("/")
    for fragment, operation_class in RESTRICTED_ENDPOINTS:
        if fragment in normalized:
            return operation_class
    if method.upper() in _WRITE_METHODS:
        return OperationClass.WRITE
    return OperationClass.READ
