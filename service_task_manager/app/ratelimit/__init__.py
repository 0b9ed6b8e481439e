"""
Rate limiting package.

Holds the fixed-window limiter and the built-in tiers that enforce
per-tenant, per-operation request budgets with burst tolerance.
"""

from .fixed_window import FixedWindowRateLimiter
from .tiers import DEFAULT_TIERS, available_tiers, classify_endpoint, get_tier, is_valid_tier

__all__ = [
    "DEFAULT_TIERS",
    "FixedWindowRateLimiter",
    "available_tiers",
    "classify_endpoint",
    "get_tier",
    "is_valid_tier",
]
