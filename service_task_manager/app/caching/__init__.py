"""
Tenant-scoped caching package.

Provides the key namespace and TTL policy, the task entity cache, the
token validation cache and the user record cache. Every key carries the
tenant id; invalidation is explicit and pattern based.
"""

from .entity_cache import EntityCache
from .namespace import CacheNamespace, TTLPolicy
from .token_cache import TokenValidationCache, hash_token
from .user_cache import UserDataCache

__all__ = [
    "CacheNamespace",
    "EntityCache",
    "TTLPolicy",
    "TokenValidationCache",
    "UserDataCache",
    "hash_token",
]
