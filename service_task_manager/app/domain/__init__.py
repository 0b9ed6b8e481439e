"""
Domain types shared by the cache and rate limiting layers.
"""

from .models import (
    CacheCategory,
    ListKind,
    OperationClass,
    RateLimitDecision,
    RateWindow,
    Task,
    TaskMutation,
    TaskPriority,
    TaskStatus,
    Tier,
    User,
    ValidatedToken,
)

__all__ = [
    "CacheCategory",
    "ListKind",
    "OperationClass",
    "RateLimitDecision",
    "RateWindow",
    "Task",
    "TaskMutation",
    "TaskPriority",
    "TaskStatus",
    "Tier",
    "User",
    "ValidatedToken",
]
