"""
Domain models shared by the cache and rate limiting layers.
"""

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field


def _floor(value: float) -> int:
    # Tolerate float noise such as 0.57 * 100 == 56.99999999999999
    return math.floor(value + 1e-9)


class CacheCategory(str, Enum):
    """Classes of cached data. Each has its own TTL and key space."""
    TASK = "task"
    TASK_LIST = "task_list"
    OVERDUE_LIST = "overdue_list"
    STATISTICS = "statistics"
    TOKEN = "token"
    USER = "user"
    # Internal bookkeeping keys, not task data
    ACTIVITY = "activity"
    WARMING = "warming"
    RATE_LIMIT = "ratelimit"


class ListKind(str, Enum):
    """Derived task collections cached per tenant."""
    TASK_LIST = CacheCategory.TASK_LIST.value
    OVERDUE_LIST = CacheCategory.OVERDUE_LIST.value

    @property
    def category(self) -> CacheCategory:
        return CacheCategory(self.value)


class TaskMutation(str, Enum):
    """Mutation events that invalidate a tenant's cached projections."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STATUS_CHANGED = "status_changed"


class OperationClass(str, Enum):
    """Rate limit groupings, each with its own quota."""
    READ = "read"
    WRITE = "write"
    BULK = "bulk"
    AUTH = "auth"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class Task(BaseModel):
    """Task row as projected into the cache. The database owns the canonical copy."""
    id: int = Field(..., description="Task ID")
    user_id: int = Field(..., description="Owning tenant")
    title: str = Field(..., description="Task title")
    description: str = Field(default="", description="Task description")
    due_date: Optional[datetime] = Field(None, description="Due date")
    done: bool = Field(default=False, description="Completion flag")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    status: TaskStatus = Field(default=TaskStatus.PENDING)


class User(BaseModel):
    """Account record as projected into the cache. Never carries credentials."""
    id: int = Field(..., description="User ID, also the tenant id")
    email: str = Field(..., description="Login email")
    name: str = Field(default="", description="Display name")
    tier: Optional[str] = Field(None, description="Rate limit tier name")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    cached_at: Optional[int] = Field(None, description="Epoch seconds the record was cached")

    @property
    def tenant_id(self) -> str:
        return str(self.id)


@dataclass(frozen=True)
class ValidatedToken:
    """Outcome of a successful JWT check, as kept in the token cache."""

    tenant_id: str
    issued_at: int
    expires_at: int
    raw_claims: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.expires_at <= (time.time() if now is None else now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
            "raw_claims": self.raw_claims,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ValidatedToken":
        return cls(
            tenant_id=str(data["tenant_id"]),
            issued_at=int(data["issued_at"]),
            expires_at=int(data["expires_at"]),
            raw_claims=dict(data.get("raw_claims") or {}),
        )


@dataclass(frozen=True)
class Tier:
    """Static quota configuration. A tenant's tier is resolved by the caller."""

    name: str
    base_limit: int
    window_seconds: int
    burst_fraction: float = 0.2
    operation_multipliers: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        if self.window_seconds < 1:
            raise ValueError(f"Tier {self.name!r}: window_seconds must be at least 1")
        if self.base_limit < 0:
            raise ValueError(f"Tier {self.name!r}: base_limit must not be negative")
        if not 0 <= self.burst_fraction <= 1:
            raise ValueError(f"Tier {self.name!r}: burst_fraction must be between 0 and 1")
        for operation_class, multiplier in self.operation_multipliers.items():
            if multiplier < 0:
                raise ValueError(f"Tier {self.name!r}: multiplier for {operation_class!r} must not be negative")

    def limit_for(self, operation_class: str) -> int:
        """Base quota for an operation class; unknown classes use multiplier 1.0."""
        multiplier = self.operation_multipliers.get(operation_class, 1.0)
        return _floor(self.base_limit * multiplier)

    def burst_ceiling_for(self, operation_class: str) -> int:
        limit = self.limit_for(operation_class)
        return limit + _floor(limit * self.burst_fraction)


@dataclass(frozen=True)
class RateWindow:
    """One fixed window counter for a (tenant, operation class).

    ``degraded`` is set when the counter could not be read and ``count``
    is a stand-in zero.
    """

    tenant_id: str
    operation_class: str
    window_start: int
    count: int
    window_seconds: int
    degraded: bool = False

    @property
    def reset_at(self) -> int:
        return self.window_start + self.window_seconds


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a rate limit check.

    ``burst`` is set when the request was allowed inside the burst
    allowance; ``degraded`` when the store could not be consulted and the
    request was let through (fail-open).
    """

    allowed: bool
    remaining: int
    reset_at: int
    limit: int
    operation_class: str
    count: int = 0
    burst: bool = False
    degraded: bool = False
    tier: Optional[str] = None

    def retry_after(self, now: Optional[float] = None) -> int:
        current = int(time.time() if now is None else now)
        return max(0, self.reset_at - current)

    def to_headers(self, now: Optional[float] = None) -> Dict[str, str]:
        """Standard rate limit headers for the HTTP layer."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
            "X-RateLimit-Operation": self.operation_class,
        }
        if self.tier:
            headers["X-RateLimit-User-Tier"] = self.tier
        if self.burst:
            headers["X-RateLimit-Burst"] = "true"
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after(now))
        return headers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "limit": self.limit,
            "operation_class": self.operation_class,
            "count": self.count,
            "burst": self.burst,
            "degraded": self.degraded,
            "tier": self.tier,
        }
