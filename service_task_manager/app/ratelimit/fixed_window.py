"""
Fixed-window rate limiter per (tenant, operation class).

Each window is one counter key, ``tm:tenant:<t>:ratelimit:<op>:<window_start>``,
incremented atomically in the store. The first increment sets the key's
TTL to the window length so old windows expire on their own.

The window is fixed, not sliding: a tenant can spend a full burst ceiling
at the end of one window and again at the start of the next, so up to
roughly twice the ceiling may pass across a boundary.
"""

import time
from typing import Any, Callable, Dict, Optional, Union

from shared.errors import CircuitOpenError, RetryExhaustedError, StoreError
from shared.logging import get_logger
from shared.observability import ObservabilityManager
from shared.resilience import ResilienceWrapper
from ..caching.namespace import CacheNamespace
from ..domain.models import CacheCategory, OperationClass, RateLimitDecision, RateWindow, Tier
from ..keystore.store import KeyStore
from .tiers import DEFAULT_TIER, get_tier

_STORE_FAILURES = (StoreError, CircuitOpenError, RetryExhaustedError)

# (usage threshold, suggested client back-off in seconds), highest first
RETRY_DELAY_STEPS = (
    (90.0, 300),
    (75.0, 120),
    (50.0, 60),
)
MIN_RETRY_DELAY = 30


def _operation_value(operation_class: Union[OperationClass, str]) -> str:
    if isinstance(operation_class, OperationClass):
        return operation_class.value
    return str(operation_class)


class FixedWindowRateLimiter:
    """Tiered quotas with a burst allowance, enforced in the shared store.

    On any store failure the limiter fails open: the request is allowed,
    the decision is flagged ``degraded`` and an event is emitted.
    """

    def __init__(self,
                 store: KeyStore,
                 namespace: CacheNamespace,
                 resilience: ResilienceWrapper,
                 observability: Optional[ObservabilityManager] = None,
                 enabled: bool = True,
                 default_tier: str = DEFAULT_TIER,
                 clock: Callable[[], float] = time.time,
                 operation_class: str = "ratelimit"):
        self.store = store
        self.namespace = namespace
        self.resilience = resilience
        self.observability = observability
        self.enabled = enabled
        self.default_tier = get_tier(default_tier)
        self.clock = clock
        self.operation_class = operation_class
        self.logger = get_logger("task_manager.rate_limiter")

    def window_start(self, tier: Tier, now: Optional[float] = None) -> int:
        now = self.clock() if now is None else now
        return int(now) // tier.window_seconds * tier.window_seconds

    async def check_and_consume(self,
                                tenant_id: str,
                                operation_class: Union[OperationClass, str],
                                tier: Optional[Tier] = None) -> RateLimitDecision:
        """Count one request and decide whether it may proceed."""
        op = _operation_value(operation_class)
        tier = tier or self.default_tier
        limit = tier.limit_for(op)
        ceiling = tier.burst_ceiling_for(op)
        window_start = self.window_start(tier)
        reset_at = window_start + tier.window_seconds

        if not self.enabled:
            return RateLimitDecision(
                allowed=True, remaining=limit, reset_at=reset_at, limit=limit,
                operation_class=op, tier=tier.name
            )

        key = self.namespace.rate_limit_key(tenant_id, op, window_start)
        try:
            count = await self.resilience.execute(
                self.operation_class,
                lambda: self.store.increment(key, 1, tier.window_seconds),
                tenant_id=tenant_id
            )
        except _STORE_FAILURES as e:
            self._emit("fail_open", tenant_id, op, tier=tier.name, error=str(e))
            self._record(op, "fail_open")
            return RateLimitDecision(
                allowed=True, remaining=limit, reset_at=reset_at, limit=limit,
                operation_class=op, degraded=True, tier=tier.name
            )

        if count <= limit:
            self._record(op, "allowed")
            return RateLimitDecision(
                allowed=True, remaining=limit - count, reset_at=reset_at, limit=limit,
                operation_class=op, count=count, tier=tier.name
            )

        if count <= ceiling:
            self.logger.info("Request allowed in burst zone", tenant_id=tenant_id,
                             operation_class=op, count=count, limit=limit, burst_ceiling=ceiling)
            self._record(op, "burst")
            return RateLimitDecision(
                allowed=True, remaining=0, reset_at=reset_at, limit=limit,
                operation_class=op, count=count, burst=True, tier=tier.name
            )

        # The rejecting increment stays counted so retries cannot reset the window
        self._emit("rejected", tenant_id, op, tier=tier.name, count=count,
                   limit=limit, burst_ceiling=ceiling, reset_at=reset_at)
        self._record(op, "rejected")
        return RateLimitDecision(
            allowed=False, remaining=0, reset_at=reset_at, limit=limit,
            operation_class=op, count=count, tier=tier.name
        )

    async def window(self, tenant_id: str, operation_class: Union[OperationClass, str],
                     tier: Optional[Tier] = None) -> RateWindow:
        """Current window counter, read without consuming. Store errors read as zero."""
        tier = tier or self.default_tier
        op = _operation_value(operation_class)
        window_start = self.window_start(tier)
        result = await self.store.get(self.namespace.rate_limit_key(tenant_id, op, window_start))
        try:
            count = int(result.value) if result.value is not None else 0
        except ValueError:
            self.logger.warning("Unreadable rate limit counter", tenant_id=tenant_id, operation_class=op)
            count = 0
        return RateWindow(
            tenant_id=tenant_id,
            operation_class=op,
            window_start=window_start,
            count=count,
            window_seconds=tier.window_seconds,
            degraded=not result.ok,
        )

    async def status(self, tenant_id: str, tier: Optional[Tier] = None) -> Dict[str, Any]:
        """Usage of every operation class in the current window."""
        tier = tier or self.default_tier
        window_start = self.window_start(tier)
        report: Dict[str, Any] = {
            "tenant_id": tenant_id,
            "tier": tier.name,
            "enabled": self.enabled,
            "window_start": window_start,
            "reset_at": window_start + tier.window_seconds,
            "degraded": False,
            "operations": {},
        }

        for op in OperationClass:
            window = await self.window(tenant_id, op, tier)
            if window.degraded:
                report["degraded"] = True
            used = window.count
            limit = tier.limit_for(op.value)
            report["operations"][op.value] = {
                "used": used,
                "limit": limit,
                "burst_ceiling": tier.burst_ceiling_for(op.value),
                "remaining": max(0, limit - used),
                "percentage_used": round(used / limit * 100, 2) if limit else 100.0,
            }
        return report

    async def recommended_retry_delay(self, tenant_id: str, tier: Optional[Tier] = None) -> int:
        """Back-off hint in seconds, driven by the busiest operation class."""
        status = await self.status(tenant_id, tier)
        usage = max(op["percentage_used"] for op in status["operations"].values())
        for threshold, delay in RETRY_DELAY_STEPS:
            if usage > threshold:
                return delay
        return MIN_RETRY_DELAY

    async def reset(self, tenant_id: str, operation_class: Optional[Union[OperationClass, str]] = None,
                    tier: Optional[Tier] = None) -> int:
        """Clear a tenant's counters: one operation's current window, or everything."""
        if operation_class is None:
            pattern = self.namespace.build_pattern(tenant_id, CacheCategory.RATE_LIMIT)
            removed = await self.store.delete_pattern(pattern)
        else:
            tier = tier or self.default_tier
            key = self.namespace.rate_limit_key(
                tenant_id, _operation_value(operation_class), self.window_start(tier)
            )
            removed = await self.store.delete(key)
        self.logger.info("Rate limit counters reset", tenant_id=tenant_id,
                         operation_class=operation_class, removed=removed)
        return removed

    def _record(self, operation_class: str, outcome: str):
        if self.observability:
            self.observability.record_rate_limit_decision(operation_class, outcome)

    def _emit(self, outcome: str, tenant_id: str, operation_class: str, **fields: Any):
        if self.observability:
            self.observability.emit_event("rate_limit", tenant_id, operation_class, outcome, **fields)
        else:
            self.logger.warning("Rate limit event", tenant_id=tenant_id,
                                operation_class=operation_class, outcome=outcome, **fields)
