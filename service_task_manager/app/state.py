"""
Explicit wiring of the state layer.

One ``StateLayer`` is built per process (or per test) and handed to
whoever needs it; nothing here is a module-level singleton.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.config import BaseConfig
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.observability import ObservabilityManager
from shared.resilience import ResilienceWrapper
from .caching.entity_cache import EntityCache
from .caching.namespace import CacheNamespace, DEFAULT_BASE_TTLS, TTLPolicy
from .caching.token_cache import TokenValidationCache
from .caching.user_cache import UserDataCache
from .domain.models import CacheCategory
from .keystore.store import KeyStore, build_keystore
from .ratelimit.fixed_window import FixedWindowRateLimiter

logger = get_logger("task_manager.state")


@dataclass
class StateLayer:
    """Everything a request handler needs from the shared-state layer."""

    config: BaseConfig
    observability: ObservabilityManager
    store: KeyStore
    namespace: CacheNamespace
    resilience: ResilienceWrapper
    entity_cache: EntityCache
    token_cache: TokenValidationCache
    user_cache: UserDataCache
    rate_limiter: FixedWindowRateLimiter

    async def health(self) -> Dict[str, Any]:
        cache_available = await self.entity_cache.is_available()
        return {
            "cache_available": cache_available,
            "cache_backend": self.config.cache_backend,
            "rate_limiting_enabled": self.rate_limiter.enabled,
            "circuits": self.resilience.states(),
        }

    async def close(self):
        await self.store.close()
        logger.info("State layer closed")


def _ttl_policy(config: BaseConfig) -> TTLPolicy:
    base_ttls = dict(DEFAULT_BASE_TTLS)
    base_ttls[CacheCategory.TOKEN] = config.token_cache_ttl
    base_ttls[CacheCategory.USER] = config.user_cache_ttl
    return TTLPolicy(base_ttls=base_ttls, activity_discount=config.cache_activity_discount)


def _retry_overrides(config: BaseConfig, resilience: ResilienceWrapper):
    for operation_class, attempts in config.retry_max_attempts.items():
        resilience.retry_configs[operation_class] = resilience.config_for(operation_class).with_overrides(
            max_attempts=attempts
        )


def build_state_layer(config: BaseConfig,
                      store: Optional[KeyStore] = None,
                      observability: Optional[ObservabilityManager] = None,
                      clock: Callable[[], float] = time.time,
                      monotonic: Callable[[], float] = time.monotonic,
                      sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> StateLayer:
    """Build the state layer from configuration.

    ``store`` lets callers inject a pre-built KeyStore (tests pass one over
    an in-memory client); otherwise one is built from ``config``.
    """
    if observability is None:
        observability = ObservabilityManager(
            getattr(config, "service_name", "task_manager"),
            metrics=MetricsCollector(getattr(config, "service_name", "task_manager"))
        )
    if store is None:
        store = build_keystore(config, observability=observability)

    namespace = CacheNamespace(prefix=config.cache_key_prefix, ttl_policy=_ttl_policy(config))
    resilience = ResilienceWrapper(
        failure_threshold=config.circuit_failure_threshold,
        recovery_timeout=config.circuit_recovery_timeout,
        observability=observability,
        sleep=sleep,
        clock=monotonic
    )
    _retry_overrides(config, resilience)

    entity_cache = EntityCache(
        store, namespace, resilience,
        observability=observability,
        activity_window_seconds=config.cache_activity_window_seconds
    )
    token_cache = TokenValidationCache(
        store, namespace, resilience,
        observability=observability,
        ttl_seconds=config.token_cache_ttl,
        safety_margin_seconds=config.token_safety_margin_seconds,
        clock=clock
    )
    user_cache = UserDataCache(
        store, namespace, resilience,
        observability=observability,
        clock=clock
    )
    rate_limiter = FixedWindowRateLimiter(
        store, namespace, resilience,
        observability=observability,
        enabled=config.rate_limiting_active,
        default_tier=config.rate_limit_default_tier,
        clock=clock
    )

    logger.info(
        "State layer built",
        cache_backend=config.cache_backend,
        rate_limiting_enabled=rate_limiter.enabled,
        key_prefix=config.cache_key_prefix
    )
    return StateLayer(
        config=config,
        observability=observability,
        store=store,
        namespace=namespace,
        resilience=resilience,
        entity_cache=entity_cache,
        token_cache=token_cache,
        user_cache=user_cache,
        rate_limiter=rate_limiter,
    )
