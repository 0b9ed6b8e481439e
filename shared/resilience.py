"""
Uniform retry + circuit breaker policy for store and database calls.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.circuit_breaker import CircuitBreakerManager
from shared.errors import CircuitOpenError, RetryExhaustedError
from shared.logging import get_logger
from shared.observability import ObservabilityManager
from shared.retry import RetryConfig, default_retry_configs, run_with_retry


class ResilienceWrapper:
    """Wraps a store or database call with retries and a circuit breaker.

    ``execute(operation_class, thunk)`` either returns the thunk's value or
    raises one of:

    - :class:`CircuitOpenError` when the breaker for ``operation_class`` is
      open (the thunk is not called),
    - :class:`RetryExhaustedError` when every attempt failed with a
      retryable error,
    - the underlying exception when it is not retryable.

    Breakers are keyed by operation class and are the only shared mutable
    state; retry bookkeeping lives in each call's own frame.
    """

    def __init__(self,
                 retry_configs: Optional[Dict[str, RetryConfig]] = None,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 30.0,
                 observability: Optional[ObservabilityManager] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.retry_configs = default_retry_configs()
        self.retry_configs.update(retry_configs or {})
        self.observability = observability
        self.sleep = sleep
        self.logger = get_logger("task_manager.resilience")
        self.breakers = CircuitBreakerManager(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            on_state_change=self._on_state_change,
            clock=clock
        )

    def config_for(self, operation_class: str) -> RetryConfig:
        """Retry profile for an operation class (generic profile when unknown)."""
        config = self.retry_configs.get(operation_class)
        if config is None:
            config = RetryConfig()
            self.retry_configs[operation_class] = config
        return config

    async def execute(self, operation_class: str, thunk: Callable[[], Awaitable[Any]],
                      tenant_id: Optional[str] = None) -> Any:
        """Run ``thunk`` under the retry profile and breaker for ``operation_class``."""
        config = self.config_for(operation_class)
        breaker = self.breakers.get_circuit_breaker(
            operation_class,
            is_failure=lambda exc: isinstance(exc, RetryExhaustedError) or config.is_retryable(exc)
        )

        async def attempt() -> Any:
            return await run_with_retry(operation_class, thunk, config, sleep=self.sleep)

        try:
            return await breaker.call(attempt)
        except CircuitOpenError as exc:
            self._emit("circuit_open", tenant_id, operation_class, retry_in_seconds=round(exc.retry_in_seconds, 3))
            raise
        except RetryExhaustedError as exc:
            self._emit("retry_exhausted", tenant_id, operation_class,
                       attempts=exc.attempts, error=str(exc.last_exception))
            raise

    def states(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every breaker, for health reporting."""
        return self.breakers.get_all_states()

    def _emit(self, outcome: str, tenant_id: Optional[str], operation_class: str, **fields: Any):
        if self.observability:
            self.observability.emit_event("resilience", tenant_id, operation_class, outcome, **fields)

    def _on_state_change(self, operation_class: str, state: str):
        self.logger.info("Circuit state changed", operation_class=operation_class, state=state)
        if self.observability:
            self.observability.record_circuit_state(operation_class, state)
