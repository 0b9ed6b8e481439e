"""
Circuit breaker pattern implementation for resilient store and database calls.
"""

import time
from enum import Enum
from typing import Dict, Any, Optional, Callable, Awaitable

from shared.errors import CircuitOpenError
from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreaker:
    """Circuit breaker implementation.

    Opens after ``failure_threshold`` consecutive failed calls. While open,
    calls fail immediately with :class:`CircuitOpenError`. After
    ``recovery_timeout`` seconds the next call is let through as a single
    trial call (half-open); its outcome closes or re-opens the circuit.

    Only exceptions accepted by ``is_failure`` count against the circuit;
    anything else propagates without touching the failure count.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 30.0,
                 name: str = "default",
                 is_failure: Optional[Callable[[BaseException], bool]] = None,
                 on_state_change: Optional[Callable[[str, str], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.is_failure = is_failure or (lambda exc: True)
        self.on_state_change = on_state_change
        self.clock = clock
        self.logger = get_logger(f"task_manager.circuit_breaker.{name}")

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._success_count = 0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def _set_state(self, state: CircuitBreakerState):
        if state is self._state:
            return
        self._state = state
        if self.on_state_change:
            self.on_state_change(self.name, state.value)

    def _can_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt a reset."""
        return (self.clock() - self._last_failure_time) >= self.recovery_timeout

    def _should_attempt_call(self) -> bool:
        """Determine if a call should be attempted based on current state."""
        if self._state == CircuitBreakerState.CLOSED:
            return True
        if self._state == CircuitBreakerState.OPEN:
            if self._can_attempt_reset():
                self._set_state(CircuitBreakerState.HALF_OPEN)
                self.logger.info("Circuit breaker transitioning to half-open")
                self._trial_in_flight = True
                return True
            return False
        # HALF_OPEN: one trial call at a time
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def retry_in(self) -> float:
        """Seconds until an open circuit admits a trial call."""
        if self._state != CircuitBreakerState.OPEN:
            return 0.0
        return max(0.0, self.recovery_timeout - (self.clock() - self._last_failure_time))

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        if not self._should_attempt_call():
            raise CircuitOpenError(self.name, retry_in_seconds=self.retry_in())

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if self.is_failure(e):
                self._record_failure()
            else:
                self._trial_in_flight = False
            raise
        except BaseException:
            # Cancelled mid-call: free the trial slot, count nothing
            self._trial_in_flight = False
            raise

        self._record_success()
        return result

    def _record_success(self):
        """Record a successful call and close a half-open circuit."""
        self._trial_in_flight = False
        self._success_count += 1
        if self._state == CircuitBreakerState.HALF_OPEN:
            self._set_state(CircuitBreakerState.CLOSED)
            self.logger.info("Circuit breaker reset to CLOSED after successful call")
        self._failure_count = 0

    def _record_failure(self):
        """Record a failure and update state."""
        self._trial_in_flight = False
        self._failure_count += 1
        self._last_failure_time = self.clock()
        self._success_count = 0

        if self._state == CircuitBreakerState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            if self._state != CircuitBreakerState.OPEN:
                self.logger.warning(
                    "Circuit breaker opened due to failures",
                    failure_count=self._failure_count,
                    threshold=self.failure_threshold
                )
            self._set_state(CircuitBreakerState.OPEN)

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "last_failure_time": self._last_failure_time,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout
        }

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state == CircuitBreakerState.OPEN


class CircuitBreakerManager:
    """Registry of circuit breakers keyed by operation class."""

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 30.0,
                 on_state_change: Optional[Callable[[str, str], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.on_state_change = on_state_change
        self.clock = clock
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.logger = get_logger("task_manager.circuit_breaker_manager")

    def get_circuit_breaker(self,
                            name: str,
                            is_failure: Optional[Callable[[BaseException], bool]] = None) -> CircuitBreaker:
        """Get or create a circuit breaker."""
        if name not in self.circuit_breakers:
            self.circuit_breakers[name] = CircuitBreaker(
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
                name=name,
                is_failure=is_failure,
                on_state_change=self.on_state_change,
                clock=self.clock
            )
            self.logger.info("Created circuit breaker", name=name)

        return self.circuit_breakers[name]

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in self.circuit_breakers.items()
        }
