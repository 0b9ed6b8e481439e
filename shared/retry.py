"""
Retry mechanism for resilient store and database operations.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from shared.errors import RetryExhaustedError, StoreUnavailable
from shared.logging import get_logger


# Messages that mark a transient failure regardless of exception type
TRANSIENT_ERROR_MARKERS: Tuple[str, ...] = (
    "connection refused",
    "connection reset",
    "timed out",
    "deadlock",
    "lock wait timeout",
    "server has gone away",
)


class RetryConfig:
    """Configuration for retry behavior.

    Delays are in seconds. The delay before attempt ``n + 1`` is
    ``min(base_delay * exponential_base ** (n - 1), max_delay)`` plus a
    uniform jitter in ``[0, jitter_max]``.
    """

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.1,
                 max_delay: float = 5.0,
                 exponential_base: float = 2.0,
                 jitter_max: float = 0.05,
                 retry_on: Tuple[Type[BaseException], ...] = (StoreUnavailable, ConnectionError, TimeoutError),
                 retry_messages: Tuple[str, ...] = TRANSIENT_ERROR_MARKERS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_max = jitter_max
        self.retry_on = retry_on
        self.retry_messages = retry_messages

    def is_retryable(self, exc: BaseException) -> bool:
        """Classify an exception by type, then by message content."""
        if isinstance(exc, self.retry_on):
            return True
        message = str(exc).lower()
        return any(marker in message for marker in self.retry_messages)

    def with_overrides(self, **overrides: Any) -> "RetryConfig":
        """Return a copy with some fields replaced."""
        values = self.to_dict()
        values.update(overrides)
        return RetryConfig(retry_on=self.retry_on, retry_messages=self.retry_messages, **values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "exponential_base": self.exponential_base,
            "jitter_max": self.jitter_max,
        }


def database_retry_config() -> RetryConfig:
    """Retry profile for relational database calls."""
    return RetryConfig(
        max_attempts=3,
        base_delay=0.2,
        max_delay=2.0,
        exponential_base=2.0,
        jitter_max=0.1,
        retry_on=(StoreUnavailable, ConnectionError, TimeoutError, OSError),
    )


def cache_retry_config() -> RetryConfig:
    """Retry profile for cache calls: fewer, faster attempts since a miss is cheap."""
    return RetryConfig(
        max_attempts=2,
        base_delay=0.05,
        max_delay=0.5,
        exponential_base=1.5,
        jitter_max=0.025,
    )


def network_retry_config() -> RetryConfig:
    """Retry profile for calls to remote HTTP services."""
    return RetryConfig(
        max_attempts=5,
        base_delay=0.5,
        max_delay=10.0,
        exponential_base=2.5,
        jitter_max=0.2,
        retry_on=(ConnectionError, TimeoutError, OSError),
    )


def default_retry_configs() -> Dict[str, RetryConfig]:
    """Built-in retry profiles keyed by operation class."""
    return {
        "database": database_retry_config(),
        "cache": cache_retry_config(),
        "network": network_retry_config(),
        # A timed-out INCR may still have been applied; retrying would double count
        "ratelimit": cache_retry_config().with_overrides(max_attempts=1),
    }


def calculate_delay(attempt: int, config: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """Calculate delay between retry attempts."""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))

    # Apply max delay cap
    delay = min(delay, config.max_delay)

    if config.jitter_max > 0:
        delay += (rng or random).uniform(0, config.jitter_max)

    return max(0.0, delay)


async def run_with_retry(operation_class: str,
                         func: Callable[[], Awaitable[Any]],
                         config: RetryConfig,
                         sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> Any:
    """Run ``func`` until it succeeds, a non-retryable error occurs, or attempts run out.

    All per-call state (attempt counter, last error) lives in this frame, so
    one config can be shared freely between concurrent callers.

    Raises:
        RetryExhaustedError: Every attempt failed with a retryable error.
        Exception: The first non-retryable error, unchanged.
    """
    logger = get_logger(f"task_manager.retry.{operation_class}")

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await func()

            if attempt > 1:
                logger.info(
                    "Retry succeeded",
                    attempt=attempt,
                    operation_class=operation_class
                )

            return result

        except Exception as e:
            if not config.is_retryable(e):
                raise

            if attempt == config.max_attempts:
                logger.error(
                    "All retry attempts exhausted",
                    attempt=attempt,
                    max_attempts=config.max_attempts,
                    operation_class=operation_class,
                    error=str(e)
                )
                raise RetryExhaustedError(operation_class, last_exception=e, attempts=attempt) from e

            delay = calculate_delay(attempt, config)

            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                delay=round(delay, 4),
                operation_class=operation_class,
                error=str(e)
            )

            await sleep(delay)

    # max_attempts >= 1 guarantees the loop returned or raised
    raise AssertionError("unreachable")
