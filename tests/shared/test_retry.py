"""
Unit tests for the retry helpers.
"""

import random

import pytest
from unittest.mock import AsyncMock

from shared.errors import RetryExhaustedError, StoreOperationFailed, StoreUnavailable
from shared.retry import (
    RetryConfig,
    cache_retry_config,
    calculate_delay,
    database_retry_config,
    default_retry_configs,
    network_retry_config,
    run_with_retry,
)


class TestRetryConfig:
    """Profiles and error classification."""

    def test_profiles(self):
        database = database_retry_config()
        cache = cache_retry_config()
        network = network_retry_config()

        assert (database.max_attempts, database.base_delay, database.max_delay) == (3, 0.2, 2.0)
        assert (cache.max_attempts, cache.base_delay, cache.max_delay) == (2, 0.05, 0.5)
        assert (network.max_attempts, network.base_delay, network.max_delay) == (5, 0.5, 10.0)
        assert cache.max_attempts < database.max_attempts

    def test_ratelimit_profile_never_retries(self):
        assert default_retry_configs()["ratelimit"].max_attempts == 1

    @pytest.mark.parametrize("exc,expected", [
        (StoreUnavailable("get"), True),
        (ConnectionError("reset by peer"), True),
        (TimeoutError(), True),
        (StoreOperationFailed("set", "WRONGTYPE Operation against a key"), False),
        (ValueError("bad input"), False),
        (RuntimeError("Deadlock found when trying to get lock"), True),
        (RuntimeError("MySQL server has gone away"), True),
    ])
    def test_is_retryable(self, exc, expected):
        assert database_retry_config().is_retryable(exc) is expected

    def test_with_overrides(self):
        config = cache_retry_config().with_overrides(max_attempts=4)

        assert config.max_attempts == 4
        assert config.base_delay == 0.05

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)


class TestCalculateDelay:
    """Exponential backoff with jitter."""

    def test_exponential_growth_without_jitter(self):
        config = RetryConfig(base_delay=0.1, exponential_base=2.0, max_delay=5.0, jitter_max=0)

        assert calculate_delay(1, config) == pytest.approx(0.1)
        assert calculate_delay(2, config) == pytest.approx(0.2)
        assert calculate_delay(3, config) == pytest.approx(0.4)

    def test_capped_at_max_delay(self):
        config = RetryConfig(base_delay=1.0, exponential_base=10.0, max_delay=2.0, jitter_max=0)

        assert calculate_delay(5, config) == 2.0

    def test_jitter_bounds(self):
        config = database_retry_config()
        rng = random.Random(42)

        for _ in range(50):
            delay = calculate_delay(1, config, rng)
            assert 0.2 <= delay <= 0.3


class TestRunWithRetry:
    """Retry loop behaviour."""

    @pytest.mark.asyncio
    async def test_success_after_transient_failures(self):
        func = AsyncMock(side_effect=[StoreUnavailable("get"), StoreUnavailable("get"), "value"])
        sleep = AsyncMock()

        result = await run_with_retry("database", func, database_retry_config(), sleep=sleep)

        assert result == "value"
        assert func.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted(self):
        error = StoreUnavailable("get")
        func = AsyncMock(side_effect=error)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await run_with_retry("cache", func, cache_retry_config(), sleep=AsyncMock())

        assert exc_info.value.attempts == 2
        assert exc_info.value.last_exception is error
        assert exc_info.value.operation_class == "cache"

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        func = AsyncMock(side_effect=ValueError("bad"))
        sleep = AsyncMock()

        with pytest.raises(ValueError):
            await run_with_retry("database", func, database_retry_config(), sleep=sleep)

        assert func.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backoff_delays_increase(self):
        func = AsyncMock(side_effect=StoreUnavailable("get"))
        delays = []

        async def record(delay):
            delays.append(delay)

        config = RetryConfig(max_attempts=4, base_delay=0.1, exponential_base=2.0, jitter_max=0)
        with pytest.raises(RetryExhaustedError):
            await run_with_retry("database", func, config, sleep=record)

        assert delays == pytest.approx([0.1, 0.2, 0.4])
