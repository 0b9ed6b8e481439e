"""
Thin async wrapper over Redis used by every cache and rate limit component.

Failure contract:

- ``get`` / ``exists`` / ``ttl_remaining`` / ``multi_get`` return a
  :class:`StoreResult`. When the store is down the result is "absent" and
  carries the error, unless the caller asks for ``strict=True``, in which
  case the error is raised.
- ``set`` / ``delete`` / ``delete_pattern`` / ``increment`` / ``flush``
  always raise :class:`StoreUnavailable` or :class:`StoreOperationFailed`.
- A missing key is never an error.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

import redis.asyncio as redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    TimeoutError as RedisTimeoutError,
)

from shared.config import BaseConfig
from shared.errors import ConfigurationError, StoreError, StoreOperationFailed, StoreUnavailable
from shared.logging import get_logger
from shared.observability import ObservabilityManager

T = TypeVar("T")

# TTL sentinels, mirroring the Redis TTL command
NO_EXPIRY = -1
ABSENT = -2

_UNAVAILABLE_ERRORS = (
    RedisConnectionError,
    RedisTimeoutError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    """Value of a soft-failing read, plus the error that downgraded it, if any."""

    value: Optional[T] = None
    error: Optional[StoreError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def found(self) -> bool:
        return self.value is not None


class KeyStore:
    """Async Redis key-value store with an explicit failure contract."""

    def __init__(self,
                 client: Optional[redis.Redis],
                 observability: Optional[ObservabilityManager] = None,
                 operation_timeout: Optional[float] = 1.0,
                 scan_count: int = 100,
                 delete_batch_size: int = 500):
        self.client = client
        self.observability = observability
        self.operation_timeout = operation_timeout
        self.scan_count = scan_count
        self.delete_batch_size = delete_batch_size
        self.logger = get_logger("task_manager.keystore")

    @classmethod
    def from_config(cls, config: BaseConfig,
                    observability: Optional[ObservabilityManager] = None) -> "KeyStore":
        """Build a store with a pooled client; connections are opened lazily."""
        pool = redis.ConnectionPool.from_url(
            config.redis_url,
            max_connections=config.redis_max_connections,
            socket_connect_timeout=config.redis_connect_timeout,
            socket_timeout=config.redis_socket_timeout,
            health_check_interval=config.redis_health_check_interval,
        )
        client = redis.Redis(connection_pool=pool)
        # Pool acquisition plus one round trip, never unbounded
        timeout = config.redis_connect_timeout + config.redis_socket_timeout
        return cls(client, observability=observability, operation_timeout=timeout)

    async def _call(self, operation: str, func: Callable[[], Awaitable[Any]],
                    bounded: bool = True) -> Any:
        """Run one store command, mapping driver errors onto the store taxonomy."""
        start = time.perf_counter()
        try:
            if bounded and self.operation_timeout:
                return await asyncio.wait_for(func(), timeout=self.operation_timeout)
            return await func()
        except _UNAVAILABLE_ERRORS as e:
            raise StoreUnavailable(operation, f"{operation} failed: {e}") from e
        except RedisError as e:
            raise StoreOperationFailed(operation, f"{operation} failed: {e}") from e
        finally:
            if self.observability:
                self.observability.metrics.observe_histogram(
                    "store_operation_duration_seconds",
                    time.perf_counter() - start,
                    operation=operation
                )

    async def _soft(self, operation: str, key: str, func: Callable[[], Awaitable[Any]],
                    strict: bool, absent: Any = None) -> StoreResult:
        try:
            return StoreResult(value=await self._call(operation, func))
        except StoreError as e:
            if strict:
                raise
            self.logger.warning("Store read degraded to miss", operation=operation, key=key, error=str(e))
            return StoreResult(value=absent, error=e)

    async def get(self, key: str, *, strict: bool = False) -> StoreResult[bytes]:
        """Fetch raw bytes for ``key``; ``value`` is None when absent."""
        return await self._soft("get", key, lambda: self.client.get(key), strict)

    async def multi_get(self, keys: Sequence[str], *, strict: bool = False) -> StoreResult[List[Optional[bytes]]]:
        """Fetch several keys in one round trip; missing keys come back as None."""
        if not keys:
            return StoreResult(value=[])
        return await self._soft(
            "mget", ",".join(keys), lambda: self.client.mget(list(keys)), strict,
            absent=[None] * len(keys)
        )

    async def exists(self, key: str, *, strict: bool = False) -> StoreResult[bool]:
        result = await self._soft("exists", key, lambda: self.client.exists(key), strict, absent=0)
        return StoreResult(value=bool(result.value), error=result.error)

    async def ttl_remaining(self, key: str, *, strict: bool = False) -> StoreResult[int]:
        """Seconds left on ``key``; :data:`NO_EXPIRY` or :data:`ABSENT` otherwise."""
        result = await self._soft("ttl", key, lambda: self.client.ttl(key), strict, absent=ABSENT)
        return StoreResult(value=int(result.value), error=result.error)

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        """Write ``value`` with a TTL. A TTL below one second is a caller bug."""
        if ttl_seconds < 1:
            raise ValueError(f"ttl_seconds must be >= 1, got {ttl_seconds}")
        result = await self._call("set", lambda: self.client.set(key, value, ex=ttl_seconds))
        return bool(result)

    async def delete(self, key: str) -> int:
        """Delete one key; returns how many keys were removed (0 or 1)."""
        return int(await self._call("delete", lambda: self.client.delete(key)))

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern.

        Walks the keyspace with SCAN and UNLINKs in batches so the shared
        server is never blocked by a full KEYS listing.
        """
        async def scan_and_unlink() -> int:
            deleted = 0
            chunk: List[Any] = []
            async for key in self.client.scan_iter(match=pattern, count=self.scan_count):
                chunk.append(key)
                if len(chunk) >= self.delete_batch_size:
                    deleted += int(await self.client.unlink(*chunk))
                    chunk = []
            if chunk:
                deleted += int(await self.client.unlink(*chunk))
            return deleted

        # Many round trips; each one is still bounded by the socket timeout
        deleted = await self._call("delete_pattern", scan_and_unlink, bounded=False)
        if deleted:
            self.logger.info("Cache INVALIDATE", pattern=pattern, keys=deleted)
        return deleted

    async def count(self, pattern: str) -> int:
        """Number of keys matching a glob pattern, counted with SCAN."""
        async def scan_and_count() -> int:
            total = 0
            async for _ in self.client.scan_iter(match=pattern, count=self.scan_count):
                total += 1
            return total

        return await self._call("count", scan_and_count, bounded=False)

    async def increment(self, key: str, by: int = 1, ttl_if_new: int = 0) -> int:
        """Atomically add ``by`` to an integer key and return the new value.

        The TTL is applied only when this call creates the key: ``SET NX EX``
        and ``INCRBY`` run inside one MULTI/EXEC, so an existing window keeps
        its original expiry.
        """
        async def incr() -> int:
            async with self.client.pipeline(transaction=True) as pipe:
                if ttl_if_new > 0:
                    pipe.set(key, 0, ex=ttl_if_new, nx=True)
                pipe.incrby(key, by)
                results = await pipe.execute()
            return int(results[-1])

        return await self._call("increment", incr)

    async def flush(self) -> bool:
        """Drop every key in the current database."""
        result = await self._call("flush", lambda: self.client.flushdb())
        self.logger.warning("Cache CLEARED: all keys deleted")
        return bool(result)

    async def ping(self) -> bool:
        return bool(await self._call("ping", lambda: self.client.ping()))

    async def info(self) -> Dict[str, Any]:
        """Server INFO stats (keyspace hits/misses, memory)."""
        return dict(await self._call("info", lambda: self.client.info()))

    async def close(self):
        if self.client is not None:
            await self.client.aclose()


class NullKeyStore(KeyStore):
    """Store that keeps nothing: every read misses, every write succeeds.

    Used when caching is switched off (``cache_backend = "null"``). Rate
    limiting on top of it sees every request as the first in its window.
    """

    def __init__(self, observability: Optional[ObservabilityManager] = None):
        super().__init__(None, observability=observability)

    async def get(self, key: str, *, strict: bool = False) -> StoreResult[bytes]:
        return StoreResult()

    async def multi_get(self, keys: Sequence[str], *, strict: bool = False) -> StoreResult[List[Optional[bytes]]]:
        return StoreResult(value=[None] * len(keys))

    async def exists(self, key: str, *, strict: bool = False) -> StoreResult[bool]:
        return StoreResult(value=False)

    async def ttl_remaining(self, key: str, *, strict: bool = False) -> StoreResult[int]:
        return StoreResult(value=ABSENT)

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        return True

    async def delete(self, key: str) -> int:
        return 0

    async def delete_pattern(self, pattern: str) -> int:
        return 0

    async def count(self, pattern: str) -> int:
        return 0

    async def increment(self, key: str, by: int = 1, ttl_if_new: int = 0) -> int:
        return by

    async def flush(self) -> bool:
        return True

    async def ping(self) -> bool:
        return True

    async def info(self) -> Dict[str, Any]:
        return {}

    async def close(self):
        return None


def build_keystore(config: BaseConfig, observability: Optional[ObservabilityManager] = None) -> KeyStore:
    """Create the store selected by ``config.cache_backend``."""
    backend = config.cache_backend.lower()
    if backend == "redis":
        return KeyStore.from_config(config, observability=observability)
    if backend == "null":
        return NullKeyStore(observability=observability)
    raise ConfigurationError(f"Unsupported cache backend: {config.cache_backend}",
                             details={"cache_backend": config.cache_backend})
