"""
Shared pytest fixtures.

``FakeRedis`` is an in-memory stand-in for ``redis.asyncio.Redis`` that
covers the command subset the KeyStore uses. TTLs follow a controllable
clock, and ``unreachable = True`` makes every command fail the way a dead
server does.
"""

import math
import re
from typing import Any, Dict, List, Optional, Set

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError, ResponseError

from shared.config import BaseConfig
from shared.metrics import MetricsCollector
from shared.observability import ObservabilityManager
from shared.resilience import ResilienceWrapper
from service_task_manager.app.caching.entity_cache import EntityCache
from service_task_manager.app.caching.namespace import CacheNamespace
from service_task_manager.app.caching.token_cache import TokenValidationCache
from service_task_manager.app.caching.user_cache import UserDataCache
from service_task_manager.app.keystore.store import KeyStore
from service_task_manager.app.ratelimit.fixed_window import FixedWindowRateLimiter
from service_task_manager.app.state import build_state_layer

# Start of an hourly window, so tests never straddle a boundary by accident
WINDOW_ALIGNED_NOW = 1_700_002_800.0


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: float = WINDOW_ALIGNED_NOW + 10):
        self.now = now

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def _glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a Redis MATCH glob, honouring backslash escapes."""
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(ch))
            else:
                out.append("[" + pattern[i + 1:end] + "]")
                i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z", re.DOTALL)


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


class FakePipeline:
    """Buffered MULTI/EXEC over a FakeRedis."""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.commands: List[Any] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.commands = []

    def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> "FakePipeline":
        self.commands.append(("set", key, value, ex, nx))
        return self

    def incrby(self, key: str, amount: int = 1) -> "FakePipeline":
        self.commands.append(("incrby", key, amount))
        return self

    async def execute(self) -> List[Any]:
        self.redis._check("pipeline")
        results = []
        for command in self.commands:
            if command[0] == "set":
                _, key, value, ex, nx = command
                results.append(self.redis._set(key, value, ex, nx))
            else:
                _, key, amount = command
                results.append(self.redis._incrby(key, amount))
        self.commands = []
        return results


class FakeRedis:
    """In-memory async Redis double driven by a FakeClock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data: Dict[str, bytes] = {}
        self.expires_at: Dict[str, float] = {}
        self.unreachable = False
        self.failing_commands: Set[str] = set()
        self.calls: List[str] = []
        self.hits = 0
        self.misses = 0
        self.closed = False

    # Failure simulation

    def _check(self, command: str):
        self.calls.append(command)
        if self.unreachable:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")
        if command in self.failing_commands:
            raise ResponseError(f"ERR simulated failure for {command}")

    def _purge(self, key: str):
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= self.clock.time():
            self.data.pop(key, None)
            self.expires_at.pop(key, None)

    def _live_keys(self) -> List[str]:
        for key in list(self.data):
            self._purge(key)
        return list(self.data)

    # Command implementations shared with the pipeline

    def _set(self, key: str, value: Any, ex: Optional[int], nx: bool) -> Optional[bool]:
        self._purge(key)
        if nx and key in self.data:
            return None
        self.data[key] = _to_bytes(value)
        if ex is not None:
            self.expires_at[key] = self.clock.time() + ex
        else:
            self.expires_at.pop(key, None)
        return True

    def _incrby(self, key: str, amount: int) -> int:
        self._purge(key)
        current = int(self.data.get(key, b"0"))
        current += amount
        self.data[key] = str(current).encode("utf-8")
        return current

    def _delete(self, keys) -> int:
        removed = 0
        for key in keys:
            key = key.decode("utf-8") if isinstance(key, bytes) else key
            self._purge(key)
            if key in self.data:
                del self.data[key]
                self.expires_at.pop(key, None)
                removed += 1
        return removed

    # redis.asyncio.Redis surface

    async def get(self, key: str) -> Optional[bytes]:
        self._check("get")
        self._purge(key)
        value = self.data.get(key)
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    async def mget(self, keys: List[str]) -> List[Optional[bytes]]:
        self._check("mget")
        values = []
        for key in keys:
            self._purge(key)
            values.append(self.data.get(key))
        return values

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        self._check("set")
        return self._set(key, value, ex, nx)

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        return self._delete(keys)

    async def unlink(self, *keys: str) -> int:
        self._check("unlink")
        return self._delete(keys)

    async def exists(self, *keys: str) -> int:
        self._check("exists")
        count = 0
        for key in keys:
            self._purge(key)
            count += key in self.data
        return count

    async def ttl(self, key: str) -> int:
        self._check("ttl")
        self._purge(key)
        if key not in self.data:
            return -2
        if key not in self.expires_at:
            return -1
        return math.ceil(self.expires_at[key] - self.clock.time())

    async def incrby(self, key: str, amount: int = 1) -> int:
        self._check("incrby")
        return self._incrby(key, amount)

    async def expire(self, key: str, seconds: int) -> bool:
        self._check("expire")
        self._purge(key)
        if key not in self.data:
            return False
        self.expires_at[key] = self.clock.time() + seconds
        return True

    async def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None):
        self._check("scan")
        regex = _glob_to_regex(match) if match else None
        for key in self._live_keys():
            if regex is None or regex.match(key):
                yield key.encode("utf-8")

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def flushdb(self) -> bool:
        self._check("flushdb")
        self.data.clear()
        self.expires_at.clear()
        return True

    async def ping(self) -> bool:
        self._check("ping")
        return True

    async def info(self) -> Dict[str, Any]:
        self._check("info")
        return {
            "keyspace_hits": self.hits,
            "keyspace_misses": self.misses,
            "used_memory_human": "1.00M",
        }

    async def aclose(self):
        self.closed = True


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def observability():
    return ObservabilityManager("task_manager_test", metrics=MetricsCollector("task_manager_test"))


@pytest.fixture
def keystore(fake_redis, observability):
    return KeyStore(fake_redis, observability=observability)


@pytest.fixture
def namespace():
    return CacheNamespace()


@pytest.fixture
def resilience(observability, sleep, clock):
    return ResilienceWrapper(observability=observability, sleep=sleep, clock=clock.time)


@pytest.fixture
def entity_cache(keystore, namespace, resilience, observability):
    return EntityCache(keystore, namespace, resilience, observability=observability)


@pytest.fixture
def token_cache(keystore, namespace, resilience, observability, clock):
    return TokenValidationCache(keystore, namespace, resilience, observability=observability, clock=clock.time)


@pytest.fixture
def user_cache(keystore, namespace, resilience, observability, clock):
    return UserDataCache(keystore, namespace, resilience, observability=observability, clock=clock.time)


@pytest.fixture
def rate_limiter(keystore, namespace, resilience, observability, clock):
    return FixedWindowRateLimiter(keystore, namespace, resilience, observability=observability, clock=clock.time)


@pytest.fixture
def config():
    return BaseConfig(env="test", rate_limit_enabled=True, _env_file=None)


@pytest.fixture
def state_layer(config, keystore, observability, clock, sleep):
    return build_state_layer(
        config,
        store=keystore,
        observability=observability,
        clock=clock.time,
        monotonic=clock.time,
        sleep=sleep
    )
