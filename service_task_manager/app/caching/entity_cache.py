"""
Read-through / invalidate-on-write cache for tasks and their derived collections.

A tenant counts as active while an activity marker written by a cache hit
is alive. Misses do not write it, so the put that follows a cold miss keeps
the base TTL; only tenants re-reading cached data get the shorter TTL.
"""

import json
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel

from shared.errors import (
    CircuitOpenError,
    InvalidCachedPayload,
    RetryExhaustedError,
    StoreError,
)
from shared.logging import get_logger
from shared.observability import ObservabilityManager
from shared.resilience import ResilienceWrapper
from ..domain.models import CacheCategory, ListKind, Task, TaskMutation
from ..keystore.store import KeyStore
from .namespace import CacheNamespace

# Failures a cache read or write recovers from locally
_RECOVERABLE = (StoreError, CircuitOpenError, RetryExhaustedError)

# Categories holding derived collections, cleared after any task mutation
TENANT_LIST_CATEGORIES = (
    CacheCategory.TASK_LIST,
    CacheCategory.OVERDUE_LIST,
    CacheCategory.STATISTICS,
)

WARMUP_MARKER_TTL = 60

ListItem = Union[Task, Mapping[str, Any]]


def _encode(value: Any) -> bytes:
    if isinstance(value, BaseModel):
        return value.model_dump_json().encode("utf-8")
    if isinstance(value, (list, tuple)):
        value = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in value]
    return json.dumps(value, default=str).encode("utf-8")


class EntityCache:
    """Typed cache of a tenant's tasks, task lists, overdue list and statistics.

    The database stays the source of truth: on a miss the handler queries it
    and calls one of the ``put_*`` methods. Writes are best-effort, reads
    downgrade every store problem to a miss, and only invalidation surfaces
    failures, since a failed invalidation can leave stale data behind.
    """

    def __init__(self,
                 store: KeyStore,
                 namespace: CacheNamespace,
                 resilience: ResilienceWrapper,
                 observability: Optional[ObservabilityManager] = None,
                 activity_window_seconds: int = 300,
                 operation_class: str = "cache"):
        self.store = store
        self.namespace = namespace
        self.resilience = resilience
        self.observability = observability
        self.activity_window_seconds = activity_window_seconds
        self.operation_class = operation_class
        self.logger = get_logger("task_manager.cache.entity")

        # Process-local counters, reporting only
        self._stats = {
            "hits": 0,
            "misses": 0,
            "puts": 0,
            "put_failures": 0,
            "read_errors": 0,
            "invalid_payloads": 0,
            "invalidations": 0,
        }

    # Single task

    async def get_task(self, tenant_id: str, task_id: Union[int, str]) -> Optional[Task]:
        """Cached task, or None on a miss."""
        key = self.namespace.build_key(tenant_id, CacheCategory.TASK, str(task_id))
        return await self._read(tenant_id, CacheCategory.TASK, key, Task.model_validate_json)

    async def put_task(self, tenant_id: str, task: Task, ttl: Optional[int] = None) -> bool:
        key = self.namespace.build_key(tenant_id, CacheCategory.TASK, str(task.id))
        return await self._write(tenant_id, CacheCategory.TASK, key, _encode(task), ttl)

    # Collections

    async def get_list(self, tenant_id: str, kind: ListKind,
                       sub_key: Optional[str] = None) -> Optional[List[Task]]:
        """Cached task list or overdue list; ``sub_key`` selects a filtered variant."""
        kind = ListKind(kind)
        key = self.namespace.build_key(tenant_id, kind.category, sub_key=sub_key)

        def decode(raw: bytes) -> List[Task]:
            items = json.loads(raw)
            if not isinstance(items, list):
                raise ValueError("cached list payload is not a JSON array")
            return [Task.model_validate(item) for item in items]

        return await self._read(tenant_id, kind.category, key, decode)

    async def put_list(self, tenant_id: str, kind: ListKind, items: Sequence[ListItem],
                       ttl: Optional[int] = None, sub_key: Optional[str] = None) -> bool:
        kind = ListKind(kind)
        key = self.namespace.build_key(tenant_id, kind.category, sub_key=sub_key)
        return await self._write(tenant_id, kind.category, key, _encode(list(items)), ttl)

    async def get_statistics(self, tenant_id: str, sub_key: Optional[str] = None) -> Optional[Dict[str, Any]]:
        key = self.namespace.build_key(tenant_id, CacheCategory.STATISTICS, sub_key=sub_key)

        def decode(raw: bytes) -> Dict[str, Any]:
            stats = json.loads(raw)
            if not isinstance(stats, dict):
                raise ValueError("cached statistics payload is not a JSON object")
            return stats

        return await self._read(tenant_id, CacheCategory.STATISTICS, key, decode)

    async def put_statistics(self, tenant_id: str, statistics: Mapping[str, Any],
                             ttl: Optional[int] = None, sub_key: Optional[str] = None) -> bool:
        key = self.namespace.build_key(tenant_id, CacheCategory.STATISTICS, sub_key=sub_key)
        return await self._write(tenant_id, CacheCategory.STATISTICS, key, _encode(dict(statistics)), ttl)

    # Invalidation

    async def invalidate_task(self, tenant_id: str, task_id: Union[int, str]) -> int:
        """Delete the single-task entry. Deleting an absent entry is a no-op."""
        key = self.namespace.build_key(tenant_id, CacheCategory.TASK, str(task_id))
        removed = await self._invalidate(tenant_id, CacheCategory.TASK.value, lambda: self.store.delete(key))
        self.logger.debug("Invalidated task", tenant_id=tenant_id, task_id=task_id, removed=removed)
        return removed

    async def invalidate_tenant_lists(self, tenant_id: str) -> int:
        """Delete the tenant's task lists, overdue lists and statistics.

        Must be called after the database write has committed.
        """
        removed = 0
        for category in TENANT_LIST_CATEGORIES:
            pattern = self.namespace.build_pattern(tenant_id, category)
            removed += await self._invalidate(
                tenant_id, category.value, lambda pattern=pattern: self.store.delete_pattern(pattern)
            )
        self.logger.info("Invalidated tenant lists", tenant_id=tenant_id, removed=removed)
        return removed

    async def on_task_mutated(self, tenant_id: str, mutation: TaskMutation,
                              task_id: Optional[Union[int, str]] = None) -> int:
        """Apply the invalidation set for a task mutation event.

        Creation only affects collections; every other mutation also drops
        the single-task entry when ``task_id`` is known.
        """
        mutation = TaskMutation(mutation)
        removed = 0
        if mutation is not TaskMutation.CREATED and task_id is not None:
            removed += await self.invalidate_task(tenant_id, task_id)
        removed += await self.invalidate_tenant_lists(tenant_id)
        self.logger.info(
            "Task mutation invalidated cache",
            tenant_id=tenant_id,
            mutation=mutation.value,
            task_id=task_id,
            removed=removed
        )
        return removed

    async def invalidate_all_for_tenant(self, tenant_id: str) -> int:
        """Drop every cached projection for a tenant.

        Rate limit counters and token records are owned by their own
        components and left alone.
        """
        removed = 0
        for category in (CacheCategory.TASK, *TENANT_LIST_CATEGORIES,
                         CacheCategory.ACTIVITY, CacheCategory.WARMING):
            pattern = self.namespace.build_pattern(tenant_id, category)
            removed += await self._invalidate(
                tenant_id, category.value, lambda pattern=pattern: self.store.delete_pattern(pattern)
            )
        return removed

    # Introspection

    async def is_available(self) -> bool:
        """Round-trip a throwaway key. For health reporting, not the hot path."""
        key = f"{self.namespace.prefix}:health:{uuid.uuid4().hex}"
        marker = b"ok"
        try:
            await self.store.set(key, marker, 10)
            result = await self.store.get(key, strict=True)
            await self.store.delete(key)
        except StoreError as e:
            self.logger.warning("Cache availability check failed", error=str(e))
            return False
        return result.value == marker

    async def tenant_cache_info(self, tenant_id: str) -> Dict[str, Any]:
        """Presence and remaining TTL of each of the tenant's collection keys."""
        info: Dict[str, Any] = {"tenant_id": tenant_id, "entries": {}}
        for category in TENANT_LIST_CATEGORIES:
            key = self.namespace.build_key(tenant_id, category)
            exists = await self.store.exists(key)
            ttl = await self.store.ttl_remaining(key)
            info["entries"][category.value] = {
                "key": key,
                "exists": bool(exists.value),
                "ttl": ttl.value if exists.value else None,
                "degraded": not (exists.ok and ttl.ok),
            }
        info["active"] = await self.is_active_tenant(tenant_id)
        return info

    async def mark_for_warmup(self, tenant_id: str) -> bool:
        """Flag missing collections so a background job can pre-load them.

        Returns whether any marker was written.
        """
        marked = False
        for kind in ListKind:
            key = self.namespace.build_key(tenant_id, kind.category)
            exists = await self.store.exists(key)
            if exists.value or not exists.ok:
                continue
            marker = self.namespace.build_key(tenant_id, CacheCategory.WARMING, kind.value)
            try:
                await self.store.set(marker, b"1", WARMUP_MARKER_TTL)
            except StoreError as e:
                self.logger.warning("Failed to set warmup marker", tenant_id=tenant_id, error=str(e))
                continue
            marked = True
        if marked:
            self.logger.info("Marked tenant cache for warmup", tenant_id=tenant_id)
        return marked

    async def metrics(self) -> Dict[str, Any]:
        """Local hit/miss counters plus the store's own keyspace stats when reachable."""
        lookups = self._stats["hits"] + self._stats["misses"]
        report: Dict[str, Any] = dict(self._stats)
        report["hit_ratio"] = round(self._stats["hits"] / lookups, 4) if lookups else 0.0

        try:
            info = await self.store.info()
        except StoreError as e:
            self.logger.warning("Failed to read store stats", error=str(e))
            report["store"] = None
            return report

        store_hits = int(info.get("keyspace_hits", 0))
        store_misses = int(info.get("keyspace_misses", 0))
        store_lookups = store_hits + store_misses
        report["store"] = {
            "keyspace_hits": store_hits,
            "keyspace_misses": store_misses,
            "hit_ratio": round(store_hits / store_lookups, 4) if store_lookups else 0.0,
            "used_memory": info.get("used_memory_human"),
        }
        return report

    async def is_active_tenant(self, tenant_id: str) -> bool:
        result = await self.store.exists(self.namespace.activity_key(tenant_id))
        return bool(result.value)

    # Internals

    async def _read(self, tenant_id: str, category: CacheCategory, key: str, decode) -> Optional[Any]:
        try:
            result = await self.resilience.execute(
                self.operation_class, lambda: self.store.get(key, strict=True), tenant_id=tenant_id
            )
        except _RECOVERABLE as e:
            self._stats["read_errors"] += 1
            self._emit("read_degraded", tenant_id, category, key=key, error=str(e))
            self._record_access(category, hit=False)
            return None

        if result.value is None:
            self._record_access(category, hit=False)
            self.logger.debug("Cache MISS", key=key)
            return None

        try:
            value = decode(result.value)
        except ValueError as e:
            # Pydantic ValidationError and JSONDecodeError are both ValueErrors
            error = InvalidCachedPayload(key, f"Cached payload could not be decoded: {e}")
            self._stats["invalid_payloads"] += 1
            self._emit("invalid_payload", tenant_id, category, key=key, error=error.message)
            await self._discard(key)
            self._record_access(category, hit=False)
            return None

        await self._touch_activity(tenant_id)
        self._record_access(category, hit=True)
        self.logger.debug("Cache HIT", key=key)
        return value

    async def _write(self, tenant_id: str, category: CacheCategory, key: str,
                     payload: bytes, ttl: Optional[int]) -> bool:
        if ttl is None:
            ttl = self.namespace.resolve_ttl(category, await self.is_active_tenant(tenant_id))
        elif ttl < 1:
            raise ValueError(f"Cache TTL must be at least 1 second, got {ttl}")

        try:
            await self.resilience.execute(
                self.operation_class, lambda: self.store.set(key, payload, ttl), tenant_id=tenant_id
            )
        except _RECOVERABLE as e:
            self._stats["put_failures"] += 1
            self._emit("store_failed", tenant_id, category, key=key, error=str(e))
            return False

        self._stats["puts"] += 1
        self.logger.debug("Cache SET", key=key, ttl=ttl)
        return True

    async def _invalidate(self, tenant_id: str, category: str, thunk) -> int:
        try:
            removed = await self.resilience.execute(self.operation_class, thunk, tenant_id=tenant_id)
        except _RECOVERABLE as e:
            self._emit("invalidate_failed", tenant_id, category, error=str(e))
            raise
        self._stats["invalidations"] += 1
        return int(removed)

    async def _touch_activity(self, tenant_id: str):
        try:
            await self.store.set(self.namespace.activity_key(tenant_id), b"1", self.activity_window_seconds)
        except StoreError as e:
            self.logger.debug("Failed to record tenant activity", tenant_id=tenant_id, error=str(e))

    async def _discard(self, key: str):
        try:
            await self.store.delete(key)
        except StoreError as e:
            self.logger.warning("Failed to delete undecodable cache entry", key=key, error=str(e))

    def _record_access(self, category: CacheCategory, hit: bool):
        self._stats["hits" if hit else "misses"] += 1
        if self.observability:
            self.observability.record_cache_access(category.value, hit)

    def _emit(self, outcome: str, tenant_id: str, category: Union[CacheCategory, str], **fields: Any):
        category_value = category.value if isinstance(category, CacheCategory) else category
        if self.observability:
            self.observability.emit_event("cache", tenant_id, category_value, outcome, **fields)
        else:
            self.logger.warning("Cache event", tenant_id=tenant_id, category=category_value,
                                outcome=outcome, **fields)
