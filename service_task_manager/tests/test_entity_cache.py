"""
Unit tests for the EntityCache.
"""

import pytest
from unittest.mock import AsyncMock, patch

from shared.errors import CircuitOpenError, RetryExhaustedError, StoreOperationFailed
from service_task_manager.app.domain.models import CacheCategory, ListKind, Task, TaskMutation, TaskStatus


def make_task(task_id: int = 1, user_id: int = 7, title: str = "Write report", **kwargs) -> Task:
    return Task(id=task_id, user_id=user_id, title=title, **kwargs)


def event_outcomes(observability, category: str, operation_class: str, outcome: str) -> float:
    return observability.metrics.sample(
        "state_layer_events_total", category=category, operation_class=operation_class, outcome=outcome
    )


class TestTaskEntries:
    """Single-task read-through behaviour."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, entity_cache):
        task = make_task()

        assert await entity_cache.get_task("7", 1) is None
        assert await entity_cache.put_task("7", task) is True

        cached = await entity_cache.get_task("7", 1)
        assert cached == task

    @pytest.mark.asyncio
    async def test_default_ttl_without_recent_reads(self, entity_cache, keystore, namespace):
        await entity_cache.put_task("7", make_task())

        ttl = await keystore.ttl_remaining(namespace.build_key("7", CacheCategory.TASK, "1"))
        assert ttl.value == 3600

    @pytest.mark.asyncio
    async def test_active_tenant_gets_shorter_ttl(self, entity_cache, keystore, namespace):
        await entity_cache.put_task("7", make_task())
        await entity_cache.get_task("7", 1)
        await entity_cache.put_task("7", make_task(title="Write final report"))

        ttl = await keystore.ttl_remaining(namespace.build_key("7", CacheCategory.TASK, "1"))
        assert ttl.value == 2520

    @pytest.mark.asyncio
    async def test_read_through_miss_keeps_base_ttl(self, entity_cache, keystore, namespace):
        assert await entity_cache.get_task("7", 1) is None
        await entity_cache.put_task("7", make_task())

        assert await entity_cache.is_active_tenant("7") is False
        ttl = await keystore.ttl_remaining(namespace.build_key("7", CacheCategory.TASK, "1"))
        assert ttl.value == 3600

    @pytest.mark.asyncio
    async def test_activity_window_expires(self, entity_cache, clock):
        await entity_cache.put_task("7", make_task())
        await entity_cache.get_task("7", 1)
        assert await entity_cache.is_active_tenant("7") is True

        clock.advance(301)
        assert await entity_cache.is_active_tenant("7") is False

    @pytest.mark.asyncio
    async def test_explicit_ttl(self, entity_cache, keystore, namespace):
        await entity_cache.put_task("7", make_task(), ttl=42)

        ttl = await keystore.ttl_remaining(namespace.build_key("7", CacheCategory.TASK, "1"))
        assert ttl.value == 42

    @pytest.mark.asyncio
    async def test_zero_ttl_rejected(self, entity_cache):
        with pytest.raises(ValueError):
            await entity_cache.put_task("7", make_task(), ttl=0)

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, entity_cache):
        await entity_cache.put_task("7", make_task(user_id=7))

        assert await entity_cache.get_task("8", 1) is None


class TestCollections:
    """Task lists, overdue lists and statistics."""

    @pytest.mark.asyncio
    async def test_list_round_trip_with_sub_key(self, entity_cache):
        tasks = [make_task(1), make_task(2, title="Review", status=TaskStatus.COMPLETED)]

        await entity_cache.put_list("7", ListKind.TASK_LIST, tasks, sub_key="page1")

        assert await entity_cache.get_list("7", ListKind.TASK_LIST) is None
        assert await entity_cache.get_list("7", ListKind.TASK_LIST, sub_key="page1") == tasks

    @pytest.mark.asyncio
    async def test_list_accepts_plain_dicts(self, entity_cache):
        await entity_cache.put_list("7", ListKind.OVERDUE_LIST, [{"id": 3, "user_id": 7, "title": "Late"}])

        overdue = await entity_cache.get_list("7", ListKind.OVERDUE_LIST)
        assert overdue[0].id == 3
        assert overdue[0].title == "Late"

    @pytest.mark.asyncio
    async def test_statistics(self, entity_cache):
        stats = {"total": 4, "completed": 1, "completion_rate": 25.0}

        await entity_cache.put_statistics("7", stats)

        assert await entity_cache.get_statistics("7") == stats


class TestFailureHandling:
    """Store failures never fail the request on reads and writes."""

    @pytest.mark.asyncio
    async def test_put_is_best_effort(self, entity_cache, fake_redis, observability):
        fake_redis.unreachable = True

        assert await entity_cache.put_task("7", make_task()) is False
        assert event_outcomes(observability, "cache", "task", "store_failed") == 1.0

    @pytest.mark.asyncio
    async def test_read_failure_is_a_miss(self, entity_cache, fake_redis, observability):
        await entity_cache.put_task("7", make_task())
        fake_redis.unreachable = True

        assert await entity_cache.get_task("7", 1) is None
        assert event_outcomes(observability, "cache", "task", "read_degraded") == 1.0

    @pytest.mark.asyncio
    async def test_read_retries_before_giving_up(self, entity_cache, fake_redis, sleep):
        fake_redis.unreachable = True

        await entity_cache.get_task("7", 1)

        assert fake_redis.calls.count("get") == 2
        assert len(sleep.delays) == 1

    @pytest.mark.asyncio
    async def test_read_with_open_circuit_is_a_miss(self, entity_cache, fake_redis):
        for _ in range(5):
            fake_redis.unreachable = True
            await entity_cache.get_task("7", 1)

        fake_redis.unreachable = False
        calls_before = len(fake_redis.calls)

        assert await entity_cache.get_task("7", 1) is None
        assert len(fake_redis.calls) == calls_before

    @pytest.mark.asyncio
    async def test_invalid_payload_is_deleted(self, entity_cache, keystore, namespace, observability):
        key = namespace.build_key("7", CacheCategory.TASK, "1")
        await keystore.set(key, b"{not json", 60)

        assert await entity_cache.get_task("7", 1) is None
        assert (await keystore.exists(key)).value is False
        assert event_outcomes(observability, "cache", "task", "invalid_payload") == 1.0

    @pytest.mark.asyncio
    async def test_list_with_wrong_shape_is_invalid(self, entity_cache, keystore, namespace):
        key = namespace.build_key("7", CacheCategory.TASK_LIST)
        await keystore.set(key, b'{"id": 1}', 60)

        assert await entity_cache.get_list("7", ListKind.TASK_LIST) is None
        assert (await keystore.exists(key)).value is False


class TestInvalidation:
    """Invalidation semantics."""

    @pytest.mark.asyncio
    async def test_invalidate_task_is_idempotent(self, entity_cache):
        await entity_cache.put_task("7", make_task())

        assert await entity_cache.invalidate_task("7", 1) == 1
        assert await entity_cache.invalidate_task("7", 1) == 0
        assert await entity_cache.get_task("7", 1) is None

    @pytest.mark.asyncio
    async def test_invalidate_task_leaves_lists(self, entity_cache):
        await entity_cache.put_task("7", make_task())
        await entity_cache.put_list("7", ListKind.TASK_LIST, [make_task()])

        await entity_cache.invalidate_task("7", 1)

        assert await entity_cache.get_list("7", ListKind.TASK_LIST) is not None

    @pytest.mark.asyncio
    async def test_write_then_invalidate_hides_stale_list(self, entity_cache):
        await entity_cache.put_list("7", ListKind.TASK_LIST, [make_task(title="Old title")])
        await entity_cache.put_list("7", ListKind.TASK_LIST, [make_task(title="Old title")], sub_key="done")
        await entity_cache.put_list("7", ListKind.OVERDUE_LIST, [make_task(title="Old title")])
        await entity_cache.put_statistics("7", {"total": 1})

        # The database write has committed at this point
        removed = await entity_cache.invalidate_tenant_lists("7")

        assert removed == 4
        assert await entity_cache.get_list("7", ListKind.TASK_LIST) is None
        assert await entity_cache.get_list("7", ListKind.TASK_LIST, sub_key="done") is None
        assert await entity_cache.get_list("7", ListKind.OVERDUE_LIST) is None
        assert await entity_cache.get_statistics("7") is None

    @pytest.mark.asyncio
    async def test_invalidate_lists_leaves_other_tenants(self, entity_cache):
        await entity_cache.put_list("7", ListKind.TASK_LIST, [make_task()])
        await entity_cache.put_list("70", ListKind.TASK_LIST, [make_task(user_id=70)])

        await entity_cache.invalidate_tenant_lists("7")

        assert await entity_cache.get_list("70", ListKind.TASK_LIST) is not None

    @pytest.mark.asyncio
    async def test_invalidate_raises_when_retries_exhausted(self, entity_cache, fake_redis, observability):
        fake_redis.unreachable = True

        with pytest.raises(RetryExhaustedError):
            await entity_cache.invalidate_task("7", 1)
        assert event_outcomes(observability, "cache", "task", "invalidate_failed") == 1.0

    @pytest.mark.asyncio
    async def test_invalidate_raises_when_circuit_open(self, entity_cache, fake_redis):
        fake_redis.unreachable = True
        for _ in range(5):
            with pytest.raises(RetryExhaustedError):
                await entity_cache.invalidate_task("7", 1)

        with pytest.raises(CircuitOpenError):
            await entity_cache.invalidate_tenant_lists("7")

    @pytest.mark.asyncio
    async def test_invalidate_propagates_command_errors(self, entity_cache, fake_redis):
        fake_redis.failing_commands.add("delete")

        with pytest.raises(StoreOperationFailed):
            await entity_cache.invalidate_task("7", 1)

    @pytest.mark.asyncio
    async def test_on_task_created_only_clears_collections(self, entity_cache):
        await entity_cache.put_task("7", make_task())
        await entity_cache.put_list("7", ListKind.TASK_LIST, [make_task()])

        await entity_cache.on_task_mutated("7", TaskMutation.CREATED, task_id=1)

        assert await entity_cache.get_task("7", 1) is not None
        assert await entity_cache.get_list("7", ListKind.TASK_LIST) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mutation", [TaskMutation.UPDATED, TaskMutation.DELETED, TaskMutation.STATUS_CHANGED])
    async def test_on_task_mutated_clears_task_and_collections(self, entity_cache, mutation):
        await entity_cache.put_task("7", make_task())
        await entity_cache.put_statistics("7", {"total": 1})

        removed = await entity_cache.on_task_mutated("7", mutation, task_id=1)

        assert removed == 2
        assert await entity_cache.get_task("7", 1) is None
        assert await entity_cache.get_statistics("7") is None

    @pytest.mark.asyncio
    async def test_invalidate_all_keeps_rate_limit_counters(self, entity_cache, rate_limiter):
        await entity_cache.put_task("7", make_task())
        await entity_cache.put_list("7", ListKind.TASK_LIST, [make_task()])
        await rate_limiter.check_and_consume("7", "read")

        await entity_cache.invalidate_all_for_tenant("7")

        assert await entity_cache.get_task("7", 1) is None
        status = await rate_limiter.status("7")
        assert status["operations"]["read"]["used"] == 1


class TestIntrospection:
    """Health, info and metrics helpers."""

    @pytest.mark.asyncio
    async def test_is_available(self, entity_cache, fake_redis):
        assert await entity_cache.is_available() is True
        assert not [k for k in fake_redis.data if ":health:" in k]

        fake_redis.unreachable = True
        assert await entity_cache.is_available() is False

    @pytest.mark.asyncio
    async def test_tenant_cache_info(self, entity_cache):
        await entity_cache.put_list("7", ListKind.TASK_LIST, [make_task()], ttl=100)

        info = await entity_cache.tenant_cache_info("7")

        assert info["entries"]["task_list"]["exists"] is True
        assert info["entries"]["task_list"]["ttl"] == 100
        assert info["entries"]["overdue_list"]["exists"] is False
        assert info["entries"]["overdue_list"]["ttl"] is None

    @pytest.mark.asyncio
    async def test_mark_for_warmup(self, entity_cache, keystore, namespace):
        await entity_cache.put_list("7", ListKind.TASK_LIST, [make_task()])

        assert await entity_cache.mark_for_warmup("7") is True

        overdue_marker = namespace.build_key("7", CacheCategory.WARMING, "overdue_list")
        list_marker = namespace.build_key("7", CacheCategory.WARMING, "task_list")
        assert (await keystore.ttl_remaining(overdue_marker)).value == 60
        assert (await keystore.exists(list_marker)).value is False

    @pytest.mark.asyncio
    async def test_mark_for_warmup_when_everything_cached(self, entity_cache):
        await entity_cache.put_list("7", ListKind.TASK_LIST, [make_task()])
        await entity_cache.put_list("7", ListKind.OVERDUE_LIST, [make_task()])

        assert await entity_cache.mark_for_warmup("7") is False

    @pytest.mark.asyncio
    async def test_metrics(self, entity_cache, observability):
        await entity_cache.get_task("7", 1)
        await entity_cache.put_task("7", make_task())
        await entity_cache.get_task("7", 1)

        report = await entity_cache.metrics()

        assert report["hits"] == 1
        assert report["misses"] == 1
        assert report["puts"] == 1
        assert report["hit_ratio"] == 0.5
        assert report["store"]["keyspace_hits"] >= 1
        assert observability.metrics.sample("cache_hits_total", category="task") == 1.0

    @pytest.mark.asyncio
    async def test_metrics_without_store_stats(self, entity_cache, keystore):
        with patch.object(keystore, "info", new_callable=AsyncMock) as mock_info:
            mock_info.side_effect = StoreOperationFailed("info")
            report = await entity_cache.metrics()

        assert report["store"] is None
