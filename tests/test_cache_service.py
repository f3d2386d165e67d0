"""
Tests for CacheService: cache-aside semantics, TTLs, invalidation scope,
statistics and containment of store failures.
"""
import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from caching.cache_service import CacheOptions, CacheService, to_jsonable


@pytest.fixture
def broken_redis():
    """Redis client whose every command fails with a connection error."""
    mock_redis = AsyncMock()
    error = RedisConnectionError("Connection refused")
    for command in ("get", "setex", "delete", "exists", "dbsize", "info", "ping", "flushdb"):
        getattr(mock_redis, command).side_effect = error
    mock_redis.scan_iter = MagicMock(side_effect=error)
    return mock_redis


class TestReadsAndWrites:

    @pytest.mark.asyncio
    async def test_set_then_get_round_trips_under_prefix(self, cache_service, fake_redis):
        record = {"studentId": 1, "firstName": "Ana", "sections": [7, 8]}

        assert await cache_service.set("student:1", record) is True
        assert await cache_service.get("student:1") == record
        assert "icct:student:1" in fake_redis.store
        assert fake_redis.ttls["icct:student:1"] == 3600

    @pytest.mark.asyncio
    async def test_explicit_ttl_and_prefix_override(self, cache_service, fake_redis):
        await cache_service.set("emails:stats", {"sent": 3}, CacheOptions(ttl=120, prefix="other:"))

        assert fake_redis.ttls["other:emails:stats"] == 120
        assert await cache_service.get("emails:stats") is None
        assert await cache_service.get("emails:stats", CacheOptions(prefix="other:")) == {"sent": 3}

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, cache_service, clock):
        await cache_service.set("system:stats", {"total_students": 3}, CacheOptions(ttl=300))

        clock.advance(299)
        assert await cache_service.get("system:stats") == {"total_students": 3}
        clock.advance(1)
        assert await cache_service.get("system:stats") is None

    @pytest.mark.asyncio
    async def test_cached_null_is_a_hit(self, cache_service):
        await cache_service.set("student:404", None)

        lookup = await cache_service.lookup("student:404")
        assert lookup.hit is True
        assert lookup.value is None
        assert cache_service._snapshot().hits == 1

    @pytest.mark.asyncio
    async def test_non_positive_ttl_is_refused(self, cache_service, fake_redis):
        assert await cache_service.set("student:1", {"a": 1}, CacheOptions(ttl=0)) is False
        assert fake_redis.store == {}

    @pytest.mark.asyncio
    async def test_unserializable_value_is_not_cached(self, cache_service, fake_redis):
        assert await cache_service.set("student:1", {"handle": object()}) is False
        assert fake_redis.store == {}

    @pytest.mark.asyncio
    async def test_undecodable_payload_counts_as_miss(self, cache_service, fake_redis):
        fake_redis.store["icct:student:1"] = "{not json"

        assert (await cache_service.lookup("student:1")).hit is False
        assert cache_service._snapshot().misses == 1

    @pytest.mark.asyncio
    async def test_exists_and_delete(self, cache_service):
        await cache_service.set("section:7", {"sectionId": 7})

        assert await cache_service.exists("section:7") is True
        assert await cache_service.delete("section:7") is True
        assert await cache_service.delete("section:7") is False
        assert await cache_service.exists("section:7") is False

    @pytest.mark.asyncio
    async def test_delete_many_counts_existing_keys(self, cache_service):
        await cache_service.set("schedule:5", {"id": 5})
        await cache_service.set("schedule:6", {"id": 6})

        assert await cache_service.delete_many(["schedule:5", "schedule:6", "schedule:9"]) == 2
        assert await cache_service.delete_many([]) == 0


class TestGetOrSet:

    @pytest.mark.asyncio
    async def test_fetches_once_then_serves_from_cache(self, cache_service):
        fetch = AsyncMock(return_value={"total": 4, "present": 2})

        first = await cache_service.get_or_set("attendance:stats:1", fetch)
        second = await cache_service.get_or_set("attendance:stats:1", fetch)

        assert first == second == {"total": 4, "present": 2}
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_accepts_synchronous_fetch(self, cache_service):
        fetch = MagicMock(return_value=[1, 2, 3])

        assert await cache_service.get_or_set("students:course:100", fetch) == [1, 2, 3]
        assert await cache_service.get_or_set("students:course:100", fetch) == [1, 2, 3]
        assert fetch.call_count == 1

    @pytest.mark.asyncio
    async def test_fetch_error_propagates_and_nothing_is_cached(self, cache_service, fake_redis):
        fetch = AsyncMock(side_effect=LookupError("database down"))

        with pytest.raises(LookupError, match="database down"):
            await cache_service.get_or_set("student:1", fetch)
        assert fake_redis.store == {}

    @pytest.mark.asyncio
    async def test_stores_with_requested_ttl(self, cache_service, fake_redis, clock):
        fetch = AsyncMock(return_value={"studentId": 123})

        value = await cache_service.get_or_set("student:123", fetch, CacheOptions(ttl=1800))

        assert value == {"studentId": 123}
        assert fake_redis.ttls["icct:student:123"] == 1800
        assert json.loads(fake_redis.store["icct:student:123"]) == {"studentId": 123}

        clock.advance(1800)
        await cache_service.get_or_set("student:123", fetch, CacheOptions(ttl=1800))
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_cold_warm_invalidate_cycle(self, cache_service):
        fetch_student = AsyncMock(return_value={"studentId": 1, "firstName": "Ana"})
        options = CacheOptions(ttl=1800)

        first = await cache_service.get_or_set("student:1", fetch_student, options)
        second = await cache_service.get_or_set("student:1", fetch_student, options)
        assert first == second
        assert fetch_student.await_count == 1

        assert await cache_service.invalidate_pattern("student:1*") == 1
        await cache_service.get_or_set("student:1", fetch_student, options)
        assert fetch_student.await_count == 2

    @pytest.mark.asyncio
    async def test_cold_and_warm_results_match_for_non_json_types(self, cache_service):
        fetch = AsyncMock(return_value={
            1: "a",
            "enrolled": datetime(2024, 3, 15, 8, 30, tzinfo=timezone.utc),
            "sections": (7, 8),
        })

        cold = await cache_service.get_or_set("student:1", fetch)
        warm = await cache_service.get_or_set("student:1", fetch)

        assert cold == warm == {"1": "a", "enrolled": "2024-03-15T08:30:00+00:00", "sections": [7, 8]}
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_unencodable_result_is_returned_and_not_cached(self, cache_service, fake_redis):
        handle = object()
        fetch = AsyncMock(return_value={"handle": handle})

        value = await cache_service.get_or_set("system:handle", fetch)

        assert value["handle"] is handle
        assert fake_redis.store == {}

    @pytest.mark.asyncio
    async def test_hit_and_miss_logs_carry_cache_key(self, cache_service, caplog):
        fetch = AsyncMock(return_value={"sectionId": 7})

        with caplog.at_level(logging.DEBUG, logger="caching.cache_service"):
            await cache_service.get_or_set("section:7", fetch)
            await cache_service.get_or_set("section:7", fetch)

        keyed = [r for r in caplog.records if r.getMessage().startswith("Cache ")]
        assert [r.getMessage().split(":")[0] for r in keyed] == ["Cache MISS", "Cache HIT"]
        assert {r.cache_key for r in keyed} == {"icct:section:7"}


class TestInvalidation:

    @pytest.mark.asyncio
    async def test_pattern_removes_only_matching_keys(self, cache_service, fake_redis):
        for key in ("students:department:10", "students:course:100", "student:1", "section:7"):
            await cache_service.set(key, {"k": key})

        removed = await cache_service.invalidate_pattern("students:*")

        assert removed == 2
        assert sorted(fake_redis.store) == ["icct:section:7", "icct:student:1"]

    @pytest.mark.asyncio
    async def test_exact_pattern_does_not_touch_longer_ids(self, cache_service, fake_redis):
        await cache_service.set("student:1", {"id": 1})
        await cache_service.set("student:10", {"id": 10})

        assert await cache_service.invalidate_pattern("student:1") == 1
        assert "icct:student:10" in fake_redis.store

    @pytest.mark.asyncio
    async def test_pattern_respects_prefix(self, cache_service, fake_redis):
        fake_redis.store["other:students:1"] = "{}"
        await cache_service.set("students:1", {})

        assert await cache_service.invalidate_pattern("students:*") == 1
        assert "other:students:1" in fake_redis.store

    @pytest.mark.asyncio
    async def test_large_pattern_deletes_in_batches(self, cache_service, fake_redis):
        for i in range(1200):
            await cache_service.set(f"attendance:student:{i}", [])

        assert await cache_service.invalidate_pattern("attendance:student:*") == 1200
        assert fake_redis.commands["delete"] == 3

    @pytest.mark.asyncio
    async def test_invalidation_log_carries_pattern(self, cache_service, caplog):
        await cache_service.set("students:department:10", [])

        with caplog.at_level(logging.INFO, logger="caching.cache_service"):
            await cache_service.invalidate_pattern("students:*")

        assert [r.pattern for r in caplog.records if hasattr(r, "pattern")] == ["icct:students:*"]

    @pytest.mark.asyncio
    async def test_clear_flushes_everything(self, cache_service, fake_redis):
        await cache_service.set("student:1", {})
        fake_redis.store["foreign"] = "x"

        assert await cache_service.clear() is True
        assert fake_redis.store == {}


class TestStatistics:

    @pytest.mark.asyncio
    async def test_hits_misses_and_rate(self, cache_service):
        await cache_service.set("student:1", {"id": 1})
        await cache_service.get("student:1")
        await cache_service.get("student:1")
        await cache_service.get("student:2")

        stats = await cache_service.get_stats()

        assert stats.hits == 2
        assert stats.misses == 1
        assert stats.hit_rate == pytest.approx(66.666, rel=1e-3)
        assert stats.to_dict()["hit_rate"] == 66.67
        assert stats.total_keys == 1
        assert stats.memory_usage == "1.00M"
        assert stats.connected is True

    @pytest.mark.asyncio
    async def test_hit_rate_zero_before_any_read(self, cache_service):
        assert (await cache_service.get_stats()).hit_rate == 0.0

    @pytest.mark.asyncio
    async def test_reset_stats(self, cache_service):
        await cache_service.get("student:1")
        cache_service.reset_stats()

        snapshot = cache_service._snapshot()
        assert (snapshot.hits, snapshot.misses, snapshot.errors) == (0, 0, 0)


class TestFailureContainment:

    @pytest.fixture
    def broken_cache(self, broken_redis, clock, test_settings):
        return CacheService(broken_redis, settings=test_settings, clock=clock)

    @pytest.mark.asyncio
    async def test_every_operation_degrades_without_raising(self, broken_cache):
        assert await broken_cache.get("student:1") is None
        assert await broken_cache.set("student:1", {"id": 1}) is False
        assert await broken_cache.delete("student:1") is False
        assert await broken_cache.exists("student:1") is False
        assert await broken_cache.delete_many(["a", "b"]) == 0
        assert await broken_cache.invalidate_pattern("students:*") == 0
        assert await broken_cache.clear() is False

        stats = await broken_cache.get_stats()
        assert stats.connected is False
        assert stats.memory_usage == "Unavailable"

    @pytest.mark.asyncio
    async def test_get_or_set_falls_through_to_fetch(self, broken_cache):
        fetch = AsyncMock(return_value={"studentId": 1})

        assert await broken_cache.get_or_set("student:1", fetch) == {"studentId": 1}
        assert await broken_cache.get_or_set("student:1", fetch) == {"studentId": 1}
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_reads_count_as_miss_and_error(self, broken_cache):
        await broken_cache.get("student:1")
        await broken_cache.get("student:1")

        snapshot = broken_cache._snapshot()
        assert snapshot.hits == 0
        assert snapshot.misses == 2
        assert snapshot.errors == 2

    @pytest.mark.asyncio
    async def test_command_error_keeps_connection(self, fake_redis, clock, test_settings):
        fake_redis.get = AsyncMock(side_effect=ResponseError("WRONGTYPE"))
        service = CacheService(fake_redis, settings=test_settings, clock=clock)

        assert await service.get("student:1") is None
        assert service.connected is True

    @pytest.mark.asyncio
    async def test_reconnect_ping_after_interval(self, broken_redis, clock, test_settings):
        service = CacheService(broken_redis, settings=test_settings, clock=clock, reconnect_interval=5.0)

        await service.get("student:1")
        assert service.connected is False
        assert broken_redis.get.await_count == 1

        # Short-circuited while the back-off window is open
        clock.advance(4)
        await service.get("student:1")
        assert broken_redis.get.await_count == 1
        assert broken_redis.ping.await_count == 0

        broken_redis.ping.side_effect = None
        broken_redis.ping.return_value = True
        broken_redis.get.side_effect = None
        broken_redis.get.return_value = json.dumps({"studentId": 1})

        clock.advance(1)
        assert await service.get("student:1") == {"studentId": 1}
        assert broken_redis.ping.await_count == 1
        assert service.connected is True

    @pytest.mark.asyncio
    async def test_health_check_reports_latency_and_failure(self, cache_service, broken_cache):
        healthy = await cache_service.health_check()
        assert healthy.healthy is True
        assert healthy.latency_ms is not None

        unhealthy = await broken_cache.health_check()
        assert unhealthy.healthy is False
        assert "Connection refused" in unhealthy.error


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_close_releases_client_and_degrades(self, cache_service, fake_redis):
        await cache_service.set("student:1", {"id": 1})

        async with cache_service:
            pass

        assert fake_redis.closed is True
        assert cache_service.connected is False
        assert await cache_service.get("student:1") is None
        assert (await cache_service.health_check()).healthy is False


def test_to_jsonable_matches_cached_shape():
    value = {
        "when": datetime(2024, 3, 15, 8, 30, tzinfo=timezone.utc),
        "day": date(2024, 3, 15),
        "gpa": Decimal("1.75"),
        "tags": {"b", "a"},
        "pair": (1, 2),
    }

    assert to_jsonable(value) == {
        "when": "2024-03-15T08:30:00+00:00",
        "day": "2024-03-15",
        "gpa": 1.75,
        "tags": ["a", "b"],
        "pair": [1, 2],
    }
