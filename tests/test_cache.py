import os
import sys
import asyncio
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from cache import CacheKeys, CacheManager, namespace_pattern
from models import ExerciseFilter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_get_returns_value_until_ttl_elapses():
    clock = FakeClock()
    cache = CacheManager(default_ttl=10, clock=clock)
    cache.set("exercises:all", [1, 2])
    clock.now += 10
    assert cache.get("exercises:all") == [1, 2]
    clock.now += 0.001
    assert cache.get("exercises:all") is None
    assert cache.get_stats()["size"] == 0


def test_expired_and_missing_look_the_same():
    clock = FakeClock()
    cache = CacheManager(default_ttl=1, clock=clock)
    cache.set("a", "value")
    clock.now += 2
    assert cache.get("a", "absent") == cache.get("b", "absent") == "absent"
    assert not cache.contains("a")


def test_set_resets_age():
    clock = FakeClock()
    cache = CacheManager(default_ttl=5, clock=clock)
    cache.set("k", 1)
    clock.now += 4
    cache.set("k", 2)
    clock.now += 4
    assert cache.get("k") == 2


def test_ttl_expiry_with_real_clock():
    cache = CacheManager()
    cache.set("sessions:date:2024-01-01", ["s"], ttl=0.1)
    assert cache.get("sessions:date:2024-01-01") == ["s"]
    import time

    time.sleep(0.15)
    assert cache.get("sessions:date:2024-01-01") is None


@pytest.mark.asyncio
async def test_get_or_fetch_memoizes_within_ttl():
    cache = CacheManager()
    calls = []

    async def fetch():
        calls.append(1)
        return {"id": 42}

    first = await cache.get_or_fetch("exercises:42", fetch)
    second = await cache.get_or_fetch("exercises:42", fetch)
    assert first == second == {"id": 42}
    assert len(calls) == 1
    stats = cache.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1


@pytest.mark.asyncio
async def test_get_or_fetch_refetches_after_expiry():
    clock = FakeClock()
    cache = CacheManager(default_ttl=1, clock=clock)
    values = iter([1, 2])

    async def fetch():
        return next(values)

    assert await cache.get_or_fetch("k", fetch) == 1
    clock.now += 5
    assert await cache.get_or_fetch("k", fetch) == 2


@pytest.mark.asyncio
async def test_failed_fetch_is_not_cached():
    cache = CacheManager()
    attempts = []

    async def failing():
        attempts.append(1)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await cache.get_or_fetch("tags:all", failing)
    assert not cache.contains("tags:all")

    async def working():
        attempts.append(1)
        return ["Legs"]

    assert await cache.get_or_fetch("tags:all", working) == ["Legs"]
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_concurrent_misses_each_fetch_without_dedupe():
    cache = CacheManager()
    calls = []

    async def fetch():
        calls.append(1)
        await asyncio.sleep(0.01)
        return "rows"

    results = await asyncio.gather(*(cache.get_or_fetch("k", fetch) for _ in range(3)))
    assert results == ["rows"] * 3
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch_with_dedupe():
    cache = CacheManager(dedupe_fetches=True)
    calls = []

    async def fetch():
        calls.append(1)
        await asyncio.sleep(0.01)
        return "rows"

    results = await asyncio.gather(*(cache.get_or_fetch("k", fetch) for _ in range(3)))
    assert results == ["rows"] * 3
    assert len(calls) == 1
    assert cache._locks == {}


@pytest.mark.asyncio
async def test_failed_dedupe_fetch_keeps_lock_for_queued_callers():
    cache = CacheManager(dedupe_fetches=True)
    calls = []
    active = 0
    peak = 0

    async def fetch():
        nonlocal active, peak
        calls.append(1)
        active += 1
        peak = max(peak, active)
        try:
            await asyncio.sleep(0.02)
            if len(calls) == 1:
                raise RuntimeError("fetch failed")
            return "rows"
        finally:
            active -= 1

    async def late_caller():
        # arrives while the retry from the queued caller is still running
        await asyncio.sleep(0.03)
        return await cache.get_or_fetch("k", fetch)

    results = await asyncio.gather(
        cache.get_or_fetch("k", fetch),
        cache.get_or_fetch("k", fetch),
        late_caller(),
        return_exceptions=True,
    )
    assert isinstance(results[0], RuntimeError)
    assert results[1:] == ["rows", "rows"]
    assert len(calls) == 2
    assert peak == 1
    assert cache._locks == {}
    assert cache._lock_users == {}


@pytest.mark.asyncio
async def test_clear_during_dedupe_fetch_keeps_single_flight():
    cache = CacheManager(dedupe_fetches=True)
    calls = []

    async def fetch():
        calls.append(1)
        await asyncio.sleep(0.02)
        return "rows"

    async def clear_then_read():
        await asyncio.sleep(0.005)
        cache.clear()
        return await cache.get_or_fetch("k", fetch)

    results = await asyncio.gather(cache.get_or_fetch("k", fetch), clear_then_read())
    assert results == ["rows", "rows"]
    assert len(calls) == 1
    assert cache._locks == {}


def test_pattern_invalidation_stays_in_namespace():
    cache = CacheManager()
    cache.set("exercises:all", 1)
    cache.set("exercises:42", 2)
    cache.set("exercise_tags:1", 3)
    removed = cache.invalidate_pattern(namespace_pattern("exercises"))
    assert removed == 2
    assert not cache.contains("exercises:all")
    assert not cache.contains("exercises:42")
    assert cache.get("exercise_tags:1") == 3


def test_pattern_is_a_regular_expression():
    cache = CacheManager()
    cache.set("sessions:1", 1)
    cache.set("sessions:1:stats", 2)
    cache.set("sessions:2", 3)
    assert cache.invalidate_pattern(r"^sessions:1(:|$)") == 2
    assert cache.contains("sessions:2")


def test_invalidate_follows_dependencies():
    cache = CacheManager()
    cache.set("sessions:1", "session")
    cache.set("sessions:1:stats", "stats")
    cache.set("sessions:range:2024-01-01:2024-01-31", "range")
    cache.set("sessions:2", "other")
    cache.add_dependency("sessions:1", "sessions:1:stats")
    cache.add_dependency("sessions:1:stats", "sessions:range:2024-01-01:2024-01-31")
    cache.invalidate("sessions:1")
    assert cache.get_stats()["keys"] == ["sessions:2"]


def test_invalidate_reaches_dependents_of_absent_parent():
    cache = CacheManager()
    cache.set("sets:session:3", [])
    cache.add_dependency("exercises:7", "sets:session:3")
    cache.invalidate("exercises:7")
    assert not cache.contains("sets:session:3")


def test_dependency_cycles_terminate():
    cache = CacheManager()
    cache.set("a", 1)
    cache.set("b", 2)
    cache.add_dependency("a", "b")
    cache.add_dependency("b", "a")
    cache.invalidate("a")
    assert cache.get_stats()["size"] == 0
    assert cache.dependents("a") == {"b"}


def test_clear_drops_entries_and_dependencies():
    cache = CacheManager()
    cache.set("a", 1)
    cache.add_dependency("a", "b")
    cache.clear()
    assert cache.get_stats()["size"] == 0
    assert cache.get_stats()["dependencies"] == 0
    assert cache.dependents("a") == set()


def test_cleanup_sweeps_only_expired_entries():
    clock = FakeClock()
    cache = CacheManager(default_ttl=10, clock=clock)
    cache.set("short", 1, ttl=1)
    cache.set("long", 2)
    clock.now += 5
    assert cache.cleanup() == 1
    assert cache.get_stats()["keys"] == ["long"]


def test_filter_keys_are_stable():
    a = CacheKeys.all_exercises(ExerciseFilter(tag_ids=[3, 1], favorites_only=True))
    b = CacheKeys.all_exercises(ExerciseFilter(favorites_only=True, tag_ids=[1, 3, 3]))
    assert a == b
    assert a.startswith("exercises:all:")
    assert CacheKeys.all_exercises() == "exercises:all"
    assert CacheKeys.all_exercises(None) == "exercises:all"
    assert CacheKeys.all_exercises(ExerciseFilter(search_query="squ")) != a


def test_key_builders_use_namespaces():
    assert CacheKeys.exercise_by_id(42) == "exercises:42"
    assert CacheKeys.sessions_by_date("2024-01-01") == "sessions:date:2024-01-01"
    assert CacheKeys.session_stats(3) == "sessions:3:stats"
    assert CacheKeys.calendar_markers(2024, 2) == "calendar:2024:2"
    assert CacheKeys.sets_by_exercise(5) == "sets:exercise:5"
