import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from cache import CacheKeys, CacheManager
from invalidation import CacheInvalidation


def _filled_cache() -> CacheManager:
    cache = CacheManager()
    for key in (
        "exercises:all",
        "exercises:all:{\"favorites_only\":true}",
        "exercises:1",
        "exercises:2",
        "exercises:tag:3",
        "exercises:recent",
        "exercise_tags:1",
        "tags:all",
        "tags:3",
        "sessions:1",
        "sessions:1:stats",
        "sessions:2",
        "sessions:date:2024-01-01",
        "sessions:range:2024-01-01:2024-01-31",
        "calendar:2024:1",
        "sets:session:1",
        "sets:session:2",
        "sets:exercise:1",
        "sets:exercise:2",
        "profile",
    ):
        cache.set(key, key)
    return cache


def _keys(cache: CacheManager) -> set:
    return set(cache.get_stats()["keys"])


def test_exercise_change_clears_exercise_namespace():
    cache = _filled_cache()
    CacheInvalidation(cache).on_exercise_change(1)
    keys = _keys(cache)
    assert not any(k.startswith("exercises:") for k in keys)
    assert "sets:exercise:1" not in keys
    assert "sets:exercise:2" in keys
    assert "exercise_tags:1" in keys
    assert "tags:all" in keys
    assert "sessions:1" in keys


def test_exercise_change_without_id():
    cache = _filled_cache()
    CacheInvalidation(cache).on_exercise_change()
    keys = _keys(cache)
    assert not any(k.startswith("exercises:") for k in keys)
    assert "sets:exercise:1" in keys


def test_exercise_change_reaches_dependent_reads():
    cache = _filled_cache()
    cache.add_dependency(CacheKeys.exercise_by_id(1), CacheKeys.sets_by_session(2))
    cache.add_dependency(CacheKeys.exercise_by_id(1), CacheKeys.session_stats(1))
    CacheInvalidation(cache).on_exercise_change(1)
    keys = _keys(cache)
    assert "sets:session:2" not in keys
    assert "sessions:1:stats" not in keys
    assert "sessions:2" in keys


def test_tag_change_clears_tags_and_exercises():
    cache = _filled_cache()
    CacheInvalidation(cache).on_tag_change(3)
    keys = _keys(cache)
    assert not any(k.startswith("tags:") for k in keys)
    assert not any(k.startswith("exercises:") for k in keys)
    assert "exercise_tags:1" in keys
    assert "sessions:date:2024-01-01" in keys


def test_session_change_clears_sessions_and_calendar():
    cache = _filled_cache()
    CacheInvalidation(cache).on_session_change(1, "2024-01-01")
    keys = _keys(cache)
    assert not any(k.startswith("sessions:") for k in keys)
    assert not any(k.startswith("calendar:") for k in keys)
    assert "sets:session:1" not in keys
    assert "sets:session:2" in keys
    assert "exercises:all" in keys


def test_set_change_is_targeted():
    cache = _filled_cache()
    cache.add_dependency(CacheKeys.session_by_id(1), CacheKeys.session_stats(1))
    CacheInvalidation(cache).on_set_change(1, 2)
    keys = _keys(cache)
    for gone in (
        "sets:session:1",
        "sets:exercise:2",
        "exercises:recent",
        "sessions:1",
        "sessions:1:stats",
    ):
        assert gone not in keys
    for kept in (
        "sets:session:2",
        "sets:exercise:1",
        "sessions:2",
        "sessions:date:2024-01-01",
        "calendar:2024:1",
        "exercises:all",
    ):
        assert kept in keys


def test_profile_change_only_touches_profile():
    cache = _filled_cache()
    before = _keys(cache)
    CacheInvalidation(cache).on_profile_change()
    assert _keys(cache) == before - {"profile"}


def test_full_reset_clears_everything():
    cache = _filled_cache()
    cache.add_dependency("sessions:1", "sessions:1:stats")
    CacheInvalidation(cache).on_full_reset()
    assert cache.get_stats()["size"] == 0
    assert cache.get_stats()["dependencies"] == 0
