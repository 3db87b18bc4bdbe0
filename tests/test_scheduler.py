import os
import sys
import asyncio
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from cache import CacheManager
from scheduler import CacheCleanupScheduler


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        CacheCleanupScheduler(CacheManager(), interval=0)


@pytest.mark.asyncio
async def test_scheduler_sweeps_expired_entries():
    cache = CacheManager()
    cache.set("short", 1, ttl=0.01)
    cache.set("long", 2, ttl=60)
    scheduler = CacheCleanupScheduler(cache, interval=0.05)
    scheduler.start()
    assert scheduler.is_running
    await asyncio.sleep(0.2)
    await scheduler.stop()
    assert not scheduler.is_running
    assert scheduler.runs >= 1
    assert cache.get_stats()["keys"] == ["long"]


@pytest.mark.asyncio
async def test_start_twice_keeps_one_task():
    scheduler = CacheCleanupScheduler(CacheManager(), interval=10)
    scheduler.start()
    task = scheduler._task
    scheduler.start()
    assert scheduler._task is task
    await scheduler.stop()
    assert task.cancelled()
    await scheduler.stop()


@pytest.mark.asyncio
async def test_failed_sweep_keeps_running():
    class BrokenCache(CacheManager):
        def __init__(self):
            super().__init__()
            self.calls = 0

        def cleanup(self):
            self.calls += 1
            raise RuntimeError("sweep failed")

    cache = BrokenCache()
    scheduler = CacheCleanupScheduler(cache, interval=0.02)
    scheduler.start()
    await asyncio.sleep(0.15)
    assert scheduler.is_running
    await scheduler.stop()
    assert cache.calls >= 2
    assert scheduler.runs == 0
