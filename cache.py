"""In-process cache with TTL expiry and dependency-based invalidation.

Entries expire lazily: a read that finds a stale entry removes it and reports
a miss, and :meth:`CacheManager.cleanup` sweeps whatever nobody re-reads.
All mutations are synchronous; only the fetch function handed to
:meth:`CacheManager.get_or_fetch` may suspend.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL = 5 * 60.0

_MISSING = object()


@dataclass
class CacheEntry:
    value: Any
    timestamp: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


class CacheManager:
    """Key/value store with per-entry TTL and a parent -> children dependency map."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        *,
        dedupe_fetches: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self.dedupe_fetches = dedupe_fetches
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._dependencies: Dict[str, Set[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # tasks holding or waiting on each dedupe lock
        self._lock_users: Dict[str, int] = {}
        self._hits = 0
        self._misses = 0

    def _lookup(self, key: str) -> Any:
        entry = self._cache.get(key)
        if entry is None:
            return _MISSING
        if entry.is_expired(self._clock()):
            del self._cache[key]
            return _MISSING
        return entry.value

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or ``default`` when absent or expired."""
        value = self._lookup(key)
        if value is _MISSING:
            return default
        return value

    def contains(self, key: str) -> bool:
        return self._lookup(key) is not _MISSING

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._cache[key] = CacheEntry(
            value=value,
            timestamp=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl: Optional[float] = None,
    ) -> T:
        """Return a fresh cached value or run ``fetch_fn`` and cache its result.

        A failing fetch propagates and leaves the key absent. Without
        ``dedupe_fetches`` concurrent misses on one key each run the fetch.
        """
        value = self._lookup(key)
        if value is not _MISSING:
            self._hits += 1
            logger.debug("Cache hit: %s", key)
            return value
        if not self.dedupe_fetches:
            return await self._fetch_and_store(key, fetch_fn, ttl)

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                value = self._lookup(key)
                if value is not _MISSING:
                    self._hits += 1
                    logger.debug("Cache hit after wait: %s", key)
                    return value
                return await self._fetch_and_store(key, fetch_fn, ttl)
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                self._locks.pop(key, None)

    async def _fetch_and_store(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl: Optional[float],
    ) -> T:
        self._misses += 1
        logger.debug("Cache miss: %s", key)
        data = await fetch_fn()
        self.set(key, data, ttl)
        return data

    def add_dependency(self, parent_key: str, *child_keys: str) -> None:
        """Invalidating ``parent_key`` will also invalidate each child key."""
        deps = self._dependencies.setdefault(parent_key, set())
        deps.update(child_keys)

    def dependents(self, parent_key: str) -> Set[str]:
        return set(self._dependencies.get(parent_key, ()))

    def invalidate(self, key: str) -> None:
        """Remove ``key`` and every key reachable from it through dependencies."""
        pending = [key]
        seen: Set[str] = set()
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            self._cache.pop(current, None)
            pending.extend(self._dependencies.get(current, ()))
        logger.debug("Invalidated %s (%d keys)", key, len(seen))

    def invalidate_pattern(self, pattern: str) -> int:
        """Invalidate every stored key matched by the regular expression ``pattern``."""
        regex = re.compile(pattern)
        matched = [key for key in list(self._cache) if regex.search(key)]
        for key in matched:
            self.invalidate(key)
        logger.debug("Invalidated pattern %r (%d keys)", pattern, len(matched))
        return len(matched)

    def clear(self) -> None:
        self._cache.clear()
        self._dependencies.clear()
        logger.info("Cache cleared")

    def cleanup(self) -> int:
        """Remove entries whose TTL has elapsed; returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._cache.items() if entry.is_expired(now)]
        for key in expired:
            del self._cache[key]
        if expired:
            logger.debug("Cache cleanup removed %d entries", len(expired))
        return len(expired)

    def get_stats(self) -> dict:
        return {
            "size": len(self._cache),
            "keys": list(self._cache.keys()),
            "dependencies": len(self._dependencies),
            "hits": self._hits,
            "misses": self._misses,
        }


def namespace_pattern(namespace: str) -> str:
    """Pattern matching every key in ``namespace`` and nothing else."""
    return f"^{re.escape(namespace)}:"


def stable_key(value: Any) -> str:
    """Serialize filter parameters so equal filters give equal keys."""
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json", exclude_none=True)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


class CacheKeys:
    """Key builders shared by the services and the invalidation policy."""

    EXERCISES = "exercises"
    TAGS = "tags"
    SESSIONS = "sessions"
    CALENDAR = "calendar"
    SETS = "sets"

    @staticmethod
    def all_exercises(filter_data: Any = None) -> str:
        if not filter_data:
            return "exercises:all"
        serialized = stable_key(filter_data)
        if serialized in ("{}", "null"):
            return "exercises:all"
        return f"exercises:all:{serialized}"

    @staticmethod
    def exercise_by_id(exercise_id: int) -> str:
        return f"exercises:{exercise_id}"

    @staticmethod
    def exercises_by_tag(tag_id: int) -> str:
        return f"exercises:tag:{tag_id}"

    @staticmethod
    def recent_exercises() -> str:
        return "exercises:recent"

    @staticmethod
    def all_tags() -> str:
        return "tags:all"

    @staticmethod
    def tag_by_id(tag_id: int) -> str:
        return f"tags:{tag_id}"

    @staticmethod
    def session_by_id(session_id: int) -> str:
        return f"sessions:{session_id}"

    @staticmethod
    def session_stats(session_id: int) -> str:
        return f"sessions:{session_id}:stats"

    @staticmethod
    def sessions_by_date(date: str) -> str:
        return f"sessions:date:{date}"

    @staticmethod
    def sessions_by_date_range(start: str, end: str) -> str:
        return f"sessions:range:{start}:{end}"

    @staticmethod
    def calendar_markers(year: int, month: int) -> str:
        return f"calendar:{year}:{month}"

    @staticmethod
    def sets_by_session(session_id: int) -> str:
        return f"sets:session:{session_id}"

    @staticmethod
    def sets_by_exercise(exercise_id: int) -> str:
        return f"sets:exercise:{exercise_id}"

    @staticmethod
    def profile() -> str:
        return "profile"
