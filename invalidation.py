"""Which cached reads become stale after each kind of write.

Exercise and tag writes invalidate whole namespaces because filtered lists
and embedded tag arrays cannot be enumerated exactly. Set and session writes
are narrower since their reads are keyed by ids the writer already knows.
"""

import logging
from typing import Optional

from cache import CacheKeys, CacheManager, namespace_pattern

logger = logging.getLogger(__name__)


class CacheInvalidation:
    """Invalidation policy bound to one cache instance."""

    def __init__(self, cache: CacheManager) -> None:
        self.cache = cache

    def on_exercise_change(self, exercise_id: Optional[int] = None) -> None:
        logger.debug("Exercise change: %s", exercise_id)
        self.cache.invalidate_pattern(namespace_pattern(CacheKeys.EXERCISES))
        if exercise_id is not None:
            self.cache.invalidate(CacheKeys.exercise_by_id(exercise_id))
            self.cache.invalidate(CacheKeys.sets_by_exercise(exercise_id))

    def on_tag_change(self, tag_id: Optional[int] = None) -> None:
        logger.debug("Tag change: %s", tag_id)
        self.cache.invalidate_pattern(namespace_pattern(CacheKeys.TAGS))
        # exercise reads embed their tags
        self.cache.invalidate_pattern(namespace_pattern(CacheKeys.EXERCISES))
        if tag_id is not None:
            self.cache.invalidate(CacheKeys.tag_by_id(tag_id))
            self.cache.invalidate(CacheKeys.exercises_by_tag(tag_id))

    def on_session_change(
        self, session_id: Optional[int] = None, date: Optional[str] = None
    ) -> None:
        logger.debug("Session change: %s (%s)", session_id, date)
        self.cache.invalidate_pattern(namespace_pattern(CacheKeys.SESSIONS))
        self.cache.invalidate_pattern(namespace_pattern(CacheKeys.CALENDAR))
        if session_id is not None:
            self.cache.invalidate(CacheKeys.session_by_id(session_id))
            self.cache.invalidate(CacheKeys.sets_by_session(session_id))
        if date:
            self.cache.invalidate(CacheKeys.sessions_by_date(date))

    def on_set_change(self, session_id: int, exercise_id: int) -> None:
        logger.debug("Set change: session %s exercise %s", session_id, exercise_id)
        self.cache.invalidate(CacheKeys.sets_by_session(session_id))
        self.cache.invalidate(CacheKeys.sets_by_exercise(exercise_id))
        self.cache.invalidate(CacheKeys.recent_exercises())
        # session reads embed set aggregates
        self.cache.invalidate(CacheKeys.session_by_id(session_id))

    def on_profile_change(self) -> None:
        self.cache.invalidate(CacheKeys.profile())

    def on_full_reset(self) -> None:
        self.cache.clear()
