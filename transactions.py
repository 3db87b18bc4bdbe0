"""Atomic writes followed by cache invalidation."""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from cache import CacheManager
from db import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionalWriter:
    """Runs a write unit atomically and invalidates only once it has committed.

    ``on_commit`` receives the unit's result. It is never called when the
    unit raises: the rollback leaves storage as it was, so the cached reads
    are still correct.

    If ``on_commit`` itself fails the data is already committed, so the
    whole cache is cleared before the error is re-raised. Reads after that
    go to storage.
    """

    def __init__(self, db: Database, cache: Optional[CacheManager] = None) -> None:
        self.db = db
        self.cache = cache

    async def write(
        self,
        unit: Callable[[], Awaitable[T]],
        on_commit: Optional[Callable[[T], None]] = None,
    ) -> T:
        result = await self.db.run_atomic(unit)
        if on_commit is None:
            return result
        try:
            on_commit(result)
        except Exception:
            logger.exception("Invalidation failed after commit; clearing cache")
            if self.cache is not None:
                self.cache.clear()
            raise
        return result
