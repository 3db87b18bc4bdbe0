import asyncio
import logging
from typing import Optional

from cache import CacheManager

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL = 10 * 60.0


class CacheCleanupScheduler:
    """Background task sweeping expired cache entries every ``interval`` seconds."""

    def __init__(self, cache: CacheManager, interval: float = DEFAULT_CLEANUP_INTERVAL) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.cache = cache
        self.interval = interval
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start sweeping on the running event loop; a second call is a no-op."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Cache cleanup scheduled every %.0f seconds", self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Cache cleanup stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                removed = self.cache.cleanup()
            except Exception:
                logger.exception("Cache cleanup failed")
                continue
            self.runs += 1
            if removed:
                logger.debug("Cache cleanup removed %d expired entries", removed)
