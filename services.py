"""Composition root: one database, one cache and the services sharing them."""

import logging
from dataclasses import dataclass
from typing import Optional

from backup_service import BackupService
from cache import CacheManager
from db import Database
from exercise_service import ExerciseService
from invalidation import CacheInvalidation
from profile_service import ProfileService
from scheduler import CacheCleanupScheduler
from settings_schema import TrackerSettings
from transactions import TransactionalWriter
from workout_service import WorkoutService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: TrackerSettings
    db: Database
    cache: CacheManager
    invalidation: CacheInvalidation
    exercises: ExerciseService
    workouts: WorkoutService
    profile: ProfileService
    backups: BackupService
    scheduler: CacheCleanupScheduler

    async def start(self) -> "Services":
        await self.db.connect()
        self.scheduler.start()
        return self

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.db.close()

    async def reset(self) -> None:
        """Recreate an empty database and drop every cached read."""
        await self.db.reset()
        self.invalidation.on_full_reset()
        logger.info("Tracker data reset")

    async def __aenter__(self) -> "Services":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def build_services(settings: Optional[TrackerSettings] = None) -> Services:
    """Wire the services without touching the database file."""
    settings = settings or TrackerSettings()
    db = Database(settings.db_path, seed_defaults=settings.seed_defaults)
    cache = CacheManager(settings.cache_ttl_seconds, dedupe_fetches=settings.dedupe_fetches)
    invalidation = CacheInvalidation(cache)
    writer = TransactionalWriter(db, cache)
    return Services(
        settings=settings,
        db=db,
        cache=cache,
        invalidation=invalidation,
        exercises=ExerciseService(db, cache, invalidation, writer),
        workouts=WorkoutService(db, cache, invalidation, writer),
        profile=ProfileService(db, cache, invalidation, writer),
        backups=BackupService(db, cache, settings.backup_dir, invalidation=invalidation),
        scheduler=CacheCleanupScheduler(cache, settings.cleanup_interval_seconds),
    )


async def create_services(settings: Optional[TrackerSettings] = None) -> Services:
    """Build the services and connect the database; the scheduler is not started."""
    services = build_services(settings)
    await services.db.connect()
    logger.info("Services ready (db=%s)", services.settings.db_path)
    return services
