from __future__ import annotations

from typing import Any

from cache import CacheKeys, CacheManager
from db import Database, ProfileRepository
from errors import NotFoundError
from invalidation import CacheInvalidation
from models import Profile, ProfileUpdate, changes_of, parse_input
from transactions import TransactionalWriter


class ProfileService:
    """Access to the single user profile row."""

    def __init__(
        self,
        db: Database,
        cache: CacheManager,
        invalidation: CacheInvalidation | None = None,
        writer: TransactionalWriter | None = None,
        profile_repo: ProfileRepository | None = None,
    ) -> None:
        self.cache = cache
        self.invalidation = invalidation or CacheInvalidation(cache)
        self.writer = writer or TransactionalWriter(db, cache)
        self.profiles = profile_repo or ProfileRepository(db)

    async def get_profile(self) -> Profile:
        async def fetch() -> Profile:
            profile = await self.profiles.fetch()
            if profile is None:
                raise NotFoundError("Profile")
            return profile

        return await self.cache.get_or_fetch(CacheKeys.profile(), fetch)

    async def update_profile(self, changes: Any) -> Profile:
        payload = parse_input(ProfileUpdate, changes)
        fields = changes_of(
            payload,
            "name",
            "weight_unit",
            "week_starts_on",
            "locale",
            "timezone",
            "default_rest_timer",
            "auto_backup_enabled",
        )

        async def unit() -> None:
            profile = await self.profiles.fetch()
            if profile is None:
                raise NotFoundError("Profile")
            await self.profiles.update(profile.id, fields)

        await self.writer.write(unit, lambda _: self.invalidation.on_profile_change())
        return await self.get_profile()
