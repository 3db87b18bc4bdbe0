from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from cache import CacheKeys, CacheManager
from db import (
    Database,
    ExerciseRepository,
    RecentExerciseRepository,
    SetRepository,
    TagRepository,
)
from errors import NotFoundError, ValidationError
from invalidation import CacheInvalidation
from models import (
    Exercise,
    ExerciseCreate,
    ExerciseFilter,
    ExerciseUpdate,
    PaginatedResult,
    PaginationParams,
    RecentExercise,
    SetInput,
    SetUpdate,
    Tag,
    TagCreate,
    TagUpdate,
    WorkoutSet,
    changes_of,
    parse_input,
)
from transactions import TransactionalWriter

logger = logging.getLogger(__name__)


class ExerciseService:
    """Exercise, tag and set operations with read-through caching."""

    def __init__(
        self,
        db: Database,
        cache: CacheManager,
        invalidation: CacheInvalidation | None = None,
        writer: TransactionalWriter | None = None,
        exercise_repo: ExerciseRepository | None = None,
        tag_repo: TagRepository | None = None,
        set_repo: SetRepository | None = None,
        recent_repo: RecentExerciseRepository | None = None,
    ) -> None:
        self.db = db
        self.cache = cache
        self.invalidation = invalidation or CacheInvalidation(cache)
        self.writer = writer or TransactionalWriter(db, cache)
        self.exercises = exercise_repo or ExerciseRepository(db)
        self.tags = tag_repo or TagRepository(db)
        self.sets = set_repo or SetRepository(db)
        self.recent = recent_repo or RecentExerciseRepository(db)

    # exercises

    @staticmethod
    def _parse_filter(filter_data: Any) -> Optional[ExerciseFilter]:
        if filter_data is None:
            return None
        parsed = parse_input(ExerciseFilter, filter_data)
        return None if parsed.is_empty() else parsed

    async def get_all_exercises(self, filter_data: Any = None) -> List[Exercise]:
        parsed = self._parse_filter(filter_data)
        exercises = await self.cache.get_or_fetch(
            CacheKeys.all_exercises(parsed),
            lambda: self.exercises.fetch_all_exercises(parsed),
        )
        # callers get their own list; the cached one stays intact
        return list(exercises)

    async def get_paginated_exercises(
        self, pagination: Any = None, filter_data: Any = None
    ) -> PaginatedResult[Exercise]:
        params = parse_input(PaginationParams, pagination or {})
        parsed = self._parse_filter(filter_data)
        total = await self.exercises.count(parsed)
        exercises = await self.get_all_exercises(parsed)
        page = exercises[params.offset : params.offset + params.page_size]
        return PaginatedResult[Exercise].build(page, params, total)

    async def get_exercise_by_id(self, exercise_id: int) -> Exercise:
        async def fetch() -> Exercise:
            exercise = await self.exercises.fetch_detail(exercise_id)
            if exercise is None:
                raise NotFoundError("Exercise", exercise_id)
            return exercise

        return await self.cache.get_or_fetch(CacheKeys.exercise_by_id(exercise_id), fetch)

    async def get_exercises_by_tag(self, tag_id: int) -> List[Exercise]:
        exercises = await self.cache.get_or_fetch(
            CacheKeys.exercises_by_tag(tag_id),
            lambda: self.exercises.fetch_all_exercises(ExerciseFilter(tag_ids=[tag_id])),
        )
        return list(exercises)

    async def get_recent_exercises(self, limit: int = 10) -> List[RecentExercise]:
        if limit < 1:
            raise ValidationError("limit must be at least 1", "limit", limit)
        recent = await self.cache.get_or_fetch(
            CacheKeys.recent_exercises(), self.recent.fetch_recent
        )
        return recent[:limit]

    async def create_exercise(self, data: Any) -> int:
        payload = parse_input(ExerciseCreate, data)

        async def unit() -> int:
            exercise_id = await self.exercises.add(
                payload.name,
                payload.notes,
                payload.default_weight,
                payload.default_reps,
                payload.unit,
            )
            if payload.tag_ids:
                await self.exercises.set_tags(exercise_id, payload.tag_ids)
            return exercise_id

        exercise_id = await self.writer.write(unit, self.invalidation.on_exercise_change)
        logger.info("Created exercise %s (%s)", exercise_id, payload.name)
        return exercise_id

    async def update_exercise(self, exercise_id: int, changes: Any) -> None:
        """Apply field changes and, when ``tag_ids`` is given, replace the tag set."""
        payload = parse_input(ExerciseUpdate, changes)
        fields = changes_of(payload, "name", "unit", "is_favorite")
        tag_ids = fields.pop("tag_ids", None)
        if "is_favorite" in fields:
            fields["is_favorite"] = int(fields["is_favorite"])

        async def unit() -> None:
            if not await self.exercises.exists(exercise_id):
                raise NotFoundError("Exercise", exercise_id)
            await self.exercises.update(exercise_id, fields)
            if tag_ids is not None:
                await self.exercises.set_tags(exercise_id, tag_ids)

        await self.writer.write(
            unit, lambda _: self.invalidation.on_exercise_change(exercise_id)
        )

    async def delete_exercise(self, exercise_id: int) -> None:
        async def unit() -> None:
            if not await self.exercises.remove(exercise_id):
                raise NotFoundError("Exercise", exercise_id)

        await self.writer.write(
            unit, lambda _: self.invalidation.on_exercise_change(exercise_id)
        )
        logger.info("Deleted exercise %s", exercise_id)

    async def toggle_favorite(self, exercise_id: int) -> None:
        async def unit() -> None:
            if not await self.exercises.toggle_favorite(exercise_id):
                raise NotFoundError("Exercise", exercise_id)

        await self.writer.write(
            unit, lambda _: self.invalidation.on_exercise_change(exercise_id)
        )

    # tags

    async def get_all_tags(self) -> List[Tag]:
        tags = await self.cache.get_or_fetch(CacheKeys.all_tags(), self.tags.fetch_all_tags)
        return list(tags)

    async def get_tag_by_id(self, tag_id: int) -> Tag:
        async def fetch() -> Tag:
            tag = await self.tags.fetch_detail(tag_id)
            if tag is None:
                raise NotFoundError("Tag", tag_id)
            return tag

        return await self.cache.get_or_fetch(CacheKeys.tag_by_id(tag_id), fetch)

    async def create_tag(self, data: Any) -> int:
        payload = parse_input(TagCreate, data)
        tag_id = await self.writer.write(
            lambda: self.tags.add(payload.name, payload.color),
            self.invalidation.on_tag_change,
        )
        logger.info("Created tag %s (%s)", tag_id, payload.name)
        return tag_id

    async def update_tag(self, tag_id: int, changes: Any) -> None:
        payload = parse_input(TagUpdate, changes)
        fields = changes_of(payload, "name", "color")

        async def unit() -> None:
            if await self.tags.fetch_detail(tag_id) is None:
                raise NotFoundError("Tag", tag_id)
            await self.tags.update(tag_id, fields)

        await self.writer.write(unit, lambda _: self.invalidation.on_tag_change(tag_id))

    async def delete_tag(self, tag_id: int) -> None:
        async def unit() -> None:
            if not await self.tags.remove(tag_id):
                raise NotFoundError("Tag", tag_id)

        await self.writer.write(unit, lambda _: self.invalidation.on_tag_change(tag_id))

    # sets

    async def add_set(self, session_id: int, data: Any) -> int:
        """Append a set to ``session_id``; its order is one past the session's highest."""
        payload = parse_input(SetInput, data)
        return await self.writer.write(
            lambda: self.sets.add(session_id, **payload.model_dump()),
            lambda _: self.invalidation.on_set_change(session_id, payload.exercise_id),
        )

    async def add_sets(self, session_id: int, items: Iterable[Any]) -> List[int]:
        payloads = [parse_input(SetInput, item) for item in items]
        if not payloads:
            return []

        async def unit() -> List[int]:
            return [await self.sets.add(session_id, **p.model_dump()) for p in payloads]

        def on_commit(_ids: List[int]) -> None:
            for exercise_id in dict.fromkeys(p.exercise_id for p in payloads):
                self.invalidation.on_set_change(session_id, exercise_id)

        return await self.writer.write(unit, on_commit)

    async def get_session_sets(self, session_id: int) -> List[WorkoutSet]:
        key = CacheKeys.sets_by_session(session_id)

        async def fetch() -> List[WorkoutSet]:
            sets = await self.sets.fetch_for_session(session_id)
            # set rows embed the exercise name
            for exercise_id in {s.exercise_id for s in sets}:
                self.cache.add_dependency(CacheKeys.exercise_by_id(exercise_id), key)
            return sets

        return list(await self.cache.get_or_fetch(key, fetch))

    async def get_exercise_sets(
        self, exercise_id: int, limit: Optional[int] = None
    ) -> List[WorkoutSet]:
        """Most recent sets of an exercise, newest first."""
        if limit is not None and limit < 1:
            raise ValidationError("limit must be at least 1", "limit", limit)
        sets = await self.cache.get_or_fetch(
            CacheKeys.sets_by_exercise(exercise_id),
            lambda: self.sets.fetch_for_exercise(exercise_id),
        )
        return list(sets) if limit is None else sets[:limit]

    async def update_set(self, set_id: int, changes: Any) -> None:
        payload = parse_input(SetUpdate, changes)
        fields = changes_of(payload, "weight", "reps", "is_warmup", "is_failure")

        async def unit() -> WorkoutSet:
            existing = await self.sets.fetch_detail(set_id)
            if existing is None:
                raise NotFoundError("Set", set_id)
            await self.sets.update(set_id, fields)
            return existing

        await self.writer.write(
            unit,
            lambda existing: self.invalidation.on_set_change(
                existing.session_id, existing.exercise_id
            ),
        )

    async def delete_set(self, set_id: int) -> None:
        async def unit() -> WorkoutSet:
            existing = await self.sets.fetch_detail(set_id)
            if existing is None:
                raise NotFoundError("Set", set_id)
            await self.sets.remove(set_id)
            return existing

        await self.writer.write(
            unit,
            lambda existing: self.invalidation.on_set_change(
                existing.session_id, existing.exercise_id
            ),
        )
