from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

from cache import CacheKeys, CacheManager
from db import Database, SessionRepository
from errors import NotFoundError, ValidationError
from invalidation import CacheInvalidation
from models import (
    DayFrequency,
    PaginatedResult,
    PaginationParams,
    SessionUpdate,
    SessionWithStats,
    WorkoutSession,
    WorkoutStats,
    changes_of,
    parse_input,
    validate_date,
)
from transactions import TransactionalWriter

logger = logging.getLogger(__name__)

TIMES_OF_DAY = ("morning", "afternoon", "evening")


def _validate_range(start_date: str, end_date: str) -> None:
    validate_date(start_date, "start_date")
    validate_date(end_date, "end_date")
    if start_date > end_date:
        raise ValidationError("start_date must not be after end_date", "start_date", start_date)


class WorkoutService:
    """Session lifecycle, calendar data and workout statistics."""

    def __init__(
        self,
        db: Database,
        cache: CacheManager,
        invalidation: CacheInvalidation | None = None,
        writer: TransactionalWriter | None = None,
        session_repo: SessionRepository | None = None,
    ) -> None:
        self.db = db
        self.cache = cache
        self.invalidation = invalidation or CacheInvalidation(cache)
        self.writer = writer or TransactionalWriter(db, cache)
        self.sessions = session_repo or SessionRepository(db)

    def _depend_on_exercises(self, sessions: List[SessionWithStats], key: str) -> None:
        # aggregates embed exercise names
        for exercise_id in {eid for s in sessions for eid in s.exercise_ids}:
            self.cache.add_dependency(CacheKeys.exercise_by_id(exercise_id), key)

    async def get_or_create_session(self, date: str, time_of_day: Optional[str] = None) -> int:
        """Return the id of the session at (date, time of day), creating it once.

        SQLite treats NULL time-of-day values as distinct under UNIQUE, so the
        lookup and the insert share one unit.
        """
        validate_date(date)
        if time_of_day is not None and time_of_day not in TIMES_OF_DAY:
            raise ValidationError(
                "time_of_day must be one of morning, afternoon, evening",
                "time_of_day",
                time_of_day,
            )

        async def unit() -> Tuple[int, bool]:
            existing = await self.sessions.find_by_natural_key(date, time_of_day)
            if existing is not None:
                return existing, False
            return await self.sessions.create(date, time_of_day), True

        def on_commit(result: Tuple[int, bool]) -> None:
            session_id, created = result
            if created:
                logger.info("Created session %s on %s", session_id, date)
                self.invalidation.on_session_change(session_id, date)

        session_id, _created = await self.writer.write(unit, on_commit)
        return session_id

    async def get_session_by_id(self, session_id: int) -> WorkoutSession:
        async def fetch() -> WorkoutSession:
            session = await self.sessions.fetch_detail(session_id)
            if session is None:
                raise NotFoundError("Workout session", session_id)
            return session

        return await self.cache.get_or_fetch(CacheKeys.session_by_id(session_id), fetch)

    async def get_session_with_stats(self, session_id: int) -> SessionWithStats:
        key = CacheKeys.session_stats(session_id)

        async def fetch() -> SessionWithStats:
            session = await self.sessions.fetch_with_stats(session_id)
            if session is None:
                raise NotFoundError("Workout session", session_id)
            self.cache.add_dependency(CacheKeys.session_by_id(session_id), key)
            self._depend_on_exercises([session], key)
            return session

        return await self.cache.get_or_fetch(key, fetch)

    async def get_sessions_by_date(self, date: str) -> List[WorkoutSession]:
        validate_date(date)
        sessions = await self.cache.get_or_fetch(
            CacheKeys.sessions_by_date(date),
            lambda: self.sessions.fetch_by_date(date),
        )
        # callers get their own list; the cached one stays intact
        return list(sessions)

    async def get_sessions_for_date_range(
        self, start_date: str, end_date: str
    ) -> List[SessionWithStats]:
        """Sessions between two dates (inclusive) with their set aggregates, newest first."""
        _validate_range(start_date, end_date)
        key = CacheKeys.sessions_by_date_range(start_date, end_date)

        async def fetch() -> List[SessionWithStats]:
            sessions = await self.sessions.fetch_range_with_stats(start_date, end_date)
            # a set change on a listed session invalidates sessions:{id} only
            for session in sessions:
                self.cache.add_dependency(CacheKeys.session_by_id(session.id), key)
            self._depend_on_exercises(sessions, key)
            return sessions

        return list(await self.cache.get_or_fetch(key, fetch))

    async def get_paginated_sessions(self, pagination: Any = None) -> PaginatedResult[SessionWithStats]:
        params = parse_input(PaginationParams, pagination or {})
        total = await self.sessions.count()
        items = await self.sessions.fetch_page_with_stats(params.page_size, params.offset)
        return PaginatedResult[SessionWithStats].build(items, params, total)

    async def get_calendar_markers(self, year: int, month: int) -> List[str]:
        """Distinct dates in the month that have at least one session."""
        if not 1900 <= year <= 2100:
            raise ValidationError("Invalid year", "year", year)
        if not 1 <= month <= 12:
            raise ValidationError("Invalid month. Must be 1-12", "month", month)
        dates = await self.cache.get_or_fetch(
            CacheKeys.calendar_markers(year, month),
            lambda: self.sessions.workout_dates(year, month),
        )
        return list(dates)

    async def update_session(self, session_id: int, changes: Any) -> None:
        payload = parse_input(SessionUpdate, changes)
        fields = changes_of(payload, "date")

        async def unit() -> WorkoutSession:
            existing = await self.sessions.fetch_detail(session_id)
            if existing is None:
                raise NotFoundError("Workout session", session_id)
            await self.sessions.update(session_id, fields)
            return existing

        def on_commit(existing: WorkoutSession) -> None:
            self.invalidation.on_session_change(session_id, existing.date)
            new_date = fields.get("date")
            if new_date and new_date != existing.date:
                self.invalidation.on_session_change(session_id, new_date)

        await self.writer.write(unit, on_commit)

    async def update_session_duration(self, session_id: int, duration_minutes: int) -> None:
        if duration_minutes is None or duration_minutes < 0:
            raise ValidationError(
                "Duration cannot be negative", "duration_minutes", duration_minutes
            )

        async def unit() -> None:
            if not await self.sessions.update(session_id, {"duration_minutes": duration_minutes}):
                raise NotFoundError("Workout session", session_id)

        await self.writer.write(
            unit, lambda _: self.invalidation.on_session_change(session_id)
        )

    async def delete_session(self, session_id: int) -> None:
        """Delete a session; its sets go with it through the foreign key cascade."""

        async def unit() -> Tuple[WorkoutSession, List[int]]:
            existing = await self.sessions.fetch_detail(session_id)
            if existing is None:
                raise NotFoundError("Workout session", session_id)
            exercise_ids = await self.sessions.exercise_ids(session_id)
            await self.sessions.remove(session_id)
            return existing, exercise_ids

        def on_commit(result: Tuple[WorkoutSession, List[int]]) -> None:
            existing, exercise_ids = result
            self.invalidation.on_session_change(session_id, existing.date)
            for exercise_id in exercise_ids:
                self.invalidation.on_set_change(session_id, exercise_id)

        await self.writer.write(unit, on_commit)
        logger.info("Deleted session %s", session_id)

    async def get_workout_stats(self, start_date: str, end_date: str) -> WorkoutStats:
        _validate_range(start_date, end_date)
        return await self.sessions.stats(start_date, end_date)

    async def get_workout_frequency(self, start_date: str, end_date: str) -> List[DayFrequency]:
        """Session counts per weekday, 0 being Sunday."""
        _validate_range(start_date, end_date)
        return await self.sessions.frequency(start_date, end_date)

    async def has_workout_on_date(self, date: str) -> bool:
        validate_date(date)
        return await self.sessions.has_workout_on(date)
