import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse

from config import APP_VERSION, load_settings
from errors import AppError
from services import Services, build_services
from settings_schema import TrackerSettings


class TrackerAPI:
    """Provides REST endpoints over the exercise tracker services."""

    def __init__(
        self,
        settings: Optional[TrackerSettings] = None,
        *,
        db_path: Optional[str] = None,
        start_scheduler: bool = True,
    ) -> None:
        settings = settings or TrackerSettings()
        if db_path is not None:
            settings = settings.model_copy(update={"db_path": db_path})
        self.settings = settings
        self.start_scheduler = start_scheduler
        self.services: Services = build_services(settings)
        self.app = FastAPI(
            title="Exercise Tracker API",
            description="REST API for exercises, workout sessions and sets",
            version=APP_VERSION,
            lifespan=self._lifespan,
        )
        self.app.add_exception_handler(AppError, self._handle_app_error)
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.services.db.connect()
        if self.start_scheduler:
            self.services.scheduler.start()
        try:
            yield
        finally:
            await self.services.close()

    @staticmethod
    async def _handle_app_error(request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def _setup_routes(self) -> None:
        exercises = self.services.exercises
        workouts = self.services.workouts
        exercises_router = APIRouter(prefix="/exercises", tags=["Exercises"])
        tags_router = APIRouter(prefix="/tags", tags=["Tags"])
        sessions_router = APIRouter(prefix="/sessions", tags=["Sessions"])
        sets_router = APIRouter(prefix="/sets", tags=["Sets"])
        stats_router = APIRouter(prefix="/stats", tags=["Statistics"])
        admin_router = APIRouter(tags=["Administration"])

        @self.app.get("/health", summary="Health check")
        async def health():
            stats = await self.services.db.get_stats()
            return {"status": "ok", "version": APP_VERSION, "database": stats}

        @exercises_router.get("")
        async def list_exercises(
            search: Optional[str] = None,
            tag_ids: Optional[List[int]] = Query(None),
            favorites_only: bool = False,
            page: Optional[int] = None,
            page_size: int = 50,
        ):
            filter_data = {
                "search_query": search,
                "tag_ids": tag_ids,
                "favorites_only": favorites_only,
            }
            if page is not None:
                return await exercises.get_paginated_exercises(
                    {"page": page, "page_size": page_size}, filter_data
                )
            return await exercises.get_all_exercises(filter_data)

        @exercises_router.get("/recent")
        async def recent_exercises(limit: int = 10):
            return await exercises.get_recent_exercises(limit)

        @exercises_router.post("")
        async def create_exercise(data: Dict[str, Any] = Body(...)):
            exercise_id = await exercises.create_exercise(data)
            return {"id": exercise_id}

        @exercises_router.get("/{exercise_id}")
        async def get_exercise(exercise_id: int):
            return await exercises.get_exercise_by_id(exercise_id)

        @exercises_router.put("/{exercise_id}")
        async def update_exercise(exercise_id: int, data: Dict[str, Any] = Body(...)):
            await exercises.update_exercise(exercise_id, data)
            return await exercises.get_exercise_by_id(exercise_id)

        @exercises_router.delete("/{exercise_id}")
        async def delete_exercise(exercise_id: int):
            await exercises.delete_exercise(exercise_id)
            return {"status": "deleted"}

        @exercises_router.post("/{exercise_id}/favorite")
        async def toggle_favorite(exercise_id: int):
            await exercises.toggle_favorite(exercise_id)
            exercise = await exercises.get_exercise_by_id(exercise_id)
            return {"id": exercise_id, "is_favorite": exercise.is_favorite}

        @exercises_router.get("/{exercise_id}/sets")
        async def exercise_sets(exercise_id: int, limit: Optional[int] = None):
            return await exercises.get_exercise_sets(exercise_id, limit)

        @tags_router.get("")
        async def list_tags():
            return await exercises.get_all_tags()

        @tags_router.post("")
        async def create_tag(data: Dict[str, Any] = Body(...)):
            tag_id = await exercises.create_tag(data)
            return {"id": tag_id}

        @tags_router.get("/{tag_id}")
        async def get_tag(tag_id: int):
            return await exercises.get_tag_by_id(tag_id)

        @tags_router.get("/{tag_id}/exercises")
        async def tag_exercises(tag_id: int):
            return await exercises.get_exercises_by_tag(tag_id)

        @tags_router.put("/{tag_id}")
        async def update_tag(tag_id: int, data: Dict[str, Any] = Body(...)):
            await exercises.update_tag(tag_id, data)
            return await exercises.get_tag_by_id(tag_id)

        @tags_router.delete("/{tag_id}")
        async def delete_tag(tag_id: int):
            await exercises.delete_tag(tag_id)
            return {"status": "deleted"}

        @sessions_router.post("")
        async def create_session(data: Dict[str, Any] = Body(...)):
            session_id = await workouts.get_or_create_session(
                data.get("date"), data.get("time_of_day")
            )
            return {"id": session_id}

        @sessions_router.get("")
        async def list_sessions(page: int = 0, page_size: int = 50):
            return await workouts.get_paginated_sessions({"page": page, "page_size": page_size})

        @sessions_router.get("/range")
        async def sessions_in_range(start: str, end: str):
            return await workouts.get_sessions_for_date_range(start, end)

        @sessions_router.get("/date/{date}")
        async def sessions_on_date(date: str):
            return await workouts.get_sessions_by_date(date)

        @sessions_router.get("/{session_id}")
        async def get_session(session_id: int):
            return await workouts.get_session_with_stats(session_id)

        @sessions_router.put("/{session_id}")
        async def update_session(session_id: int, data: Dict[str, Any] = Body(...)):
            await workouts.update_session(session_id, data)
            return await workouts.get_session_by_id(session_id)

        @sessions_router.put("/{session_id}/duration")
        async def update_duration(session_id: int, minutes: int):
            await workouts.update_session_duration(session_id, minutes)
            return {"status": "updated"}

        @sessions_router.delete("/{session_id}")
        async def delete_session(session_id: int):
            await workouts.delete_session(session_id)
            return {"status": "deleted"}

        @sessions_router.get("/{session_id}/sets")
        async def session_sets(session_id: int):
            return await exercises.get_session_sets(session_id)

        @sessions_router.post("/{session_id}/sets")
        async def add_set(session_id: int, data: Dict[str, Any] = Body(...)):
            set_id = await exercises.add_set(session_id, data)
            return {"id": set_id}

        @sessions_router.post("/{session_id}/sets/bulk")
        async def add_sets(session_id: int, items: List[Dict[str, Any]] = Body(...)):
            ids = await exercises.add_sets(session_id, items)
            return {"ids": ids}

        @sets_router.put("/{set_id}")
        async def update_set(set_id: int, data: Dict[str, Any] = Body(...)):
            await exercises.update_set(set_id, data)
            return {"status": "updated"}

        @sets_router.delete("/{set_id}")
        async def delete_set(set_id: int):
            await exercises.delete_set(set_id)
            return {"status": "deleted"}

        @self.app.get("/calendar/{year}/{month}", tags=["Sessions"])
        async def calendar_markers(year: int, month: int):
            return {"dates": await workouts.get_calendar_markers(year, month)}

        @stats_router.get("/workouts")
        async def workout_stats(start: str, end: str):
            return await workouts.get_workout_stats(start, end)

        @stats_router.get("/frequency")
        async def workout_frequency(start: str, end: str):
            return await workouts.get_workout_frequency(start, end)

        @stats_router.get("/has_workout")
        async def has_workout(date: str):
            return {"date": date, "has_workout": await workouts.has_workout_on_date(date)}

        @self.app.get("/profile", tags=["Profile"])
        async def get_profile():
            return await self.services.profile.get_profile()

        @self.app.put("/profile", tags=["Profile"])
        async def update_profile(data: Dict[str, Any] = Body(...)):
            return await self.services.profile.update_profile(data)

        @admin_router.get("/cache/stats")
        async def cache_stats():
            return self.services.cache.get_stats()

        @admin_router.post("/cache/clear")
        async def clear_cache():
            self.services.invalidation.on_full_reset()
            return {"status": "cleared"}

        @admin_router.post("/database/reset")
        async def reset_database():
            await self.services.reset()
            return {"status": "reset"}

        @admin_router.get("/backups")
        async def list_backups():
            return self.services.backups.list_backups()

        @admin_router.post("/backups")
        async def create_backup():
            return {"path": await self.services.backups.create_backup()}

        @admin_router.post("/backups/restore")
        async def restore_backup(path: str):
            await self.services.backups.restore_backup(path)
            return {"status": "restored"}

        @admin_router.get("/export/sets.csv")
        async def export_sets():
            content = await self.services.backups.export_sets_csv()
            return Response(content=content, media_type="text/csv")

        @admin_router.get("/export/exercises.json")
        async def export_exercises():
            content = await self.services.backups.export_exercises_json()
            return Response(content=content, media_type="application/json")

        self.app.include_router(exercises_router)
        self.app.include_router(tags_router)
        self.app.include_router(sessions_router)
        self.app.include_router(sets_router)
        self.app.include_router(stats_router)
        self.app.include_router(admin_router)


api = TrackerAPI(load_settings(os.environ.get("TRACKER_CONFIG")))
app = api.app

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app)
