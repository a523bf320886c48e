from typing import Callable, Optional
from fastapi import FastAPI, HTTPException, APIRouter, Body, Request
from fastapi.responses import JSONResponse
from loguru import logger

from config import APP_VERSION, DEFAULT_DB_PATH
from db import (
    NotFoundError,
    StorageUnavailableError,
    TrainingDayRepository,
    AsyncTrainingDayRepository,
    PlanWorkoutRepository,
    DietRepository,
    RescheduleHistoryRepository,
    SettingsRepository,
)
from rotation_service import RotationService
from stats_service import StatisticsService
from tools import TrainingDate


class TrackerAPI:
    """Provides REST endpoints for the workout rotation tracker."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        yaml_path: str = "settings.yaml",
        *,
        today_provider: Optional[Callable[[], TrainingDate]] = None,
    ) -> None:
        self.db_path = db_path
        self.settings = SettingsRepository(db_path, yaml_path)
        self.training_days = TrainingDayRepository(db_path)
        self.async_training_days = AsyncTrainingDayRepository(db_path)
        self.plan_workouts = PlanWorkoutRepository(db_path)
        self.diets = DietRepository(db_path)
        self.reschedule_history = RescheduleHistoryRepository(db_path)
        self.rotation = RotationService(
            self.training_days,
            history_repo=self.reschedule_history,
            plan_repo=self.plan_workouts,
            diet_repo=self.diets,
        )
        self.statistics = StatisticsService(self.training_days)
        self._today_provider = today_provider
        self.app = FastAPI(
            title="Workout Rotation API",
            description="REST API for the five-day workout rotation and diet plan",
            version=APP_VERSION,
        )
        self.app.add_exception_handler(
            StorageUnavailableError, self._storage_unavailable
        )
        self._setup_routes()

    def today(self) -> TrainingDate:
        """Return the current date in the configured timezone."""
        if self._today_provider is not None:
            return self._today_provider()
        return TrainingDate.today(self.settings.get_text("timezone", "UTC"))

    @staticmethod
    async def _storage_unavailable(
        request: Request, exc: StorageUnavailableError
    ) -> JSONResponse:
        logger.error(f"Storage unavailable during {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    def _setup_routes(self) -> None:
        api_router = APIRouter(prefix="/api", tags=["Tracker"])
        settings_router = APIRouter(prefix="/api/settings", tags=["Settings"])

        @self.app.get(
            "/health",
            summary="Health check",
            description="Verify API and database connectivity.",
        )
        def health():
            """Return API and database connection status."""
            self.training_days.get_latest()
            return {"status": "ok"}

        @api_router.get("/status")
        def get_status():
            return self.rotation.status(self.today())

        @api_router.post("/complete")
        def complete_today():
            try:
                self.rotation.mark_today_completed(self.today())
            except NotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return {"success": True}

        @api_router.get("/calendar")
        async def get_calendar(start_date: str = None, end_date: str = None):
            try:
                records = await self.async_training_days.list_all(
                    start_date, end_date
                )
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return [r.to_dict() for r in records]

        @api_router.get("/workouts")
        def list_plan_workouts():
            return {
                str(day): exercises
                for day, exercises in self.plan_workouts.fetch_grouped().items()
            }

        @api_router.post("/workouts")
        def add_plan_workout(
            day_number: int, exercise_name: str, sets: str = "3", reps: str = "10–12"
        ):
            try:
                wid = self.plan_workouts.add(day_number, exercise_name, sets, reps)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return {"id": wid}

        @api_router.get("/diet")
        def list_diet():
            return self.diets.fetch_all_meals()

        @api_router.get("/stats")
        def get_stats():
            return self.statistics.overview(self.today())

        @api_router.get("/reschedule_history")
        def list_reschedule_history():
            return self.reschedule_history.fetch_history()

        @settings_router.get("")
        def get_settings():
            return self.settings.all_settings()

        @settings_router.post("/{key}")
        def update_setting(key: str, value: str = Body(..., embed=True)):
            try:
                self.settings.set_text(key, value)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            return {"status": "updated"}

        self.app.include_router(api_router)
        self.app.include_router(settings_router)


def create_app(db_path: str = DEFAULT_DB_PATH, yaml_path: str = "settings.yaml") -> FastAPI:
    return TrackerAPI(db_path=db_path, yaml_path=yaml_path).app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app())
