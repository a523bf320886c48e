from __future__ import annotations
from contextlib import AbstractContextManager
from typing import List, Optional, Protocol

from loguru import logger

from db import (
    PLAN_LENGTH,
    NotFoundError,
    TrainingDayRecord,
    PlanWorkoutRepository,
    DietRepository,
    RescheduleHistoryRepository,
)
from tools import TrainingDate


class TrainingLogStore(Protocol):
    """Operations the rotation engine needs from the training log."""

    def get(self, date: TrainingDate) -> Optional[TrainingDayRecord]: ...

    def get_latest(self) -> Optional[TrainingDayRecord]: ...

    def get_latest_completed(self) -> Optional[TrainingDayRecord]: ...

    def insert(self, record: TrainingDayRecord) -> TrainingDayRecord: ...

    def update(self, date: TrainingDate, /, **fields) -> TrainingDayRecord: ...

    def list_all(self) -> List[TrainingDayRecord]: ...

    def transaction(self) -> AbstractContextManager: ...


class RotationService:
    """Assigns plan days to calendar dates and backfills skipped days.

    The plan cycles through days ``1..PLAN_LENGTH``. Only a *completed* day
    advances the cycle; a day that was assigned but never completed is
    assigned again on the next date.
    """

    def __init__(
        self,
        store: TrainingLogStore,
        history_repo: RescheduleHistoryRepository | None = None,
        plan_repo: PlanWorkoutRepository | None = None,
        diet_repo: DietRepository | None = None,
    ) -> None:
        self.store = store
        self.history = history_repo
        self.plan = plan_repo
        self.diet = diet_repo

    def next_planned_day(self) -> int:
        """Return the plan day that follows the last completed day."""
        last = self.store.get_latest_completed()
        if last is None:
            return 1
        return (last.planned_day % PLAN_LENGTH) + 1

    def _backfill(self, today: TrainingDate) -> List[TrainingDayRecord]:
        latest = self.store.get_latest()
        if latest is None or not latest.date < today:
            return []
        inserted: List[TrainingDayRecord] = []
        for missed in TrainingDate.range_between(latest.date, today):
            if self.store.get(missed) is not None:
                continue
            record = TrainingDayRecord(
                missed, self.next_planned_day(), completed=False, rescheduled=True
            )
            self.store.insert(record)
            if self.history is not None:
                self.history.add(missed, today, record.planned_day)
            logger.info(
                f"Backfilled missed day {missed} with plan day {record.planned_day}"
            )
            inserted.append(record)
        return inserted

    def resolve_today(self, today: TrainingDate | str) -> TrainingDayRecord:
        """Backfill skipped dates and return the record for ``today``.

        Creates today's record on first call for the date; later calls
        return the stored record unchanged.
        """
        today = TrainingDate.coerce(today)
        with self.store.transaction():
            self._backfill(today)
            record = self.store.get(today)
            if record is not None:
                logger.debug(f"Training day {today} already assigned: {record}")
                return record
            record = TrainingDayRecord(
                today, self.next_planned_day(), completed=False, rescheduled=False
            )
            self.store.insert(record)
            logger.info(f"Assigned plan day {record.planned_day} to {today}")
            return record

    def mark_today_completed(self, today: TrainingDate | str) -> TrainingDayRecord:
        """Mark the record for ``today`` as completed.

        Raises ``NotFoundError`` if ``resolve_today`` has not created it yet.
        """
        today = TrainingDate.coerce(today)
        with self.store.transaction():
            record = self.store.get(today)
            if record is None:
                logger.warning(f"Completion requested for unassigned day {today}")
                raise NotFoundError(f"no training day for {today}")
            if record.completed:
                return record
            updated = self.store.update(today, completed=True)
        logger.info(f"Completed plan day {updated.planned_day} on {today}")
        return updated

    def status(self, today: TrainingDate | str) -> dict:
        """Return today's record with its exercises and the diet plan."""
        record = self.resolve_today(today)
        workouts = self.plan.fetch_for_day(record.planned_day) if self.plan else []
        diet = self.diet.fetch_all_meals() if self.diet else []
        return {"status": record.to_dict(), "workouts": workouts, "diet": diet}
