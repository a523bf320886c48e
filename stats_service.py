from __future__ import annotations
from typing import Dict, List

from db import TrainingDayRepository
from tools import TrainingDate


class StatisticsService:
    """Compute training consistency statistics."""

    def __init__(self, training_repo: TrainingDayRepository) -> None:
        self.training_days = training_repo

    def overview(self, today: TrainingDate | str | None = None) -> Dict[str, object]:
        """Return completion and reschedule totals with weekday counts.

        ``currentStreak`` is included when ``today`` is given.
        """
        stats: Dict[str, object] = {
            "totalCompleted": self.training_days.count_completed(),
            "totalRescheduled": self.training_days.count_rescheduled(),
            "weeklyConsistency": self.weekly_consistency(),
            "completionRate": self.completion_rate(),
        }
        if today is not None:
            stats["currentStreak"] = self.current_streak(today)
        return stats

    def weekly_consistency(self) -> List[Dict[str, object]]:
        return [
            {"day_of_week": day, "count": int(count)}
            for day, count in self.training_days.weekly_consistency()
        ]

    def completion_rate(
        self, start_date: str | None = None, end_date: str | None = None
    ) -> float:
        """Fraction of recorded days in range that were completed."""
        records = self.training_days.list_all(start_date, end_date)
        if not records:
            return 0.0
        done = sum(1 for r in records if r.completed)
        return round(done / len(records), 4)

    def current_streak(self, today: TrainingDate | str) -> int:
        """Count consecutive completed days ending today or yesterday.

        An incomplete record for today does not break the streak, since the
        day is not over yet.
        """
        today = TrainingDate.coerce(today)
        completed = {r.date for r in self.training_days.list_all() if r.completed}
        day = today if today in completed else today.add_days(-1)
        streak = 0
        while day in completed:
            streak += 1
            day = day.add_days(-1)
        return streak
