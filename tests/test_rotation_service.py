import os
import sys
import threading
from contextlib import contextmanager
from dataclasses import replace

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import (
    NotFoundError,
    TrainingDayRecord,
    TrainingDayRepository,
    RescheduleHistoryRepository,
)
from rotation_service import RotationService
from tools import TrainingDate


def D(text: str) -> TrainingDate:
    return TrainingDate.parse(text)


class InMemoryStore:
    def __init__(self, records=()):
        self.records = {r.date: r for r in records}
        self.transactions = 0

    def get(self, date):
        return self.records.get(date)

    def get_latest(self):
        return self.records[max(self.records)] if self.records else None

    def get_latest_completed(self):
        done = [d for d, r in self.records.items() if r.completed]
        return self.records[max(done)] if done else None

    def insert(self, record):
        if record.date in self.records:
            raise ValueError("duplicate date")
        self.records[record.date] = record
        return record

    def update(self, date, /, **fields):
        if date not in self.records:
            raise NotFoundError(str(date))
        self.records[date] = replace(self.records[date], **fields)
        return self.records[date]

    def list_all(self):
        return [self.records[d] for d in sorted(self.records)]

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield self


def test_next_day_is_one_without_completions():
    assert RotationService(InMemoryStore()).next_planned_day() == 1
    store = InMemoryStore([TrainingDayRecord(D("2024-01-08"), 4)])
    assert RotationService(store).next_planned_day() == 1


@pytest.mark.parametrize("day,expected", [(1, 2), (2, 3), (3, 4), (4, 5), (5, 1)])
def test_next_day_rotates_from_last_completed(day, expected):
    store = InMemoryStore([TrainingDayRecord(D("2024-01-08"), day, completed=True)])
    assert RotationService(store).next_planned_day() == expected


def test_next_day_ignores_later_uncompleted_days():
    store = InMemoryStore(
        [
            TrainingDayRecord(D("2024-01-05"), 2, completed=True),
            TrainingDayRecord(D("2024-01-06"), 3),
            TrainingDayRecord(D("2024-01-07"), 3),
        ]
    )
    assert RotationService(store).next_planned_day() == 3


def test_empty_store_assigns_day_one():
    store = InMemoryStore()
    record = RotationService(store).resolve_today("2024-01-10")
    assert record == TrainingDayRecord(D("2024-01-10"), 1, False, False)
    assert store.list_all() == [record]


def test_resolve_today_is_idempotent():
    store = InMemoryStore([TrainingDayRecord(D("2024-01-08"), 2, completed=True)])
    service = RotationService(store)
    first = service.resolve_today("2024-01-09")
    second = service.resolve_today("2024-01-09")
    assert first == second
    assert len(store.list_all()) == 2


def test_backfills_gap_with_rotation_from_last_completed():
    store = InMemoryStore([TrainingDayRecord(D("2024-01-08"), 2, completed=True)])
    record = RotationService(store).resolve_today("2024-01-11")
    assert store.list_all() == [
        TrainingDayRecord(D("2024-01-08"), 2, True, False),
        TrainingDayRecord(D("2024-01-09"), 3, False, True),
        TrainingDayRecord(D("2024-01-10"), 3, False, True),
        TrainingDayRecord(D("2024-01-11"), 3, False, False),
    ]
    assert record == TrainingDayRecord(D("2024-01-11"), 3, False, False)


def test_backfill_inserts_only_strictly_between_dates():
    store = InMemoryStore([TrainingDayRecord(D("2024-01-07"), 1)])
    RotationService(store).resolve_today("2024-01-10")
    backfilled = [r for r in store.list_all() if r.rescheduled]
    assert [r.date.isoformat() for r in backfilled] == ["2024-01-08", "2024-01-09"]
    assert all(not r.completed and r.planned_day == 1 for r in backfilled)


def test_no_backfill_for_consecutive_days():
    store = InMemoryStore([TrainingDayRecord(D("2024-01-09"), 1, completed=True)])
    RotationService(store).resolve_today("2024-01-10")
    assert not any(r.rescheduled for r in store.list_all())


def test_latest_record_in_future_skips_backfill():
    store = InMemoryStore([TrainingDayRecord(D("2024-01-15"), 2, completed=True)])
    record = RotationService(store).resolve_today("2024-01-10")
    assert record == TrainingDayRecord(D("2024-01-10"), 3, False, False)
    assert len(store.list_all()) == 2


def test_resolve_today_runs_in_a_transaction():
    store = InMemoryStore()
    RotationService(store).resolve_today("2024-01-10")
    assert store.transactions == 1


def test_mark_today_completed():
    store = InMemoryStore()
    service = RotationService(store)
    service.resolve_today("2024-01-10")
    record = service.mark_today_completed("2024-01-10")
    assert record == TrainingDayRecord(D("2024-01-10"), 1, True, False)
    assert service.next_planned_day() == 2


def test_mark_today_completed_keeps_rescheduled_flag():
    store = InMemoryStore([TrainingDayRecord(D("2024-01-10"), 4, rescheduled=True)])
    record = RotationService(store).mark_today_completed(D("2024-01-10"))
    assert record.completed
    assert record.rescheduled
    assert record.planned_day == 4


def test_mark_today_completed_without_record_raises():
    with pytest.raises(NotFoundError):
        RotationService(InMemoryStore()).mark_today_completed("2024-01-10")


def test_status_without_catalogs():
    payload = RotationService(InMemoryStore()).status("2024-01-10")
    assert payload == {
        "status": {
            "date": "2024-01-10",
            "planned_day": 1,
            "completed": False,
            "rescheduled": False,
        },
        "workouts": [],
        "diet": [],
    }


def test_full_week_cycle():
    store = InMemoryStore()
    service = RotationService(store)
    day = D("2024-01-01")
    assigned = []
    for _ in range(7):
        assigned.append(service.resolve_today(day).planned_day)
        service.mark_today_completed(day)
        day = day.add_days(1)
    assert assigned == [1, 2, 3, 4, 5, 1, 2]


class TestSQLiteBackedRotation:
    def _service(self, tmp_path):
        db_file = str(tmp_path / "gym.db")
        store = TrainingDayRepository(db_file)
        history = RescheduleHistoryRepository(db_file)
        return store, history, RotationService(store, history_repo=history)

    def test_scenario_with_gap(self, tmp_path):
        store, history, service = self._service(tmp_path)
        store.insert(TrainingDayRecord(D("2024-01-08"), 2, completed=True))
        record = service.resolve_today("2024-01-11")
        assert record.planned_day == 3
        rows = store.list_all()
        assert [(r.date.isoformat(), r.planned_day, r.rescheduled) for r in rows] == [
            ("2024-01-08", 2, False),
            ("2024-01-09", 3, True),
            ("2024-01-10", 3, True),
            ("2024-01-11", 3, False),
        ]
        entries = history.fetch_history()
        assert [(e["original_date"], e["new_date"], e["workout_day"]) for e in entries] == [
            ("2024-01-10", "2024-01-11", 3),
            ("2024-01-09", "2024-01-11", 3),
        ]

    def test_failure_rolls_back_backfill(self, tmp_path):
        db_file = str(tmp_path / "gym.db")
        store = TrainingDayRepository(db_file)
        store.insert(TrainingDayRecord(D("2024-01-08"), 2, completed=True))

        class FailingHistory:
            def add(self, *args):
                raise RuntimeError("boom")

        service = RotationService(store, history_repo=FailingHistory())
        with pytest.raises(RuntimeError):
            service.resolve_today("2024-01-11")
        assert [r.date.isoformat() for r in store.list_all()] == ["2024-01-08"]

    def test_idempotent_against_sqlite(self, tmp_path):
        store, _history, service = self._service(tmp_path)
        first = service.resolve_today("2024-01-10")
        second = service.resolve_today("2024-01-10")
        assert first == second
        assert len(store.list_all()) == 1

    def test_complete_persists(self, tmp_path):
        store, _history, service = self._service(tmp_path)
        service.resolve_today("2024-01-10")
        service.mark_today_completed("2024-01-10")
        assert store.get("2024-01-10").completed
        assert service.resolve_today("2024-01-11").planned_day == 2

    def test_concurrent_resolve_inserts_each_date_once(self, tmp_path):
        db_file = str(tmp_path / "gym.db")
        TrainingDayRepository(db_file).insert(
            TrainingDayRecord(D("2024-01-01"), 1, completed=True)
        )
        services = [
            RotationService(
                TrainingDayRepository(db_file),
                history_repo=RescheduleHistoryRepository(db_file),
            )
            for _ in range(8)
        ]
        barrier = threading.Barrier(len(services))
        errors = []
        results = []

        def worker(service):
            barrier.wait()
            try:
                results.append(service.resolve_today("2024-01-20"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(s,)) for s in services]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(set(results)) == 1
        rows = TrainingDayRepository(db_file).list_all()
        dates = [r.date for r in rows]
        assert len(dates) == len(set(dates)) == 20
        assert sum(1 for r in rows if r.rescheduled) == 18
        history = RescheduleHistoryRepository(db_file).fetch_history()
        assert sorted(h["original_date"] for h in history) == [
            f"2024-01-{day:02d}" for day in range(2, 20)
        ]
