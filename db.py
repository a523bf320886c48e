import sqlite3
import aiosqlite
import csv
import os
import threading
from contextlib import contextmanager, asynccontextmanager
from dataclasses import dataclass, replace
from typing import List, Tuple, Optional, Iterator

from loguru import logger

from config import YamlConfig
from settings_schema import SettingsSchema, validate_settings
from tools import TrainingDate

PLAN_LENGTH = 5

_local = threading.local()
_locks: dict[str, threading.RLock] = {}
_locks_guard = threading.Lock()


class NotFoundError(ValueError):
    """Raised when a requested row does not exist."""


class StorageUnavailableError(RuntimeError):
    """Raised when the SQLite store cannot be opened or queried."""


@dataclass(frozen=True)
class TrainingDayRecord:
    """One row of the training log."""

    date: TrainingDate
    planned_day: int
    completed: bool = False
    rescheduled: bool = False

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "planned_day": self.planned_day,
            "completed": self.completed,
            "rescheduled": self.rescheduled,
        }


def _active_connections() -> dict:
    if not hasattr(_local, "connections"):
        _local.connections = {}
    return _local.connections


def _lock_for(key: str) -> threading.RLock:
    with _locks_guard:
        if key not in _locks:
            _locks[key] = threading.RLock()
        return _locks[key]


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "trained_days": (
            """CREATE TABLE trained_days (
                    date TEXT PRIMARY KEY,
                    planned_day INTEGER NOT NULL,
                    completed INTEGER NOT NULL DEFAULT 0,
                    rescheduled INTEGER NOT NULL DEFAULT 0
                );""",
            ["date", "planned_day", "completed", "rescheduled"],
        ),
        "workouts": (
            """CREATE TABLE workouts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    day_number INTEGER NOT NULL,
                    exercise_name TEXT NOT NULL,
                    sets TEXT,
                    reps TEXT
                );""",
            ["id", "day_number", "exercise_name", "sets", "reps"],
        ),
        "diets": (
            """CREATE TABLE diets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    meal_name TEXT NOT NULL,
                    items TEXT,
                    total_protein TEXT
                );""",
            ["id", "meal_name", "items", "total_protein"],
        ),
        "reschedule_history": (
            """CREATE TABLE reschedule_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    original_date TEXT NOT NULL,
                    new_date TEXT NOT NULL,
                    workout_day INTEGER NOT NULL
                );""",
            ["id", "original_date", "new_date", "workout_day"],
        ),
        "settings": (
            """CREATE TABLE settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                );""",
            ["key", "value"],
        ),
    }

    def __init__(self, db_path: str = "gym.db") -> None:
        self._db_path = db_path
        self._ensure_schema()
        self._import_plan_data()
        self._import_diet_data()
        self._init_settings()
        self.vacuum()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def _path_key(self) -> str:
        return os.path.abspath(self._db_path)

    def _active_connection(self) -> sqlite3.Connection | None:
        return _active_connections().get(self._path_key)

    def _connect(self) -> sqlite3.Connection:
        try:
            return sqlite3.connect(self._db_path)
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"cannot open {self._db_path}: {e}") from e

    @contextmanager
    def _connection(self):
        active = self._active_connection()
        if active is not None:
            try:
                yield active
            except sqlite3.IntegrityError as e:
                raise ValueError(str(e)) from e
            except sqlite3.Error as e:
                raise StorageUnavailableError(str(e)) from e
            return
        connection = self._connect()
        try:
            yield connection
            connection.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(str(e)) from e
        except sqlite3.Error as e:
            raise StorageUnavailableError(str(e)) from e
        finally:
            connection.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed repository calls in one write transaction.

        Repositories sharing this database path join the open transaction
        when used from the same thread. Nested calls reuse the outer one.
        """
        active = self._active_connection()
        if active is not None:
            yield active
            return
        with _lock_for(self._path_key):
            connection = self._connect()
            connections = _active_connections()
            try:
                try:
                    connection.execute("BEGIN IMMEDIATE;")
                except sqlite3.Error as e:
                    raise StorageUnavailableError(str(e)) from e
                connections[self._path_key] = connection
                try:
                    yield connection
                except BaseException:
                    connection.rollback()
                    raise
                try:
                    connection.commit()
                except sqlite3.Error as e:
                    raise StorageUnavailableError(str(e)) from e
            finally:
                connections.pop(self._path_key, None)
                connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col in ("completed", "rescheduled"):
                        return "0"
                    if col in ("planned_day", "workout_day", "day_number"):
                        return "1"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        logger.info(f"Migrated table {table} to columns {columns}")
        conn.execute(f"DROP TABLE {table}_old;")

    def _import_plan_data(self) -> None:
        csv_path = os.path.join(os.path.dirname(__file__), "plan_workouts.csv")
        if not os.path.exists(csv_path):
            return
        with self._connection() as conn:
            if conn.execute("SELECT COUNT(*) FROM workouts;").fetchone()[0]:
                return
            with open(csv_path, newline="", encoding="utf-8") as csvfile:
                reader = csv.DictReader(csvfile)
                records = [
                    (int(row["Day"]), row["Exercise"], row["Sets"], row["Reps"])
                    for row in reader
                ]
            conn.executemany(
                "INSERT INTO workouts (day_number, exercise_name, sets, reps) VALUES (?, ?, ?, ?);",
                records,
            )
        logger.debug(f"Seeded {len(records)} plan exercises")

    def _import_diet_data(self) -> None:
        csv_path = os.path.join(os.path.dirname(__file__), "diet_plan.csv")
        if not os.path.exists(csv_path):
            return
        with self._connection() as conn:
            if conn.execute("SELECT COUNT(*) FROM diets;").fetchone()[0]:
                return
            with open(csv_path, newline="", encoding="utf-8") as csvfile:
                reader = csv.DictReader(csvfile)
                records = [
                    (row["Meal"], row["Items"], row["Protein"]) for row in reader
                ]
            conn.executemany(
                "INSERT INTO diets (meal_name, items, total_protein) VALUES (?, ?, ?);",
                records,
            )
        logger.debug(f"Seeded {len(records)} meals")

    def _init_settings(self) -> None:
        defaults = {
            key: str(field.default)
            for key, field in SettingsSchema.model_fields.items()
        }
        with self._connection() as conn:
            for key, value in defaults.items():
                conn.execute(
                    "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?);",
                    (key, value),
                )

    def vacuum(self) -> None:
        """Run SQLite VACUUM to reduce database size."""
        if self._active_connection() is not None:
            return
        with self._connection() as conn:
            conn.execute("VACUUM;")


class BaseRepository(Database):
    """Base repository providing helper methods."""

    def execute(self, query: str, params: Tuple = ()) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.lastrowid

    def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchall()


class AsyncDatabase(Database):
    """Provides asynchronous connection management."""

    @asynccontextmanager
    async def _async_connection(self):
        try:
            conn = await aiosqlite.connect(self._db_path)
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"cannot open {self._db_path}: {e}") from e
        try:
            yield conn
            await conn.commit()
        except sqlite3.Error as e:
            raise StorageUnavailableError(str(e)) from e
        finally:
            await conn.close()


class AsyncBaseRepository(AsyncDatabase):
    """Asynchronous variant of BaseRepository using aiosqlite."""

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.lastrowid

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return list(rows)


def _record_from_row(row: Tuple) -> TrainingDayRecord:
    date, planned_day, completed, rescheduled = row
    return TrainingDayRecord(
        TrainingDate.parse(date),
        int(planned_day),
        bool(completed),
        bool(rescheduled),
    )


def _range_query(
    base: str, start_date: Optional[str], end_date: Optional[str]
) -> Tuple[str, list[str]]:
    query = base
    params: list[str] = []
    where_clauses: list[str] = []
    if start_date:
        where_clauses.append("date >= ?")
        params.append(TrainingDate.coerce(start_date).isoformat())
    if end_date:
        where_clauses.append("date <= ?")
        params.append(TrainingDate.coerce(end_date).isoformat())
    if where_clauses:
        query += " WHERE " + " AND ".join(where_clauses)
    return query, params


class TrainingDayRepository(BaseRepository):
    """Repository for the date-keyed training log."""

    _COLUMNS = "date, planned_day, completed, rescheduled"
    _UPDATABLE = {"planned_day", "completed", "rescheduled"}

    def get(self, date: TrainingDate | str) -> Optional[TrainingDayRecord]:
        rows = self.fetch_all(
            f"SELECT {self._COLUMNS} FROM trained_days WHERE date = ?;",
            (TrainingDate.coerce(date).isoformat(),),
        )
        return _record_from_row(rows[0]) if rows else None

    def get_latest(self) -> Optional[TrainingDayRecord]:
        rows = self.fetch_all(
            f"SELECT {self._COLUMNS} FROM trained_days ORDER BY date DESC LIMIT 1;"
        )
        return _record_from_row(rows[0]) if rows else None

    def get_latest_completed(self) -> Optional[TrainingDayRecord]:
        rows = self.fetch_all(
            f"SELECT {self._COLUMNS} FROM trained_days WHERE completed = 1 "
            "ORDER BY date DESC LIMIT 1;"
        )
        return _record_from_row(rows[0]) if rows else None

    def insert(self, record: TrainingDayRecord) -> TrainingDayRecord:
        if not 1 <= record.planned_day <= PLAN_LENGTH:
            raise ValueError(f"planned_day must be between 1 and {PLAN_LENGTH}")
        self.execute(
            "INSERT INTO trained_days (date, planned_day, completed, rescheduled) VALUES (?, ?, ?, ?);",
            (
                record.date.isoformat(),
                record.planned_day,
                int(record.completed),
                int(record.rescheduled),
            ),
        )
        return record

    def update(self, date: TrainingDate | str, /, **fields) -> TrainingDayRecord:
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"cannot update fields: {', '.join(sorted(unknown))}")
        for flag in ("completed", "rescheduled"):
            if flag in fields:
                fields[flag] = bool(fields[flag])
        with self.transaction():
            current = self.get(date)
            if current is None:
                raise NotFoundError(f"no training day for {date}")
            if not fields:
                return current
            if current.completed and any(
                getattr(current, key) != value
                for key, value in fields.items()
                if key != "completed"
            ):
                raise ValueError(f"training day {date} is completed and cannot change")
            updated = replace(current, **fields)
            if not 1 <= updated.planned_day <= PLAN_LENGTH:
                raise ValueError(f"planned_day must be between 1 and {PLAN_LENGTH}")
            self.execute(
                "UPDATE trained_days SET planned_day = ?, completed = ?, rescheduled = ? WHERE date = ?;",
                (
                    updated.planned_day,
                    int(updated.completed),
                    int(updated.rescheduled),
                    updated.date.isoformat(),
                ),
            )
            return updated

    def list_all(
        self, start_date: Optional[str] = None, end_date: Optional[str] = None
    ) -> List[TrainingDayRecord]:
        query, params = _range_query(
            f"SELECT {self._COLUMNS} FROM trained_days", start_date, end_date
        )
        query += " ORDER BY date ASC;"
        return [_record_from_row(r) for r in self.fetch_all(query, tuple(params))]

    def count_completed(self) -> int:
        rows = self.fetch_all("SELECT COUNT(*) FROM trained_days WHERE completed = 1;")
        return int(rows[0][0])

    def count_rescheduled(self) -> int:
        rows = self.fetch_all("SELECT COUNT(*) FROM trained_days WHERE rescheduled = 1;")
        return int(rows[0][0])

    def weekly_consistency(self) -> List[Tuple[str, int]]:
        """Return completed day counts grouped by weekday (``0`` is Sunday)."""
        return self.fetch_all(
            "SELECT strftime('%w', date) AS day_of_week, COUNT(*) "
            "FROM trained_days WHERE completed = 1 "
            "GROUP BY day_of_week ORDER BY day_of_week;"
        )


class AsyncTrainingDayRepository(AsyncBaseRepository):
    """Async read access to the training log."""

    async def get(self, date: TrainingDate | str) -> Optional[TrainingDayRecord]:
        rows = await self.fetch_all(
            "SELECT date, planned_day, completed, rescheduled FROM trained_days WHERE date = ?;",
            (TrainingDate.coerce(date).isoformat(),),
        )
        return _record_from_row(rows[0]) if rows else None

    async def list_all(
        self, start_date: Optional[str] = None, end_date: Optional[str] = None
    ) -> List[TrainingDayRecord]:
        query, params = _range_query(
            "SELECT date, planned_day, completed, rescheduled FROM trained_days",
            start_date,
            end_date,
        )
        query += " ORDER BY date ASC;"
        rows = await self.fetch_all(query, tuple(params))
        return [_record_from_row(r) for r in rows]


class PlanWorkoutRepository(BaseRepository):
    """Repository for the exercises of each plan day."""

    @staticmethod
    def _to_dict(row: Tuple) -> dict:
        return {
            "id": row[0],
            "day_number": row[1],
            "exercise_name": row[2],
            "sets": row[3],
            "reps": row[4],
        }

    def add(self, day_number: int, exercise_name: str, sets: str, reps: str) -> int:
        if not 1 <= day_number <= PLAN_LENGTH:
            raise ValueError(f"day_number must be between 1 and {PLAN_LENGTH}")
        if not exercise_name:
            raise ValueError("exercise_name required")
        return self.execute(
            "INSERT INTO workouts (day_number, exercise_name, sets, reps) VALUES (?, ?, ?, ?);",
            (day_number, exercise_name, sets, reps),
        )

    def fetch_for_day(self, day_number: int) -> List[dict]:
        rows = self.fetch_all(
            "SELECT id, day_number, exercise_name, sets, reps FROM workouts WHERE day_number = ? ORDER BY id;",
            (day_number,),
        )
        return [self._to_dict(r) for r in rows]

    def fetch_grouped(self) -> dict[int, List[dict]]:
        rows = self.fetch_all(
            "SELECT id, day_number, exercise_name, sets, reps FROM workouts ORDER BY day_number ASC, id ASC;"
        )
        grouped: dict[int, List[dict]] = {}
        for row in rows:
            grouped.setdefault(row[1], []).append(self._to_dict(row))
        return grouped


class DietRepository(BaseRepository):
    """Repository for the daily meal plan."""

    def add(self, meal_name: str, items: str, total_protein: str) -> int:
        if not meal_name:
            raise ValueError("meal_name required")
        return self.execute(
            "INSERT INTO diets (meal_name, items, total_protein) VALUES (?, ?, ?);",
            (meal_name, items, total_protein),
        )

    def fetch_all_meals(self) -> List[dict]:
        rows = self.fetch_all(
            "SELECT id, meal_name, items, total_protein FROM diets ORDER BY id;"
        )
        return [
            {"id": r[0], "meal_name": r[1], "items": r[2], "total_protein": r[3]}
            for r in rows
        ]


class RescheduleHistoryRepository(BaseRepository):
    """Repository recording which missed dates were shifted and where to."""

    def add(
        self,
        original_date: TrainingDate | str,
        new_date: TrainingDate | str,
        workout_day: int,
    ) -> int:
        return self.execute(
            "INSERT INTO reschedule_history (original_date, new_date, workout_day) VALUES (?, ?, ?);",
            (
                TrainingDate.coerce(original_date).isoformat(),
                TrainingDate.coerce(new_date).isoformat(),
                workout_day,
            ),
        )

    def fetch_history(self) -> List[dict]:
        rows = self.fetch_all(
            "SELECT id, original_date, new_date, workout_day FROM reschedule_history ORDER BY id DESC;"
        )
        return [
            {
                "id": r[0],
                "original_date": r[1],
                "new_date": r[2],
                "workout_day": r[3],
            }
            for r in rows
        ]


class SettingsRepository(BaseRepository):
    """Repository for application settings synchronized with YAML."""

    def __init__(self, db_path: str = "gym.db", yaml_path: str = "settings.yaml") -> None:
        super().__init__(db_path)
        self._yaml = YamlConfig(yaml_path)
        self._sync_from_yaml()
        self._sync_to_yaml()

    def _sync_from_yaml(self) -> None:
        data = self._yaml.load()
        if not data:
            return
        validate_settings(data)
        with self._connection() as conn:
            for key, value in data.items():
                if key not in SettingsSchema.model_fields:
                    continue
                conn.execute(
                    "INSERT INTO settings (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value;",
                    (key, str(value)),
                )

    def _sync_to_yaml(self) -> None:
        self._yaml.save(self.all_settings())

    def all_settings(self) -> dict:
        rows = self.fetch_all("SELECT key, value FROM settings ORDER BY key;")
        return {k: v for k, v in rows}

    def get_text(self, key: str, default: str = "") -> str:
        rows = self.fetch_all("SELECT value FROM settings WHERE key = ?;", (key,))
        return rows[0][0] if rows else default

    def set_text(self, key: str, value: str) -> None:
        if key not in SettingsSchema.model_fields:
            raise ValueError(f"unknown setting: {key}")
        merged = self.all_settings()
        merged[key] = value
        validate_settings(merged)
        if key == "log_level":
            value = value.upper()
        self.execute(
            "INSERT INTO settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value;",
            (key, value),
        )
        self._sync_to_yaml()
