import datetime
import functools
from typing import Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


@functools.total_ordering
class TrainingDate:
    """Calendar date used as the key of the training log.

    Ordering of ``TrainingDate`` values matches both calendar ordering and the
    lexicographic ordering of their ``YYYY-MM-DD`` text, which is how the
    dates are stored.
    """

    __slots__ = ("_value",)

    def __init__(self, value: datetime.date) -> None:
        if isinstance(value, datetime.datetime):
            value = value.date()
        if not isinstance(value, datetime.date):
            raise TypeError("TrainingDate requires a datetime.date")
        self._value = value

    @classmethod
    def parse(cls, text: str) -> "TrainingDate":
        """Parse a ``YYYY-MM-DD`` string."""
        if not isinstance(text, str) or len(text) != 10 or text[4::3] != "--":
            raise ValueError(f"invalid date: {text!r}")
        try:
            return cls(datetime.date.fromisoformat(text))
        except ValueError:
            raise ValueError(f"invalid date: {text!r}")

    @classmethod
    def coerce(cls, value: "TrainingDate | datetime.date | str") -> "TrainingDate":
        if isinstance(value, TrainingDate):
            return value
        if isinstance(value, str):
            return cls.parse(value)
        return cls(value)

    @classmethod
    def today(cls, timezone: str = "UTC") -> "TrainingDate":
        """Return the current calendar date in ``timezone``."""
        try:
            tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone: {timezone}")
        return cls(datetime.datetime.now(tz).date())

    @property
    def value(self) -> datetime.date:
        return self._value

    def isoformat(self) -> str:
        return self._value.isoformat()

    def add_days(self, days: int) -> "TrainingDate":
        return TrainingDate(self._value + datetime.timedelta(days=days))

    def days_between(self, other: "TrainingDate") -> int:
        """Return the signed number of days from ``self`` to ``other``."""
        return (other._value - self._value).days

    def weekday_index(self) -> int:
        """Return 0 for Sunday through 6 for Saturday."""
        return (self._value.weekday() + 1) % 7

    @staticmethod
    def range_between(
        start: "TrainingDate", end: "TrainingDate"
    ) -> Iterator["TrainingDate"]:
        """Yield the dates strictly between ``start`` and ``end`` in order."""
        current = start.add_days(1)
        while current < end:
            yield current
            current = current.add_days(1)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TrainingDate):
            return NotImplemented
        return self._value == other._value

    def __lt__(self, other: "TrainingDate") -> bool:
        if not isinstance(other, TrainingDate):
            return NotImplemented
        return self._value < other._value

    def __hash__(self) -> int:
        return hash(self._value)

    def __str__(self) -> str:
        return self.isoformat()

    def __repr__(self) -> str:
        return f"TrainingDate({self.isoformat()!r})"
