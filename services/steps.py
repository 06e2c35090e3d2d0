"""Bucket partitioning schemes for the downsampler."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Tuple, Union

from models.timeutil import from_ms, to_ms

DAY = "day"


def local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(0), tzinfo=tz)


def local_day(instant: datetime, tz: tzinfo) -> date:
    return instant.astimezone(tz).date()


class FixedStep:
    """Buckets of a constant width anchored at the window start."""

    def __init__(self, width_ms: int, origin_ms: int = 0) -> None:
        if width_ms <= 0:
            raise ValueError("step must be a positive number of milliseconds.")
        self.width_ms = int(width_ms)
        self.origin_ms = origin_ms

    def anchored(self, origin_ms: int) -> "FixedStep":
        return FixedStep(self.width_ms, origin_ms)

    def index_of(self, instant_ms: int) -> int:
        return (instant_ms - self.origin_ms) // self.width_ms

    def bounds(self, index: int) -> Tuple[int, int]:
        start = self.origin_ms + index * self.width_ms
        return start, start + self.width_ms

    def __repr__(self) -> str:
        return f"FixedStep({self.width_ms})"


class CalendarDayStep:
    """Local-midnight aligned buckets; 23 or 25 hours long across DST changes."""

    def __init__(self, tz: tzinfo, origin_day: date | None = None) -> None:
        self.tz = tz
        self.origin_day = origin_day

    def anchored(self, origin_ms: int) -> "CalendarDayStep":
        return CalendarDayStep(self.tz, local_day(from_ms(origin_ms), self.tz))

    def _origin(self) -> date:
        if self.origin_day is None:
            raise ValueError("CalendarDayStep has no origin day; call anchored() first.")
        return self.origin_day

    def index_of(self, instant_ms: int) -> int:
        return (local_day(from_ms(instant_ms), self.tz) - self._origin()).days

    def bounds(self, index: int) -> Tuple[int, int]:
        day = self._origin() + timedelta(days=index)
        start = to_ms(local_midnight(day, self.tz))
        end = to_ms(local_midnight(day + timedelta(days=1), self.tz))
        return start, end

    def __repr__(self) -> str:
        return f"CalendarDayStep({self.tz})"


Step = Union[FixedStep, CalendarDayStep]


def parse_step(value: Union[str, int, float, timedelta, Step], tz: tzinfo) -> Step:
    """Build a step from milliseconds, a ``timedelta`` or the literal ``"day"``."""
    if isinstance(value, (FixedStep, CalendarDayStep)):
        return value
    if isinstance(value, timedelta):
        return FixedStep(value // timedelta(milliseconds=1))
    if isinstance(value, str):
        candidate = value.strip().lower()
        if candidate == DAY:
            return CalendarDayStep(tz)
        try:
            return FixedStep(int(candidate))
        except ValueError as exc:
            raise ValueError(f"Invalid step {value!r}; expected milliseconds or 'day'.") from exc
    if isinstance(value, bool):
        raise ValueError("Invalid step.")
    return FixedStep(int(value))
