"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Union

from models.timeutil import truncate_ms

SampleValue = Union[float, bool, str]

DEFAULT_WINDOW = timedelta(hours=24)

STAT_FIELDS: FrozenSet[str] = frozenset(
    {
        "min",
        "max",
        "min_rate",
        "max_rate",
        "average",
        "sum",
        "area",
        "total_ms",
        "count",
        "count_changes",
        "start_date",
        "end_date",
        "delta",
        "units",
    }
)


def parse_projection(fields: Optional[Iterable[str]]) -> Optional[FrozenSet[str]]:
    """Validate requested field names; ``None`` means every field."""
    if fields is None:
        return None
    requested = frozenset(name.strip() for name in fields if name and name.strip())
    if not requested:
        return None
    unknown = sorted(requested - STAT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown projection fields: {', '.join(unknown)}")
    return requested


def wants(projection: Optional[FrozenSet[str]], name: str) -> bool:
    return projection is None or name in projection


class Order(str, Enum):
    """Scan direction requested from a history source."""

    ascending = "ascending"
    descending = "descending"


@dataclass(frozen=True, slots=True)
class Sample:
    """A single timestamped reading yielded by a history source."""

    value: SampleValue
    timestamp: datetime
    units: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", truncate_ms(self.timestamp))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"value": self.value, "timestamp": self.timestamp}
        if self.units is not None:
            payload["units"] = self.units
        return payload


@dataclass(frozen=True, slots=True)
class QueryRange:
    """Time window and scan options for a single query."""

    date_min: Optional[datetime] = None
    date_max: Optional[datetime] = None
    limit: Optional[int] = None
    order: Order = Order.ascending
    output_units: Optional[str] = None
    projection: Optional[FrozenSet[str]] = None

    def __post_init__(self) -> None:
        if (
            self.date_min is not None
            and self.date_max is not None
            and self.date_min > self.date_max
        ):
            raise ValueError("date_min must not be after date_max.")
        if self.limit is not None and self.limit <= 0:
            raise ValueError("limit must be a positive integer.")

    def resolve(self, now: datetime, *, keep_open: bool = False) -> "QueryRange":
        """Fill in the default ``[now - 24h, now)`` window.

        With ``keep_open`` a range that only carries a ``limit`` is left
        unbounded so that history queries return the last N samples.
        """
        if keep_open and self.limit is not None and self.date_min is None and self.date_max is None:
            return self
        date_max = self.date_max or now
        date_min = self.date_min or (date_max - DEFAULT_WINDOW)
        return QueryRange(
            date_min=date_min,
            date_max=date_max,
            limit=self.limit,
            order=self.order,
            output_units=self.output_units,
            projection=self.projection,
        )

    def ascending(self) -> "QueryRange":
        if self.order is Order.ascending:
            return self
        return QueryRange(
            date_min=self.date_min,
            date_max=self.date_max,
            limit=self.limit,
            order=Order.ascending,
            output_units=self.output_units,
            projection=self.projection,
        )

    def with_window(self, date_min: datetime, date_max: datetime) -> "QueryRange":
        return QueryRange(
            date_min=date_min,
            date_max=date_max,
            limit=None,
            order=Order.ascending,
            output_units=self.output_units,
            projection=None,
        )


@dataclass(slots=True)
class RateExtreme:
    """Held value divided by elapsed time, stamped with the closing sample."""

    value: float
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "timestamp": self.timestamp}


def _project(values: Dict[str, Any], projection: Optional[FrozenSet[str]]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for name, value in values.items():
        if not wants(projection, name):
            continue
        if isinstance(value, (Sample, RateExtreme)):
            value = value.to_dict()
        result[name] = value
    return result


@dataclass(slots=True)
class RangeStats:
    """Whole-window statistics from the full-range aggregator."""

    start_date: datetime
    end_date: datetime
    count: int = 0
    min: Optional[Sample] = None
    max: Optional[Sample] = None
    min_rate: Optional[RateExtreme] = None
    max_rate: Optional[RateExtreme] = None
    sum: Optional[float] = None
    area: Optional[float] = None
    total_ms: Optional[int] = None
    average: Optional[float] = None
    units: Optional[str] = None

    def to_dict(self, projection: Optional[FrozenSet[str]] = None) -> Dict[str, Any]:
        values = {
            "min": self.min,
            "max": self.max,
            "min_rate": self.min_rate,
            "max_rate": self.max_rate,
            "average": self.average,
            "sum": self.sum,
            "area": self.area,
            "total_ms": self.total_ms,
            "count": self.count,
            "start_date": self.start_date,
            "end_date": self.end_date,
        }
        if self.units is not None:
            values["units"] = self.units
        return _project(values, projection)


@dataclass(slots=True)
class Bucket:
    """Partial aggregate state for one slice of a query window.

    ``area`` accumulates held value times duration; ``average`` is only
    set once the bucket is finalized.
    """

    start_date: datetime
    end_date: datetime
    min: Optional[Sample] = None
    max: Optional[Sample] = None
    sum: float = 0.0
    area: float = 0.0
    total_ms: int = 0
    count: int = 0
    count_changes: int = 0
    average: Optional[float] = None

    @property
    def delta(self) -> Optional[float]:
        if self.min is None or self.max is None:
            return None
        return float(self.max.value) - float(self.min.value)

    def finalize(self) -> None:
        self.average = self.area / self.total_ms if self.total_ms else None

    def to_dict(
        self,
        projection: Optional[FrozenSet[str]] = None,
        units: Optional[str] = None,
    ) -> Dict[str, Any]:
        values = {
            "start_date": self.start_date,
            "end_date": self.end_date,
            "min": self.min,
            "max": self.max,
            "average": self.average,
            "sum": self.sum,
            "area": self.area,
            "total_ms": self.total_ms,
            "count": self.count,
            "count_changes": self.count_changes,
            "delta": self.delta,
        }
        if units is not None:
            values["units"] = units
        return _project(values, projection)


@dataclass(slots=True)
class CumulativeResult:
    """Reconstructed monotonic delta sum of an odometer-like series."""

    device_key: str
    start_date: datetime
    end_date: datetime
    current: float = 0.0
    count: int = 0
    count_changes: int = 0
    units: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "device_key": self.device_key,
            "current": self.current,
            "count": self.count,
            "count_changes": self.count_changes,
            "start_date": self.start_date,
            "end_date": self.end_date,
        }
        if self.units is not None:
            payload["units"] = self.units
        return payload


@dataclass(slots=True)
class LastValueEntry:
    """Most recent sample known for a device key."""

    device_key: str
    value: SampleValue
    timestamp: datetime
    units: Optional[str] = None

    @classmethod
    def from_sample(cls, device_key: str, sample: Sample) -> "LastValueEntry":
        return cls(
            device_key=device_key,
            value=sample.value,
            timestamp=sample.timestamp,
            units=sample.units,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "device_key": self.device_key,
            "value": self.value,
            "timestamp": self.timestamp,
        }
        if self.units is not None:
            payload["units"] = self.units
        return payload


@dataclass(slots=True)
class SensorMessage:
    """Raw reading as delivered by the ingestion transport."""

    device: str
    current: Any
    type: Optional[str] = None
    units: Optional[str] = None
    date: Optional[Any] = None
