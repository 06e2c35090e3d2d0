"""Cumulative reconstruction of odometer-like counters."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from models.records import CumulativeResult, QueryRange, Sample
from models.timeutil import utcnow
from services.folds import UnitsCheck, log_skipped, numeric_value
from storage.history_source import HistorySource


class _CounterState:
    """A drop in value is a counter reset: it starts a new segment instead of adding a negative delta."""

    def __init__(self, units: UnitsCheck) -> None:
        self.units = units
        self.pred: Optional[float] = None
        self.total = 0.0
        self.count = 0
        self.count_changes = 0

    def add(self, sample: Sample) -> None:
        self.units.observe(sample)
        number = numeric_value(sample.value)
        if number is None:
            log_skipped(self.units.device_key, sample)
            return

        self.count += 1
        if self.pred is None or number < self.pred:
            self.count_changes += 1
        else:
            self.total += number - self.pred
        self.pred = number


class CounterReconstructor:
    """Rebuilds a monotonic total from a counter that may reset to a lower value."""

    def __init__(
        self,
        source: HistorySource,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.source = source
        self.clock = clock

    def accumulate(self, device_key: str, query: QueryRange) -> CumulativeResult:
        query = query.resolve(self.clock()).ascending()
        assert query.date_min is not None and query.date_max is not None

        state = _CounterState(UnitsCheck(device_key, query.output_units))
        self.source.fetch(device_key, query, state, _CounterState.add)

        return CumulativeResult(
            device_key=device_key,
            start_date=query.date_min,
            end_date=query.date_max,
            current=state.total,
            count=state.count,
            count_changes=state.count_changes,
            units=query.output_units,
        )
