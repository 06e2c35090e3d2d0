"""Whole-window statistics for a device's history."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, FrozenSet, Optional

from models.records import QueryRange, RangeStats, RateExtreme, Sample, wants
from models.timeutil import to_ms, utcnow
from services.folds import UnitsCheck, log_skipped, numeric_value
from storage.history_source import HistorySource


class _RangeState:
    """Single-pass accumulator for the full-range fold.

    The time-weighted average is a zero-order hold: each value is held until
    the next sample, and the last one until the end of the window.
    """

    def __init__(
        self,
        units: UnitsCheck,
        end_ms: int,
        track_average: bool,
        track_rates: bool,
    ) -> None:
        self.units = units
        self.end_ms = end_ms
        self.track_average = track_average
        self.track_rates = track_rates

        self.count = 0
        self.numeric_count = 0
        self.min: Optional[Sample] = None
        self.min_value = 0.0
        self.max: Optional[Sample] = None
        self.max_value = 0.0
        self.min_rate: Optional[RateExtreme] = None
        self.max_rate: Optional[RateExtreme] = None
        self.sum = 0.0
        self.area = 0.0
        self.total_ms = 0

        self.pred_ms: Optional[int] = None
        self.pred_value = 0.0

    def add(self, sample: Sample) -> None:
        self.units.observe(sample)
        self.count += 1

        number = numeric_value(sample.value)
        if number is None:
            log_skipped(self.units.device_key, sample)
            return
        self.numeric_count += 1

        if self.min is None or number < self.min_value:
            self.min, self.min_value = sample, number
        if self.max is None or number > self.max_value:
            self.max, self.max_value = sample, number

        stamp = to_ms(sample.timestamp)
        if self.pred_ms is not None:
            dt = stamp - self.pred_ms
            if self.track_average:
                self.total_ms += dt
                self.area += self.pred_value * dt
            if self.track_rates and dt > 0:
                rate = self.pred_value / dt
                if self.min_rate is None or rate < self.min_rate.value:
                    self.min_rate = RateExtreme(rate, sample.timestamp)
                if self.max_rate is None or rate > self.max_rate.value:
                    self.max_rate = RateExtreme(rate, sample.timestamp)

        self.pred_ms = stamp
        self.pred_value = number
        self.sum += number

    def close(self) -> None:
        if self.pred_ms is None or not self.track_average:
            return
        dt = max(0, self.end_ms - self.pred_ms)
        self.total_ms += dt
        self.area += self.pred_value * dt


class Aggregator:
    """Full-range aggregator: min/max, rate extremes, sum and time-weighted average."""

    def __init__(
        self,
        source: HistorySource,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.source = source
        self.clock = clock

    def aggregate(
        self,
        device_key: str,
        query: QueryRange,
        projection: Optional[FrozenSet[str]] = None,
    ) -> Optional[RangeStats]:
        """Return whole-window statistics, or ``None`` when the window holds no samples."""
        query = query.resolve(self.clock()).ascending()
        if projection is None:
            projection = query.projection
        assert query.date_min is not None and query.date_max is not None

        state = _RangeState(
            units=UnitsCheck(device_key, query.output_units),
            end_ms=to_ms(query.date_max),
            track_average=any(wants(projection, name) for name in ("average", "area", "total_ms")),
            track_rates=wants(projection, "min_rate") or wants(projection, "max_rate"),
        )
        self.source.fetch(device_key, query, state, _RangeState.add, _RangeState.close)

        if state.count == 0:
            return None

        stats = RangeStats(
            start_date=query.date_min,
            end_date=query.date_max,
            count=state.count,
            min=state.min,
            max=state.max,
            min_rate=state.min_rate,
            max_rate=state.max_rate,
            units=query.output_units,
        )
        if state.numeric_count:
            stats.sum = state.sum
        if state.track_average and state.numeric_count:
            stats.area = state.area
            stats.total_ms = state.total_ms
            stats.average = state.area / state.total_ms if state.total_ms else None
        return stats
