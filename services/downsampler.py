"""Time-bucketed downsampling with zero-order-hold interpolation across bucket edges."""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Callable, List, Optional, Union

from models.records import Bucket, QueryRange, Sample
from models.timeutil import from_ms, to_ms, utcnow
from services.folds import UnitsCheck, log_skipped, numeric_value
from services.steps import Step, parse_step
from storage.history_source import HistorySource

logger = logging.getLogger(__name__)


class _StepState:
    """Accumulator walking samples into contiguous buckets.

    Every transition between two samples holds the earlier value for the
    elapsed time. A transition that crosses bucket edges is apportioned by
    time overlap: the tail of the predecessor's bucket, every whole bucket in
    between, then the head of the target bucket.

    Unless ``normalize_sum`` is set, ``sum`` keeps the historical asymmetry:
    a transition inside one bucket adds the raw held value, a crossing one adds
    the time-apportioned share of it to each spanned bucket.
    """

    def __init__(
        self,
        step: Step,
        last_index: int,
        units: UnitsCheck,
        normalize_sum: bool = False,
    ) -> None:
        self.step = step
        self.last_index = last_index
        self.units = units
        self.normalize_sum = normalize_sum

        self.buckets: List[Bucket] = []
        self.current_index = -1
        self.pred: Optional[Sample] = None
        self.pred_ms = 0
        self.pred_value = 0.0
        self.end_ms = 0

    def add(self, sample: Sample) -> None:
        self.units.observe(sample)
        number = numeric_value(sample.value)
        if number is None:
            log_skipped(self.units.device_key, sample)
            return
        self._step_to(to_ms(sample.timestamp), sample, number)

    def close(self) -> None:
        if self.pred is None:
            return
        self._step_to(self.end_ms, None, None)

    def _index_of(self, instant_ms: int) -> int:
        return min(max(0, self.step.index_of(instant_ms)), self.last_index)

    def _materialize(self, upto: int) -> None:
        for index in range(len(self.buckets), upto + 1):
            start_ms, end_ms = self.step.bounds(index)
            self.buckets.append(Bucket(start_date=from_ms(start_ms), end_date=from_ms(end_ms)))

    def _step_to(self, target_ms: int, sample: Optional[Sample], number: Optional[float]) -> None:
        index = self._index_of(target_ms)
        self._materialize(index)
        cell = self.buckets[index]

        if sample is not None and number is not None:
            if cell.min is None or number < numeric_value(cell.min.value):
                cell.min = sample
            if cell.max is None or number > numeric_value(cell.max.value):
                cell.max = sample

        if self.pred is None:
            if sample is not None and number is not None:
                self.pred, self.pred_ms, self.pred_value = sample, target_ms, number
                self.current_index = index
            return

        dt = target_ms - self.pred_ms
        changed = sample is not None and sample.value != self.pred.value

        if index == self.current_index:
            cell.sum += self.pred_value
            cell.total_ms += dt
            cell.area += self.pred_value * dt
        else:
            _, first_end = self.step.bounds(self.current_index)
            self._share(self.buckets[self.current_index], first_end - self.pred_ms, dt)
            for middle in range(self.current_index + 1, index):
                start_ms, end_ms = self.step.bounds(middle)
                self._share(self.buckets[middle], end_ms - start_ms, dt)
            head_start, _ = self.step.bounds(index)
            self._share(cell, target_ms - head_start, dt)
            if self.normalize_sum:
                self.buckets[self.current_index].sum += self.pred_value

        cell.count += 1
        if changed:
            cell.count_changes += 1

        if sample is not None and number is not None:
            self.pred, self.pred_ms, self.pred_value = sample, target_ms, number
        self.current_index = index

    def _share(self, bucket: Bucket, duration_ms: int, dt: int) -> None:
        if not self.normalize_sum:
            bucket.sum += self.pred_value * (duration_ms / dt)
        bucket.total_ms += duration_ms
        bucket.area += self.pred_value * duration_ms


class Downsampler:
    """Splits a window into fixed-width or calendar-day buckets."""

    def __init__(
        self,
        source: HistorySource,
        tz: tzinfo,
        clock: Callable[[], datetime] = utcnow,
        normalize_sum: bool = False,
    ) -> None:
        self.source = source
        self.tz = tz
        self.clock = clock
        self.normalize_sum = normalize_sum

    def aggregate_by_step(
        self,
        device_key: str,
        query: QueryRange,
        step: Union[str, int, Step],
    ) -> Optional[List[Bucket]]:
        """Return finalized buckets covering ``query``, or ``None`` without samples."""
        query = query.resolve(self.clock()).ascending()
        assert query.date_min is not None and query.date_max is not None

        min_ms, max_ms = to_ms(query.date_min), to_ms(query.date_max)
        scheme = parse_step(step, self.tz).anchored(min_ms)
        last_index = max(0, scheme.index_of(max_ms - 1)) if max_ms > min_ms else 0

        state = _StepState(
            step=scheme,
            last_index=last_index,
            units=UnitsCheck(device_key, query.output_units),
            normalize_sum=self.normalize_sum,
        )
        state.end_ms = max_ms
        self.source.fetch(device_key, query, state, _StepState.add, _StepState.close)

        if state.pred is None:
            return None

        for bucket in state.buckets:
            bucket.finalize()
        logger.debug(
            "Downsampled history",
            extra={"device_key": device_key, "bucket_count": len(state.buckets)},
        )
        return state.buckets
