from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Sequence

import pytest

from models.errors import NotFoundError
from models.records import QueryRange, Sample, SampleValue
from services.counter import CounterReconstructor
from storage.memory_history import MemoryHistorySource

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)
DEVICE = "meter@energy"


def _counter(values: Sequence[SampleValue], units: str | None = None) -> CounterReconstructor:
    source = MemoryHistorySource()
    for offset, value in enumerate(values):
        source.append(DEVICE, Sample(value=value, timestamp=BASE + timedelta(minutes=offset), units=units))
    return CounterReconstructor(source)


WINDOW = QueryRange(date_min=BASE, date_max=BASE + timedelta(hours=1))


def test_monotonic_counter() -> None:
    result = _counter([5, 8, 9]).accumulate(DEVICE, WINDOW)

    assert result.current == pytest.approx(4.0)
    assert result.count == 3
    assert result.count_changes == 1


def test_reset_starts_a_new_segment() -> None:
    result = _counter([5, 8, 6, 9]).accumulate(DEVICE, WINDOW)

    assert result.current == pytest.approx(6.0)
    assert result.count == 4
    assert result.count_changes == 2


def test_result_carries_window_and_units() -> None:
    window = QueryRange(date_min=BASE, date_max=BASE + timedelta(hours=1), output_units="kWh")

    payload = _counter([1, 2], units="kWh").accumulate(DEVICE, window).to_dict()

    assert payload["device_key"] == DEVICE
    assert payload["start_date"] == BASE
    assert payload["end_date"] == BASE + timedelta(hours=1)
    assert payload["units"] == "kWh"


def test_empty_window_yields_zero_total() -> None:
    window = QueryRange(date_min=BASE + timedelta(days=1), date_max=BASE + timedelta(days=2))

    result = _counter([5, 8]).accumulate(DEVICE, window)

    assert (result.current, result.count, result.count_changes) == (0.0, 0, 0)


def test_non_numeric_readings_are_skipped() -> None:
    result = _counter([5, "jammed", 7]).accumulate(DEVICE, WINDOW)

    assert result.current == pytest.approx(2.0)
    assert result.count == 2


def test_unknown_counter_raises_not_found() -> None:
    with pytest.raises(NotFoundError):
        _counter([1]).accumulate("ghost@energy", WINDOW)
