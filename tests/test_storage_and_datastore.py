from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest

from datastore.day_cache import DayCacheEntry, DayCacheTable
from models.errors import CachePersistError, DuplicateKeyError, NotFoundError, SourceError
from models.records import Bucket, Order, QueryRange, Sample
from storage.memory_history import MemoryHistorySource
from storage.sqlite_history import IdentifierCache, SqliteHistorySource

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)
DEVICE = "attic@temp"


def _at(seconds: int) -> datetime:
    return BASE + timedelta(seconds=seconds)


def _fill(source) -> None:
    for offset, value in ((30, 18.5), (10, 17.0), (20, 17.5)):
        source.append(DEVICE, Sample(value=value, timestamp=_at(offset), units="C"))
    source.append("attic@fan", Sample(value=True, timestamp=_at(5)))
    source.append("attic@mode", Sample(value="eco", timestamp=_at(6)))


def _window(start: int, end: int, **kwargs) -> QueryRange:
    return QueryRange(date_min=_at(start), date_max=_at(end), **kwargs)


@pytest.fixture(params=["memory", "sqlite"])
def source(request, tmp_path):
    if request.param == "memory":
        return MemoryHistorySource(name="test", root_path=tmp_path / "history")
    return SqliteHistorySource(database_path=tmp_path / "history.sqlite3")


def test_history_is_sorted_and_half_open(source) -> None:
    _fill(source)

    samples = source.history(DEVICE, _window(10, 30))

    assert [sample.value for sample in samples] == [17.0, 17.5]
    assert all(sample.units == "C" for sample in samples)


def test_descending_order_with_limit(source) -> None:
    _fill(source)

    samples = source.history(DEVICE, _window(0, 60, order=Order.descending, limit=2))

    assert [sample.timestamp for sample in samples] == [_at(30), _at(20)]


def test_open_range_with_limit_returns_first_rows(source) -> None:
    _fill(source)

    samples = source.history(DEVICE, QueryRange(limit=1, order=Order.descending))

    assert [sample.value for sample in samples] == [18.5]


def test_value_kinds_survive_storage(source) -> None:
    _fill(source)

    (switch,) = source.history("attic@fan", _window(0, 60))
    (mode,) = source.history("attic@mode", _window(0, 60))

    assert switch.value is True
    assert switch.units is None
    assert mode.value == "eco"


def test_latest_and_unknown_device(source) -> None:
    _fill(source)

    latest = source.latest(DEVICE)

    assert latest is not None and latest.value == 18.5
    assert source.has_device(DEVICE)
    assert not source.has_device("cellar@temp")
    with pytest.raises(NotFoundError):
        source.latest("cellar@temp")
    with pytest.raises(NotFoundError):
        source.history("cellar@temp", _window(0, 60))


def test_fetch_completes_once_even_without_rows(source) -> None:
    _fill(source)
    completions: List[int] = []

    result = source.fetch(
        DEVICE,
        _window(100, 200),
        [],
        lambda acc, sample: acc.append(sample),
        lambda acc: completions.append(len(acc)),
    )

    assert result == []
    assert completions == [0]


def test_fold_errors_are_not_wrapped(source) -> None:
    _fill(source)

    def explode(_acc, _sample) -> None:
        raise KeyError("fold bug")

    with pytest.raises(KeyError):
        source.fetch(DEVICE, _window(0, 60), None, explode)


def test_memory_source_reloads_persisted_samples(tmp_path) -> None:
    root = tmp_path / "history"
    _fill(MemoryHistorySource(name="first", root_path=root))

    reloaded = MemoryHistorySource(name="second", root_path=root)

    assert reloaded.devices() == ["attic@fan", "attic@mode", DEVICE]
    assert [sample.value for sample in reloaded.history(DEVICE, _window(0, 60))] == [17.0, 17.5, 18.5]


def test_memory_source_skips_unreadable_lines(tmp_path, caplog) -> None:
    root = tmp_path / "history"
    root.mkdir()
    (root / "attic%40temp.jsonl").write_text('{"t": 1000, "v": 4.0}\nnot json\n', encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="storage.memory_history"):
        source = MemoryHistorySource(root_path=root)

    assert len(source.history(DEVICE, QueryRange(limit=10))) == 1
    assert any(record.getMessage() == "Skipping unreadable persisted sample" for record in caplog.records)


class _StaleLookupCache(IdentifierCache):
    """Misses the first ``misses`` lookups, as if another writer inserted concurrently."""

    def __init__(self, misses: int) -> None:
        super().__init__()
        self.misses = misses
        self.inserts_attempted = 0

    def lookup(self, conn: sqlite3.Connection, table: str, name: str) -> Optional[int]:
        if self.misses > 0:
            self.misses -= 1
            self.inserts_attempted += 1
            return None
        return super().lookup(conn, table, name)


def test_identifier_insert_retries_after_collision(tmp_path: Path) -> None:
    path = tmp_path / "history.sqlite3"
    SqliteHistorySource(database_path=path).append(DEVICE, Sample(value=1.0, timestamp=_at(0)))
    identifiers = _StaleLookupCache(misses=1)
    source = SqliteHistorySource(database_path=path, identifiers=identifiers)

    source.append(DEVICE, Sample(value=2.0, timestamp=_at(1)))

    assert identifiers.inserts_attempted == 1
    assert [sample.value for sample in source.history(DEVICE, _window(0, 60))] == [1.0, 2.0]


def test_failed_append_does_not_cache_rolled_back_identifier(tmp_path: Path) -> None:
    path = tmp_path / "history.sqlite3"
    source = SqliteHistorySource(database_path=path)
    with sqlite3.connect(str(path)) as conn:
        conn.execute(
            """
            CREATE TRIGGER reject_first BEFORE INSERT ON samples
            WHEN NEW.device_id = (SELECT id FROM devices WHERE name = 'first@temp')
            BEGIN SELECT RAISE(ABORT, 'rejected'); END;
            """
        )

    with pytest.raises(SourceError):
        source.append("first@temp", Sample(value=1.0, timestamp=_at(0)))
    source.append("second@temp", Sample(value=2.0, timestamp=_at(1)))

    assert source.identifiers.get("devices", "first@temp") is None
    assert source.has_device("first@temp") is False
    assert [sample.value for sample in source.history("second@temp", _window(0, 60))] == [2.0]


def test_identifier_retries_are_bounded(tmp_path: Path, caplog) -> None:
    path = tmp_path / "history.sqlite3"
    SqliteHistorySource(database_path=path).append(DEVICE, Sample(value=1.0, timestamp=_at(0)))
    source = SqliteHistorySource(database_path=path, identifiers=_StaleLookupCache(misses=100))

    with caplog.at_level(logging.WARNING, logger="storage.sqlite_history"):
        with pytest.raises(SourceError):
            source.append(DEVICE, Sample(value=2.0, timestamp=_at(1)))

    assert any(record.getMessage() == "Identifier insert retries exhausted" for record in caplog.records)


def _day_entry(day: int, device_key: str = DEVICE, average: float = 1.0) -> DayCacheEntry:
    start = datetime(2024, 1, day, tzinfo=timezone.utc)
    bucket = Bucket(
        start_date=start,
        end_date=start + timedelta(days=1),
        min=Sample(value=0.5, timestamp=start + timedelta(hours=3), units="C"),
        max=Sample(value=1.5, timestamp=start + timedelta(hours=9), units="C"),
        sum=12.0,
        area=86_400_000.0 * average,
        total_ms=86_400_000,
        count=4,
        count_changes=3,
        average=average,
    )
    return DayCacheEntry(device_key=device_key, bucket=bucket)


def test_day_cache_round_trip_and_range_query(tmp_path: Path) -> None:
    path = tmp_path / "day_cache.json"
    table = DayCacheTable(name="days", persistence_path=path)
    for day in (3, 1, 2):
        table.put_item(_day_entry(day, average=float(day)))
    table.put_item(_day_entry(2, device_key="other@temp"))

    reloaded = DayCacheTable(name="days", persistence_path=path)
    entries = reloaded.query(
        DEVICE,
        datetime(2024, 1, 1, tzinfo=timezone.utc),
        datetime(2024, 1, 3, tzinfo=timezone.utc),
    )

    assert [entry.bucket.average for entry in entries] == [1.0, 2.0]
    first = entries[0].bucket
    assert first.min == Sample(value=0.5, timestamp=datetime(2024, 1, 1, 3, tzinfo=timezone.utc), units="C")
    assert first.delta == pytest.approx(1.0)
    assert len(reloaded.scan()) == 4


def test_day_cache_rejects_duplicate_day() -> None:
    table = DayCacheTable(name="days")
    table.put_item(_day_entry(1))

    with pytest.raises(DuplicateKeyError):
        table.put_item(_day_entry(1, average=9.0))

    stored = table.get_item(DEVICE, datetime(2024, 1, 1, tzinfo=timezone.utc))
    assert stored is not None and stored.bucket.average == 1.0


def test_day_cache_rolls_back_when_persisting_fails(tmp_path: Path) -> None:
    table = DayCacheTable(name="days")
    table.persistence_path = tmp_path

    with pytest.raises(CachePersistError) as excinfo:
        table.put_item(_day_entry(1))

    assert not isinstance(excinfo.value, DuplicateKeyError)
    assert table.scan() == []
