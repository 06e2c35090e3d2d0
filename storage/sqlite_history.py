"""
SQLite-backed history source with interned device and unit identifiers.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Generator, Iterable, Iterator, List, Optional, Tuple

from models.errors import NotFoundError, SourceError
from models.records import Order, QueryRange, Sample, SampleValue
from models.timeutil import from_ms, to_ms
from settings import get_settings
from storage.history_source import HistorySource

logger = logging.getLogger(__name__)

_INTERNED_TABLES = ("devices", "units")
MAX_INSERT_ATTEMPTS = 3


def dict_factory(cursor: sqlite3.Cursor, row: Tuple[Any, ...]) -> Dict[str, Any]:
    """
    Convert sqlite rows into dictionaries keyed by column name.
    """
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


_SCHEMA_STATEMENTS: Iterable[str] = (
    """
    CREATE TABLE IF NOT EXISTS devices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS units (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS samples (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        device_id INTEGER NOT NULL REFERENCES devices(id),
        unit_id INTEGER REFERENCES units(id),
        kind TEXT NOT NULL CHECK (kind IN ('number', 'bool', 'string')),
        num_value REAL,
        text_value TEXT,
        ts_ms INTEGER NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_samples_device_time ON samples (device_id, ts_ms);",
)


class IdentifierCache:
    """Name to row-id maps for the interning tables, shared by one adapter."""

    def __init__(self) -> None:
        self._ids: Dict[str, Dict[str, int]] = {table: {} for table in _INTERNED_TABLES}
        self._names: Dict[str, Dict[int, str]] = {table: {} for table in _INTERNED_TABLES}
        self._lock = Lock()

    def get(self, table: str, name: str) -> Optional[int]:
        with self._lock:
            return self._ids[table].get(name)

    def name_of(self, table: str, ident: int) -> Optional[str]:
        with self._lock:
            return self._names[table].get(ident)

    def remember(self, table: str, name: str, ident: int) -> None:
        with self._lock:
            self._ids[table][name] = ident
            self._names[table][ident] = name

    def lookup(self, conn: sqlite3.Connection, table: str, name: str) -> Optional[int]:
        """Resolve an existing identifier without creating it."""
        _check_table(table)
        cached = self.get(table, name)
        if cached is not None:
            return cached
        row = conn.execute(f"SELECT id FROM {table} WHERE name = ?;", (name,)).fetchone()
        if row is None:
            return None
        self.remember(table, name, row["id"])
        return row["id"]

    def resolve_name(self, conn: sqlite3.Connection, table: str, ident: int) -> Optional[str]:
        _check_table(table)
        cached = self.name_of(table, ident)
        if cached is not None:
            return cached
        row = conn.execute(f"SELECT name FROM {table} WHERE id = ?;", (ident,)).fetchone()
        if row is None:
            return None
        self.remember(table, row["name"], ident)
        return row["name"]

    def get_or_create(
        self,
        conn: sqlite3.Connection,
        table: str,
        name: str,
        pending: Optional[List[Tuple[str, str, int]]] = None,
    ) -> int:
        """
        Insert-or-fetch with a bounded retry when a concurrent writer wins the insert.

        A freshly inserted id is only visible inside the open transaction, so when
        ``pending`` is given it is queued there and the caller remembers it after commit.
        """
        for attempt in range(1, MAX_INSERT_ATTEMPTS + 1):
            existing = self.lookup(conn, table, name)
            if existing is not None:
                return existing
            try:
                cursor = conn.execute(f"INSERT INTO {table} (name) VALUES (?);", (name,))
            except sqlite3.IntegrityError:
                logger.debug(
                    "Identifier insert collided; retrying",
                    extra={"device_key": name, "reason": f"{table} attempt {attempt}"},
                )
                continue
            ident = int(cursor.lastrowid)
            if pending is None:
                self.remember(table, name, ident)
            else:
                pending.append((table, name, ident))
            return ident
        logger.warning(
            "Identifier insert retries exhausted",
            extra={"device_key": name, "reason": table},
        )
        raise SourceError(f"Could not intern {name!r} into {table}.")


def _check_table(table: str) -> None:
    if table not in _INTERNED_TABLES:
        raise ValueError(f"Unknown identifier table {table!r}")


def _split_value(value: SampleValue) -> Tuple[str, Optional[float], Optional[str]]:
    if isinstance(value, bool):
        return "bool", 1.0 if value else 0.0, None
    if isinstance(value, (int, float)):
        return "number", float(value), None
    return "string", None, str(value)


def _join_value(row: Dict[str, Any]) -> SampleValue:
    kind = row["kind"]
    if kind == "bool":
        return bool(row["num_value"])
    if kind == "number":
        return row["num_value"]
    return row["text_value"]


class SqliteHistorySource(HistorySource):
    """History source persisted in a single SQLite database file."""

    def __init__(self, database_path: Path, identifiers: Optional[IdentifierCache] = None) -> None:
        self.database_path = database_path
        self.identifiers = identifiers or IdentifierCache()
        database_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager that yields a database connection and guarantees it is closed.
        """
        conn = sqlite3.connect(str(self.database_path), timeout=5.0)
        conn.row_factory = dict_factory
        conn.execute("PRAGMA busy_timeout = 5000;")
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        with self.get_connection() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
            conn.commit()

    def has_device(self, device_key: str) -> bool:
        with self.get_connection() as conn:
            return self.identifiers.lookup(conn, "devices", device_key) is not None

    def _device_id(self, conn: sqlite3.Connection, device_key: str) -> int:
        device_id = self.identifiers.lookup(conn, "devices", device_key)
        if device_id is None:
            raise NotFoundError(device_key)
        return device_id

    def _to_sample(self, conn: sqlite3.Connection, row: Dict[str, Any]) -> Sample:
        units = None
        if row["unit_id"] is not None:
            units = self.identifiers.resolve_name(conn, "units", row["unit_id"])
        return Sample(value=_join_value(row), timestamp=from_ms(row["ts_ms"]), units=units)

    def _iter_samples(self, device_key: str, query: QueryRange) -> Iterator[Sample]:
        with self.get_connection() as conn:
            clauses = ["device_id = ?"]
            params: list[Any] = [self._device_id(conn, device_key)]
            if query.date_min is not None:
                clauses.append("ts_ms >= ?")
                params.append(to_ms(query.date_min))
            if query.date_max is not None:
                clauses.append("ts_ms < ?")
                params.append(to_ms(query.date_max))
            direction = "DESC" if query.order is Order.descending else "ASC"
            sql = (
                "SELECT unit_id, kind, num_value, text_value, ts_ms FROM samples "
                f"WHERE {' AND '.join(clauses)} ORDER BY ts_ms {direction}, id {direction}"
            )
            if query.limit is not None:
                sql += " LIMIT ?"
                params.append(query.limit)

            cursor = conn.execute(sql + ";", params)
            for row in cursor:
                yield self._to_sample(conn, row)

    def _latest(self, device_key: str) -> Optional[Sample]:
        with self.get_connection() as conn:
            row = conn.execute(
                """
                SELECT unit_id, kind, num_value, text_value, ts_ms
                FROM samples
                WHERE device_id = ?
                ORDER BY ts_ms DESC, id DESC
                LIMIT 1;
                """,
                (self._device_id(conn, device_key),),
            ).fetchone()
            if row is None:
                return None
            return self._to_sample(conn, row)

    def _append(self, device_key: str, sample: Sample) -> None:
        kind, num_value, text_value = _split_value(sample.value)
        created: List[Tuple[str, str, int]] = []
        with self.get_connection() as conn:
            device_id = self.identifiers.get_or_create(conn, "devices", device_key, created)
            unit_id = None
            if sample.units and kind != "bool":
                unit_id = self.identifiers.get_or_create(conn, "units", sample.units, created)
            conn.execute(
                """
                INSERT INTO samples (device_id, unit_id, kind, num_value, text_value, ts_ms)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (device_id, unit_id, kind, num_value, text_value, to_ms(sample.timestamp)),
            )
            conn.commit()
        for table, name, ident in created:
            self.identifiers.remember(table, name, ident)


@lru_cache
def build_default_sqlite_source(path: Optional[str] = None) -> SqliteHistorySource:
    settings = get_settings()
    database_path = Path(settings.sqlite_path if path is None else path)
    return SqliteHistorySource(database_path=database_path)
