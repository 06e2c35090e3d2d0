from __future__ import annotations
import json
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from models.errors import CachePersistError, DuplicateKeyError
from models.records import Bucket, Sample
from models.timeutil import from_ms, to_ms
from settings import get_settings


@dataclass(frozen=True, slots=True)
class DayCacheEntry:
    """A persisted day bucket, unique per device key and local-midnight start."""

    device_key: str
    bucket: Bucket

    @property
    def start_date(self) -> datetime:
        return self.bucket.start_date

    @property
    def key(self) -> str:
        return _item_key(self.device_key, to_ms(self.bucket.start_date))


def _item_key(device_key: str, start_ms: int) -> str:
    return f"{device_key}|{start_ms}"


class DayCacheTable:

    def __init__(self, name: str, persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self._items: Dict[str, Dict[str, Any]] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def put_item(self, entry: DayCacheEntry) -> None:
        """Insert a day entry; an existing key raises ``DuplicateKeyError``."""
        key = entry.key
        with self._lock:
            if key in self._items:
                raise DuplicateKeyError(
                    f"Day {entry.start_date.isoformat()} already cached for {entry.device_key!r}."
                )
            self._items[key] = _encode_entry(entry)
            try:
                self._persist()
            except OSError as exc:
                del self._items[key]
                raise CachePersistError(f"Could not persist table {self.name!r}: {exc}") from exc

    def get_item(self, device_key: str, start_date: datetime) -> Optional[DayCacheEntry]:
        with self._lock:
            payload = self._items.get(_item_key(device_key, to_ms(start_date)))
            if payload is None:
                return None
            return _decode_entry(payload)

    def query(self, device_key: str, date_min: datetime, date_max: datetime) -> List[DayCacheEntry]:
        """Entries for ``device_key`` whose day starts in ``[date_min, date_max)``, by day."""
        lo, hi = to_ms(date_min), to_ms(date_max)
        with self._lock:
            selected: List[Tuple[int, Dict[str, Any]]] = [
                (payload["start_ms"], payload)
                for payload in self._items.values()
                if payload["device_key"] == device_key and lo <= payload["start_ms"] < hi
            ]
        selected.sort(key=lambda item: item[0])
        return [_decode_entry(payload) for _, payload in selected]

    def scan(self) -> list[DayCacheEntry]:
        """Return every cached entry."""

        with self._lock:
            return [_decode_entry(payload) for payload in self._items.values()]

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        self.persistence_path.write_text(json.dumps(self._items, indent=2, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            data = {}

        for key, payload in data.items():
            if isinstance(payload, dict) and "device_key" in payload and "start_ms" in payload:
                self._items[key] = payload


def _encode_sample(sample: Optional[Sample]) -> Optional[Dict[str, Any]]:
    if sample is None:
        return None
    return {"t": to_ms(sample.timestamp), "v": sample.value, "u": sample.units}


def _decode_sample(payload: Optional[Dict[str, Any]]) -> Optional[Sample]:
    if payload is None:
        return None
    return Sample(value=payload["v"], timestamp=from_ms(payload["t"]), units=payload.get("u"))


def _encode_entry(entry: DayCacheEntry) -> Dict[str, Any]:
    bucket = entry.bucket
    return {
        "device_key": entry.device_key,
        "start_ms": to_ms(bucket.start_date),
        "end_ms": to_ms(bucket.end_date),
        "min": _encode_sample(bucket.min),
        "max": _encode_sample(bucket.max),
        "sum": bucket.sum,
        "area": bucket.area,
        "total_ms": bucket.total_ms,
        "count": bucket.count,
        "count_changes": bucket.count_changes,
        "average": bucket.average,
    }


def _decode_entry(payload: Dict[str, Any]) -> DayCacheEntry:
    bucket = Bucket(
        start_date=from_ms(payload["start_ms"]),
        end_date=from_ms(payload["end_ms"]),
        min=_decode_sample(payload.get("min")),
        max=_decode_sample(payload.get("max")),
        sum=payload.get("sum", 0.0),
        area=payload.get("area", 0.0),
        total_ms=payload.get("total_ms", 0),
        count=payload.get("count", 0),
        count_changes=payload.get("count_changes", 0),
        average=payload.get("average"),
    )
    return DayCacheEntry(device_key=payload["device_key"], bucket=bucket)


@lru_cache
def build_default_day_cache(
    name: Optional[str] = None,
    path: Optional[str] = None,
) -> DayCacheTable:
    settings = get_settings()
    table_name = settings.table_name if name is None else name
    table_path = settings.table_persistence_path if path is None else path
    persistence = Path(table_path) if table_path else None
    return DayCacheTable(name=table_name, persistence_path=persistence)
