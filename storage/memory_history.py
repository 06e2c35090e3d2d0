from __future__ import annotations

import bisect
import json
import logging
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, Iterator, List, Optional
from urllib.parse import quote, unquote

from models.errors import NotFoundError
from models.records import Order, QueryRange, Sample
from models.timeutil import from_ms, to_ms
from settings import get_settings
from storage.history_source import HistorySource

logger = logging.getLogger(__name__)

_SUFFIX = ".jsonl"


class _Series:
    """Samples of one device kept sorted by timestamp."""

    __slots__ = ("stamps", "samples")

    def __init__(self) -> None:
        self.stamps: List[int] = []
        self.samples: List[Sample] = []

    def insert(self, sample: Sample) -> None:
        stamp = to_ms(sample.timestamp)
        index = bisect.bisect_right(self.stamps, stamp)
        self.stamps.insert(index, stamp)
        self.samples.insert(index, sample)

    def window(self, query: QueryRange) -> List[Sample]:
        lo = 0 if query.date_min is None else bisect.bisect_left(self.stamps, to_ms(query.date_min))
        hi = (
            len(self.stamps)
            if query.date_max is None
            else bisect.bisect_left(self.stamps, to_ms(query.date_max))
        )
        selected = self.samples[lo:hi]
        if query.order is Order.descending:
            selected.reverse()
        if query.limit is not None:
            selected = selected[: query.limit]
        return selected


class MemoryHistorySource(HistorySource):
    """In-process history store with optional JSON-lines persistence per device."""

    def __init__(self, name: str = "history", root_path: Optional[Path] = None) -> None:
        self.name = name
        self.root_path = root_path
        self._series: Dict[str, _Series] = {}
        self._lock = Lock()
        if root_path:
            root_path.mkdir(parents=True, exist_ok=True)
            self._load_existing()

    def has_device(self, device_key: str) -> bool:
        with self._lock:
            return device_key in self._series

    def devices(self) -> List[str]:
        with self._lock:
            return sorted(self._series)

    def _iter_samples(self, device_key: str, query: QueryRange) -> Iterator[Sample]:
        with self._lock:
            series = self._series.get(device_key)
            if series is None:
                raise NotFoundError(device_key)
            selected = series.window(query)
        yield from selected

    def _latest(self, device_key: str) -> Optional[Sample]:
        with self._lock:
            series = self._series.get(device_key)
            if series is None:
                raise NotFoundError(device_key)
            return series.samples[-1] if series.samples else None

    def _append(self, device_key: str, sample: Sample) -> None:
        with self._lock:
            series = self._series.setdefault(device_key, _Series())
            series.insert(sample)
            if self.root_path:
                path = self._path_for(device_key)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(_encode(sample)) + "\n")

    def _path_for(self, device_key: str) -> Path:
        assert self.root_path is not None
        return self.root_path / (quote(device_key, safe="") + _SUFFIX)

    def _load_existing(self) -> None:
        assert self.root_path is not None
        for path in sorted(self.root_path.glob(f"*{_SUFFIX}")):
            device_key = unquote(path.name[: -len(_SUFFIX)])
            series = self._series.setdefault(device_key, _Series())
            for line in path.read_text(encoding="utf-8").splitlines():
                if not line.strip():
                    continue
                try:
                    series.insert(_decode(json.loads(line)))
                except (ValueError, KeyError, TypeError) as exc:
                    logger.warning(
                        "Skipping unreadable persisted sample",
                        extra={"device_key": device_key, "reason": str(exc)},
                    )


def _encode(sample: Sample) -> dict:
    payload = {"t": to_ms(sample.timestamp), "v": sample.value}
    if sample.units is not None:
        payload["u"] = sample.units
    return payload


def _decode(payload: dict) -> Sample:
    return Sample(value=payload["v"], timestamp=from_ms(int(payload["t"])), units=payload.get("u"))


@lru_cache
def build_default_memory_source(
    name: Optional[str] = None,
    root_path: Optional[str] = None,
) -> MemoryHistorySource:
    settings = get_settings()
    source_root = settings.history_root_path if root_path is None else root_path
    path = Path(source_root) if source_root else None
    return MemoryHistorySource(name=name or "history", root_path=path)
