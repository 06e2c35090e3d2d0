"""Error taxonomy for history queries."""

from __future__ import annotations


class HistoryError(Exception):
    """Base exception for history storage and aggregation failures."""


class NotFoundError(HistoryError):
    """The requested device key is unknown to the history source."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Device key {key!r} not found.")
        self.key = key


class SourceError(HistoryError):
    """I/O failure inside a history source; aborts the current query."""


class CachePersistError(HistoryError):
    """Writing a day-cache entry failed."""


class DuplicateKeyError(CachePersistError):
    """A day-cache entry already exists for this device and day."""
