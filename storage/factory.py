from __future__ import annotations

from functools import lru_cache

from settings import get_settings
from storage.history_source import HistorySource
from storage.memory_history import build_default_memory_source
from storage.sqlite_history import build_default_sqlite_source


@lru_cache
def build_default_history_source() -> HistorySource:
    """Pick the configured history backend."""
    if get_settings().history_backend == "sqlite":
        return build_default_sqlite_source()
    return build_default_memory_source()
