from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional


_BACKEND_ENV = "HISTORY_BACKEND"
_HISTORY_ROOT_ENV = "HISTORY_ROOT_PATH"
_SQLITE_PATH_ENV = "HISTORY_SQLITE_PATH"
_TABLE_NAME_ENV = "DAY_CACHE_TABLE_NAME"
_TABLE_PATH_ENV = "DAY_CACHE_PERSISTENCE_PATH"
_WORKER_COUNT_ENV = "BACKFILL_WORKERS"
_TIMEZONE_ENV = "HISTORY_TIMEZONE"
_ALIASES_ENV = "DEVICE_ALIASES"
_NORMALIZE_SUM_ENV = "NORMALIZE_BUCKET_SUM"
_LOG_LEVEL_ENV = "LOG_LEVEL"

_BACKENDS = ("memory", "sqlite")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    history_backend: str
    history_root_path: Optional[str]
    sqlite_path: str
    table_name: str
    table_persistence_path: Optional[str]
    backfill_workers: int
    timezone_name: Optional[str]
    normalize_bucket_sum: bool
    log_level: str
    device_aliases: Dict[str, str] = field(default_factory=dict)


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_worker_count(default: int) -> int:
    value = os.getenv(_WORKER_COUNT_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in _TRUE_VALUES:
        return True
    if candidate in _FALSE_VALUES:
        return False
    return default


def _read_backend(default: str) -> str:
    candidate = _read_str_env(_BACKEND_ENV, default).lower()
    return candidate if candidate in _BACKENDS else default


def _read_aliases() -> Dict[str, str]:
    value = os.getenv(_ALIASES_ENV)
    if not value:
        return {}
    aliases: Dict[str, str] = {}
    for pair in value.split(","):
        alias, sep, device = pair.partition("=")
        if not sep or not alias.strip() or not device.strip():
            continue
        aliases[alias.strip()] = device.strip()
    return aliases


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        history_backend=_read_backend("memory"),
        history_root_path=_read_optional_env(_HISTORY_ROOT_ENV, "./tmp/history"),
        sqlite_path=_read_str_env(_SQLITE_PATH_ENV, "./tmp/history.sqlite3"),
        table_name=_read_str_env(_TABLE_NAME_ENV, "day_cache"),
        table_persistence_path=_read_optional_env(_TABLE_PATH_ENV, "./tmp/day_cache.json"),
        backfill_workers=_read_worker_count(4),
        timezone_name=_read_optional_env(_TIMEZONE_ENV, None),
        normalize_bucket_sum=_read_bool_env(_NORMALIZE_SUM_ENV, False),
        log_level=_read_log_level("INFO"),
        device_aliases=_read_aliases(),
    )
