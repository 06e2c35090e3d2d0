from __future__ import annotations

import logging
import time
from datetime import date, datetime
from logging.config import dictConfig
from typing import Any, Dict, Iterable, Sequence

from settings import get_settings

CONTEXT_KEYS = (
    "device_key",
    "day",
    "reason",
    "units",
    "expected_units",
    "row_count",
    "bucket_count",
    "cached_days",
    "missing_days",
    "elapsed_ms",
)

# Chatty third-party loggers capped at this level.
_QUIET_LOGGERS = ("httpx", "httpcore")

_configured = False


def _render(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, float):
        return f"{value:.3f}".rstrip("0").rstrip(".")
    text = str(value)
    if not text or any(char.isspace() for char in text):
        return repr(text)
    return text


class ContextualFormatter(logging.Formatter):
    """Appends whitelisted ``extra=`` attributes as ``key=value`` pairs, timestamps in UTC."""

    converter = time.gmtime

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: str = "%",
        extra_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)
        self._extra_keys: Sequence[str] = tuple(extra_keys or CONTEXT_KEYS)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        pairs: list[str] = []
        for key in self._extra_keys:
            value = getattr(record, key, None)
            if value is not None:
                pairs.append(f"{key}={_render(value)}")
        return f"{message} | {' '.join(pairs)}" if pairs else message


def build_logging_config(level: str | int) -> Dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "contextual": {
                "()": "logging_config.ContextualFormatter",
                "fmt": "%(asctime)sZ | %(levelname)s | %(name)s | %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
                "extra_keys": list(CONTEXT_KEYS),
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "contextual",
            }
        },
        "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
        "root": {"handlers": ["console"], "level": level},
    }


def configure_logging(level: str | int | None = None) -> None:
    """Install the contextual console handler once per process."""
    global _configured
    if _configured:
        return

    dictConfig(build_logging_config(level if level is not None else get_settings().log_level))
    _configured = True
