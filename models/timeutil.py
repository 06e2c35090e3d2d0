"""Instant parsing and epoch-millisecond helpers."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ONE_MS = timedelta(milliseconds=1)

_EPOCH_MS_PATTERN = re.compile(r"^-?[0-9]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_ms(value: datetime) -> int:
    return (ensure_aware(value) - EPOCH) // ONE_MS


def from_ms(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=value)


def truncate_ms(value: datetime) -> datetime:
    """Drop sub-millisecond precision; stored instants are whole epoch milliseconds."""
    return value.replace(microsecond=value.microsecond - value.microsecond % 1000)


def parse_instant(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch milliseconds into an aware UTC datetime."""
    if isinstance(value, datetime):
        return ensure_aware(value).astimezone(timezone.utc)
    if isinstance(value, bool):
        raise ValueError("Invalid timestamp format")
    if isinstance(value, (int, float)):
        return from_ms(int(value))

    candidate = str(value).strip()
    if not candidate:
        raise ValueError("Timestamp is empty.")

    if _EPOCH_MS_PATTERN.match(candidate):
        return from_ms(int(candidate))

    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise ValueError("Invalid timestamp format") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    return parsed.astimezone(timezone.utc)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Return the named IANA zone, or the host's local zone when unset."""
    if name:
        try:
            return ZoneInfo(name)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown timezone {name!r}") from exc
    local = datetime.now().astimezone().tzinfo
    return local if local is not None else timezone.utc
