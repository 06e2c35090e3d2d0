"""Process-wide cache of the most recent value per device key."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict, List, Optional

from models.records import LastValueEntry, Sample

logger = logging.getLogger(__name__)


class LastValueCache:
    """Keeps the newest sample per device key.

    An update only replaces the stored entry when its timestamp is not older,
    so reordered deliveries cannot roll a device back. The read-compare-write
    takes no lock: two updates racing on the same key may let the older one
    land last, until the next newer update replaces it.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, LastValueEntry] = {}

    def update(self, device_key: str, sample: Sample) -> bool:
        """Offer ``sample``; return whether it replaced the stored entry."""
        current = self._entries.get(device_key)
        if current is not None and current.timestamp > sample.timestamp:
            logger.debug("Discarding stale last value", extra={"device_key": device_key})
            return False
        self._entries[device_key] = LastValueEntry.from_sample(device_key, sample)
        return True

    def get(self, device_key: str) -> Optional[LastValueEntry]:
        return self._entries.get(device_key)

    def keys(self) -> List[str]:
        return sorted(self._entries)

    def clear(self) -> None:
        self._entries.clear()


@lru_cache
def build_default_last_value_cache() -> LastValueCache:
    return LastValueCache()
