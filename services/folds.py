"""Helpers shared by the fold states of every aggregate."""

from __future__ import annotations

import logging
import math
from typing import Optional

from models.records import Sample, SampleValue

logger = logging.getLogger(__name__)


def numeric_value(value: SampleValue) -> Optional[float]:
    """Return ``value`` as a float, or ``None`` for values with no numeric reading."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return None if math.isnan(number) else number
    return None


class UnitsCheck:
    """Warns once per query when samples stop matching the requested units."""

    __slots__ = ("device_key", "expected", "mismatches")

    def __init__(self, device_key: str, expected: Optional[str]) -> None:
        self.device_key = device_key
        self.expected = expected
        self.mismatches = 0

    def observe(self, sample: Sample) -> None:
        if not self.expected or sample.units == self.expected:
            return
        self.mismatches += 1
        if self.mismatches == 1:
            logger.warning(
                "Sample units differ from requested output units",
                extra={
                    "device_key": self.device_key,
                    "reason": "unit_mismatch",
                    "units": sample.units,
                    "expected_units": self.expected,
                },
            )


def log_skipped(device_key: str, sample: Sample) -> None:
    logger.debug(
        "Skipping non-numeric sample",
        extra={"device_key": device_key, "reason": type(sample.value).__name__},
    )
