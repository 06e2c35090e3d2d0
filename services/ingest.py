"""Normalization of raw sensor messages into device keys and samples."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Mapping, Optional, Tuple

from models.records import Sample, SampleValue, SensorMessage
from models.timeutil import parse_instant

_TRUE_CURRENT = re.compile(r"^(on|enabled?|true)$", re.IGNORECASE)
_FALSE_CURRENT = re.compile(r"^(off|disabled?|false)$", re.IGNORECASE)
_NUMBER_CURRENT = re.compile(r"^[+-]?\d+(\.\d+)?$")


def coerce_value(raw: Any) -> SampleValue:
    """Map a transport value to bool, float or string."""
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip()
    if _TRUE_CURRENT.match(text):
        return True
    if _FALSE_CURRENT.match(text):
        return False
    if _NUMBER_CURRENT.match(text):
        return float(text)
    return text


def device_key_for(
    device: str,
    sensor_type: Optional[str] = None,
    aliases: Optional[Mapping[str, str]] = None,
) -> str:
    name = device.strip()
    if aliases and name in aliases:
        name = aliases[name]
    if sensor_type:
        name = f"{name}@{sensor_type.strip()}"
    return name


def normalize_message(
    message: SensorMessage,
    now: datetime,
    aliases: Optional[Mapping[str, str]] = None,
) -> Tuple[str, Sample]:
    """Return the device key and sample carried by ``message``.

    Raises ``ValueError`` when the message has no device, no value or an
    unreadable date.
    """
    if not message.device or not message.device.strip():
        raise ValueError("Message is missing a device name.")
    if message.current is None or (isinstance(message.current, str) and not message.current.strip()):
        raise ValueError("Message is missing a current value.")

    value = coerce_value(message.current)
    timestamp = now if message.date in (None, "") else parse_instant(message.date)
    units = message.units or None
    if isinstance(value, bool):
        units = None

    key = device_key_for(message.device, message.type, aliases)
    return key, Sample(value=value, timestamp=timestamp, units=units)
