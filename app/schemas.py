"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, Field


class SampleIn(BaseModel):
    """Reading posted by a sensor gateway."""

    device: str = Field(..., min_length=1, description="Device name, before aliasing.")
    current: Union[bool, float, str] = Field(..., description="Raw value; coerced on ingestion.")
    type: Optional[str] = Field(default=None, description="Sensor type appended as device@type.")
    units: Optional[str] = None
    date: Optional[Union[int, str]] = Field(
        default=None, description="Epoch milliseconds or ISO-8601; defaults to now."
    )


class SampleRecorded(BaseModel):
    """Normalized sample as stored."""

    device_key: str
    value: Union[bool, float, str]
    timestamp: datetime
    units: Optional[str] = None


class LastValue(BaseModel):
    device_key: str
    value: Union[bool, float, str]
    timestamp: datetime
    units: Optional[str] = None


class BatchRequest(BaseModel):
    """Several device keys queried with the same options."""

    keys: List[str] = Field(..., min_length=1)
