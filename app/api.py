"""HTTP route definitions for the service."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from fastapi.concurrency import run_in_threadpool

from app.schemas import BatchRequest, LastValue, SampleIn, SampleRecorded
from models.errors import NotFoundError, SourceError
from models.records import LastValueEntry, Order, QueryRange, SensorMessage, parse_projection
from models.timeutil import parse_instant
from services.query import QueryService, build_default_query_service

logger = logging.getLogger(__name__)

router = APIRouter()

BATCH_CONCURRENCY = 8


def get_query_service() -> QueryService:
    return build_default_query_service()


def device_key_from_path(path: str) -> str:
    """Map ``device/type`` to the ``device@type`` key used in storage."""
    device, separator, sensor_type = path.rpartition("/")
    if separator and device and sensor_type:
        return f"{device}@{sensor_type}"
    return path


def get_query_range(
    date_min: Optional[str] = Query(default=None, description="ISO-8601 or epoch milliseconds."),
    date_max: Optional[str] = Query(default=None, description="ISO-8601 or epoch milliseconds."),
    limit: Optional[int] = Query(default=None),
    order: Order = Query(default=Order.ascending),
    units: Optional[str] = Query(default=None, description="Expected output units."),
    fields: Optional[str] = Query(default=None, description="Comma-separated projection."),
) -> QueryRange:
    try:
        return QueryRange(
            date_min=parse_instant(date_min) if date_min else None,
            date_max=parse_instant(date_max) if date_max else None,
            limit=limit,
            order=order,
            output_units=units or None,
            projection=parse_projection(fields.split(",")) if fields else None,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc


@contextmanager
def translate_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except SourceError as exc:
        logger.error("History source failure", extra={"reason": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="History source failure.",
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc


def _require_last(device_key: str, entry: Optional[LastValueEntry]) -> LastValueEntry:
    if entry is None:
        raise NotFoundError(device_key)
    return entry


@router.get(
    "/last/{key:path}",
    response_model=LastValue,
    summary="Most recent value of a device.",
)
def get_last(
    key: str,
    service: QueryService = Depends(get_query_service),
) -> LastValue:
    device_key = device_key_from_path(key)
    with translate_errors():
        entry = _require_last(device_key, service.get_last_value(device_key))
    return LastValue(**entry.to_dict())


@router.get(
    "/history/{key:path}",
    summary="Raw samples of a device within a window.",
)
def get_history(
    key: str,
    query: QueryRange = Depends(get_query_range),
    service: QueryService = Depends(get_query_service),
) -> List[Dict[str, Any]]:
    with translate_errors():
        samples = service.get_history(device_key_from_path(key), query)
    return [sample.to_dict() for sample in samples]


@router.get(
    "/aggregate/{key:path}",
    summary="Whole-window statistics, or buckets when a step is given.",
)
def get_aggregate(
    key: str,
    step: Optional[str] = Query(default=None, description="Bucket width in milliseconds or 'day'."),
    query: QueryRange = Depends(get_query_range),
    service: QueryService = Depends(get_query_service),
) -> Any:
    with translate_errors():
        return service.get_aggregate(device_key_from_path(key), query, step)


@router.get(
    "/cumulative/{key:path}",
    summary="Reconstructed counter total with reset detection.",
)
def get_cumulative(
    key: str,
    query: QueryRange = Depends(get_query_range),
    service: QueryService = Depends(get_query_service),
) -> Dict[str, Any]:
    with translate_errors():
        return service.get_cumulative(device_key_from_path(key), query)


@router.post(
    "/samples",
    status_code=status.HTTP_201_CREATED,
    response_model=SampleRecorded,
    summary="Record a sensor reading.",
)
def post_sample(
    payload: SampleIn,
    service: QueryService = Depends(get_query_service),
) -> SampleRecorded:
    message = SensorMessage(
        device=payload.device,
        current=payload.current,
        type=payload.type,
        units=payload.units,
        date=payload.date,
    )
    with translate_errors():
        device_key, sample = service.record(message)
    return SampleRecorded(
        device_key=device_key,
        value=sample.value,
        timestamp=sample.timestamp,
        units=sample.units,
    )


async def _gather_keys(keys: List[str], func: Callable[[str], Any]) -> Dict[str, Any]:
    semaphore = asyncio.Semaphore(BATCH_CONCURRENCY)

    async def run(key: str) -> Any:
        async with semaphore:
            return await run_in_threadpool(func, device_key_from_path(key))

    with translate_errors():
        values = await asyncio.gather(*(run(key) for key in keys))
    return dict(zip(keys, values))


def _not_modified(since: Optional[str], newest: datetime) -> bool:
    if not since:
        return False
    try:
        parsed = parsedate_to_datetime(since)
    except (TypeError, ValueError):
        return False
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed >= newest.replace(microsecond=0)


@router.post(
    "/last",
    summary="Most recent values of several devices.",
)
async def post_last(
    payload: BatchRequest,
    response: Response,
    if_modified_since: Optional[str] = Header(default=None),
    service: QueryService = Depends(get_query_service),
) -> Any:
    def fetch(device_key: str) -> LastValueEntry:
        return _require_last(device_key, service.get_last_value(device_key))

    entries = await _gather_keys(payload.keys, fetch)
    newest = max(entry.timestamp for entry in entries.values())
    if _not_modified(if_modified_since, newest):
        return Response(status_code=status.HTTP_304_NOT_MODIFIED)

    response.headers["Last-Modified"] = format_datetime(newest.astimezone(timezone.utc), usegmt=True)
    return {key: entry.to_dict() for key, entry in entries.items()}


@router.post(
    "/history",
    summary="Raw samples of several devices within the same window.",
)
async def post_history(
    payload: BatchRequest,
    query: QueryRange = Depends(get_query_range),
    service: QueryService = Depends(get_query_service),
) -> Dict[str, Any]:
    def fetch(device_key: str) -> List[Dict[str, Any]]:
        return [sample.to_dict() for sample in service.get_history(device_key, query)]

    return await _gather_keys(payload.keys, fetch)


@router.post(
    "/aggregate",
    summary="Statistics of several devices over the same window.",
)
async def post_aggregate(
    payload: BatchRequest,
    step: Optional[str] = Query(default=None, description="Bucket width in milliseconds or 'day'."),
    query: QueryRange = Depends(get_query_range),
    service: QueryService = Depends(get_query_service),
) -> Dict[str, Any]:
    def fetch(device_key: str) -> Any:
        return service.get_aggregate(device_key, query, step)

    return await _gather_keys(payload.keys, fetch)


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
