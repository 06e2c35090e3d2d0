"""Query facade wiring the history source, caches and aggregation engine."""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from datastore.day_cache import DayCacheTable, build_default_day_cache
from models.records import LastValueEntry, QueryRange, Sample, SensorMessage
from models.timeutil import resolve_timezone, utcnow
from services.aggregator import Aggregator
from services.backfill import DayCacheBackfill
from services.counter import CounterReconstructor
from services.downsampler import Downsampler
from services.ingest import normalize_message
from services.last_value import LastValueCache, build_default_last_value_cache
from services.steps import DAY
from settings import get_settings
from storage.factory import build_default_history_source
from storage.history_source import HistorySource

logger = logging.getLogger(__name__)

AggregateResult = Union[Dict[str, Any], List[Dict[str, Any]], None]


class QueryService:
    """Entry point for last-value, history, aggregate and cumulative queries."""

    def __init__(
        self,
        source: HistorySource,
        table: DayCacheTable,
        last_values: LastValueCache,
        tz: tzinfo,
        clock: Callable[[], datetime] = utcnow,
        workers: int = 4,
        normalize_bucket_sum: bool = False,
        aliases: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.source = source
        self.table = table
        self.last_values = last_values
        self.tz = tz
        self.clock = clock
        self.aliases = dict(aliases or {})

        self.aggregator = Aggregator(source, clock=clock)
        self.downsampler = Downsampler(source, tz, clock=clock, normalize_sum=normalize_bucket_sum)
        self.backfill = DayCacheBackfill(table, self.downsampler, tz, clock=clock, workers=workers)
        self.counter = CounterReconstructor(source, clock=clock)

    def get_last_value(self, device_key: str) -> Optional[LastValueEntry]:
        """Serve from the front cache, falling back to the source on a miss."""
        cached = self.last_values.get(device_key)
        if cached is not None:
            logger.debug("Last value cache hit", extra={"device_key": device_key})
            return cached

        logger.debug("Last value cache miss", extra={"device_key": device_key})
        sample = self.source.latest(device_key)
        if sample is None:
            return None
        self.last_values.update(device_key, sample)
        return self.last_values.get(device_key)

    def get_history(self, device_key: str, query: QueryRange) -> List[Sample]:
        return self.source.history(device_key, query.resolve(self.clock(), keep_open=True))

    def get_aggregate(
        self,
        device_key: str,
        query: QueryRange,
        step: Union[str, int, None] = None,
    ) -> AggregateResult:
        """Full-range stats without a step, buckets with one; ``None`` means no data."""
        projection = query.projection
        if step is None:
            stats = self.aggregator.aggregate(device_key, query, projection)
            return None if stats is None else stats.to_dict(projection)

        if isinstance(step, str) and step.strip().lower() == DAY:
            days = self.backfill.aggregate_by_day(device_key, query)
            if not days:
                return None
            return [day.to_dict(projection, query.output_units) for day in days]

        buckets = self.downsampler.aggregate_by_step(device_key, query, step)
        if buckets is None:
            return None
        return [bucket.to_dict(projection, query.output_units) for bucket in buckets]

    def get_cumulative(self, device_key: str, query: QueryRange) -> Dict[str, Any]:
        return self.counter.accumulate(device_key, query).to_dict()

    def record(self, message: SensorMessage) -> Tuple[str, Sample]:
        """Persist an incoming reading and offer it to the last-value cache."""
        device_key, sample = normalize_message(message, self.clock(), self.aliases)
        self.source.append(device_key, sample)
        self.last_values.update(device_key, sample)
        return device_key, sample

    def shutdown(self) -> None:
        self.backfill.shutdown()


@lru_cache
def build_default_query_service(
    workers: Optional[int] = None,
) -> QueryService:
    """Factory that wires the query service from settings."""
    settings = get_settings()
    return QueryService(
        source=build_default_history_source(),
        table=build_default_day_cache(),
        last_values=build_default_last_value_cache(),
        tz=resolve_timezone(settings.timezone_name),
        workers=workers or settings.backfill_workers,
        normalize_bucket_sum=settings.normalize_bucket_sum,
        aliases=settings.device_aliases,
    )
