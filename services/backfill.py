"""Day-granularity aggregation backed by a persistent per-day cache."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable, Dict, List, Optional, Tuple

from datastore.day_cache import DayCacheEntry, DayCacheTable
from models.errors import CachePersistError, DuplicateKeyError
from models.records import Bucket, QueryRange
from models.timeutil import ONE_MS, from_ms, to_ms, utcnow
from services.downsampler import Downsampler
from services.steps import CalendarDayStep, local_day, local_midnight

logger = logging.getLogger(__name__)


class DayCacheBackfill:
    """Serves per-day buckets from the cache and computes the missing days concurrently.

    Today is never read from nor written to the cache since it is still
    accumulating samples. Results are reassembled in day order whatever the
    completion order of the workers.
    """

    def __init__(
        self,
        table: DayCacheTable,
        downsampler: Downsampler,
        tz: tzinfo,
        clock: Callable[[], datetime] = utcnow,
        workers: int = 4,
    ) -> None:
        self.table = table
        self.downsampler = downsampler
        self.tz = tz
        self.clock = clock
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="day-backfill")

    def shutdown(self) -> None:
        """Clean up executor resources during application shutdown."""
        self.executor.shutdown(wait=False, cancel_futures=True)

    def aggregate_by_day(self, device_key: str, query: QueryRange) -> List[Bucket]:
        started = time.perf_counter()
        now = self.clock()
        query = query.resolve(now).ascending()
        assert query.date_min is not None and query.date_max is not None

        today = local_day(now, self.tz)
        first_day = local_day(query.date_min, self.tz)
        last_day = first_day
        if query.date_max > query.date_min:
            last_day = local_day(query.date_max - ONE_MS, self.tz)
        last_day = min(last_day, today)
        if first_day > last_day:
            return []

        days = [first_day + timedelta(days=offset) for offset in range((last_day - first_day).days + 1)]
        cached = self._read_cached(device_key, first_day, last_day, today)

        slots: List[Optional[Bucket]] = [None] * len(days)
        pending: List[Tuple[int, date, Future[Bucket]]] = []
        for index, day in enumerate(days):
            bucket = cached.get(to_ms(local_midnight(day, self.tz))) if day != today else None
            if bucket is not None:
                slots[index] = bucket
                continue
            future = self.executor.submit(self._compute_day, device_key, query, day, now)
            pending.append((index, day, future))

        try:
            for index, day, future in pending:
                bucket = future.result()
                if day < today:
                    self._persist(device_key, bucket, day)
                slots[index] = bucket
        except Exception:
            for _, _, future in pending:
                future.cancel()
            raise

        logger.info(
            "Day aggregation finished",
            extra={
                "device_key": device_key,
                "cached_days": len(days) - len(pending),
                "missing_days": len(pending),
                "elapsed_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return [bucket for bucket in slots if bucket is not None]

    def _read_cached(
        self,
        device_key: str,
        first_day: date,
        last_day: date,
        today: date,
    ) -> Dict[int, Bucket]:
        start = local_midnight(first_day, self.tz)
        end = local_midnight(last_day + timedelta(days=1), self.tz)
        end = min(end, local_midnight(today, self.tz))
        if end <= start:
            return {}
        return {
            to_ms(entry.start_date): entry.bucket
            for entry in self.table.query(device_key, start, end)
        }

    def _compute_day(self, device_key: str, query: QueryRange, day: date, now: datetime) -> Bucket:
        day_start = local_midnight(day, self.tz)
        day_end = local_midnight(day + timedelta(days=1), self.tz)
        window_end = min(day_end, now)

        buckets = None
        if window_end > day_start:
            buckets = self.downsampler.aggregate_by_step(
                device_key,
                query.with_window(day_start, window_end),
                CalendarDayStep(self.tz),
            )
        if buckets:
            return buckets[0]

        empty = Bucket(start_date=from_ms(to_ms(day_start)), end_date=from_ms(to_ms(day_end)))
        empty.finalize()
        return empty

    def _persist(self, device_key: str, bucket: Bucket, day: date) -> None:
        try:
            self.table.put_item(DayCacheEntry(device_key=device_key, bucket=bucket))
        except DuplicateKeyError:
            logger.debug(
                "Day already cached by another writer",
                extra={"device_key": device_key, "day": day},
            )
        except CachePersistError as exc:
            logger.warning(
                "Could not cache computed day",
                extra={"device_key": device_key, "day": day, "reason": str(exc)},
            )
