"""History source contract consumed by the aggregation engine.

A source streams the samples of one device key into a pair of fold
callbacks. The accumulator is owned by the caller; the source never looks
inside it, so the same ``fetch`` serves every aggregate.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Iterator, List, Optional, TypeVar

from models.errors import HistoryError, SourceError
from models.records import QueryRange, Sample

A = TypeVar("A")

OnSample = Callable[[A, Sample], None]
OnComplete = Callable[[A], None]


def _noop_complete(_accumulator: object) -> None:
    return None


class HistorySource(ABC):
    """Base class for history adapters.

    Subclasses provide ordered iteration and point lookups; ``fetch`` turns
    that iteration into the fold contract and normalizes adapter failures
    into ``SourceError``.
    """

    def fetch(
        self,
        device_key: str,
        query: QueryRange,
        accumulator: A,
        on_sample: OnSample,
        on_complete: OnComplete = _noop_complete,
    ) -> A:
        """Stream samples into ``on_sample`` then call ``on_complete`` exactly once."""
        rows = self._iter_samples(device_key, query)
        while True:
            # Only adapter failures become SourceError; fold errors propagate as-is.
            try:
                sample = next(rows)
            except StopIteration:
                break
            except HistoryError:
                raise
            except Exception as exc:
                raise SourceError(f"History read failed for {device_key!r}: {exc}") from exc
            on_sample(accumulator, sample)
        on_complete(accumulator)
        return accumulator

    def history(self, device_key: str, query: QueryRange) -> List[Sample]:
        """Return the raw samples of ``query`` as a list."""
        return self.fetch(device_key, query, [], _append_sample)

    def latest(self, device_key: str) -> Optional[Sample]:
        """Most recent sample for ``device_key``; ``NotFoundError`` if unknown."""
        try:
            return self._latest(device_key)
        except HistoryError:
            raise
        except Exception as exc:
            raise SourceError(f"Latest lookup failed for {device_key!r}: {exc}") from exc

    def append(self, device_key: str, sample: Sample) -> None:
        try:
            self._append(device_key, sample)
        except HistoryError:
            raise
        except Exception as exc:
            raise SourceError(f"History write failed for {device_key!r}: {exc}") from exc

    @abstractmethod
    def has_device(self, device_key: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def _iter_samples(self, device_key: str, query: QueryRange) -> Iterator[Sample]:
        """Yield samples inside ``[date_min, date_max)`` in ``query.order``, capped by ``limit``."""
        raise NotImplementedError

    @abstractmethod
    def _latest(self, device_key: str) -> Optional[Sample]:
        raise NotImplementedError

    @abstractmethod
    def _append(self, device_key: str, sample: Sample) -> None:
        raise NotImplementedError


def _append_sample(samples: List[Sample], sample: Sample) -> None:
    samples.append(sample)
