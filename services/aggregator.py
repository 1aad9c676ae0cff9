"""Aggregation logic for stored sensor readings."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from models.records import StoredReading

# (max window hours, bucket minutes); windows beyond the last entry use hourly buckets.
_BUCKET_SCHEDULE: Tuple[Tuple[float, int], ...] = (
    (0.25, 0),
    (0.5, 1),
    (1.0, 1),
    (6.0, 5),
    (24.0, 15),
)
_WIDEST_BUCKET_MINUTES = 60
_STATUS_SEPARATOR = ","


def select_bucket_minutes(hours: float) -> int:
    """Pick a chart resolution for a window; ``0`` means raw rows."""
    for max_hours, minutes in _BUCKET_SCHEDULE:
        if hours <= max_hours:
            return minutes
    return _WIDEST_BUCKET_MINUTES


@dataclass(frozen=True)
class SeriesPoint:
    timestamp: datetime
    value: Optional[float]
    status: Optional[str]


@dataclass
class SeriesStatistics:
    """Unbucketed summary of a window of readings."""

    count: int = 0
    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None


@dataclass
class _Bucket:
    total: float = 0.0
    numeric: int = 0
    statuses: set[str] | None = None

    def add(self, reading: StoredReading) -> None:
        if reading.value is not None:
            self.total += reading.value
            self.numeric += 1
        if reading.status:
            if self.statuses is None:
                self.statuses = set()
            self.statuses.add(reading.status)


class Aggregator:
    """Pure aggregation component that can be unit tested without a database."""

    def summarize(self, readings: Iterable[StoredReading]) -> SeriesStatistics:
        stats = SeriesStatistics()
        total = 0.0
        numeric = 0

        for reading in readings:
            stats.count += 1
            value = reading.value
            if value is None:
                continue
            numeric += 1
            total += value
            if stats.min is None or value < stats.min:
                stats.min = value
            if stats.max is None or value > stats.max:
                stats.max = value

        if numeric:
            stats.avg = total / numeric

        return stats

    def bucketize(
        self, readings: Iterable[StoredReading], bucket_minutes: int
    ) -> List[SeriesPoint]:
        """Group readings into fixed-width buckets aligned to the epoch.

        Each bucket is stamped with its floor instant, carries the mean of its
        non-null values and the distinct status labels seen in it. Buckets
        without a single numeric value are dropped. ``bucket_minutes == 0``
        returns the rows unchanged, ordered by timestamp.
        """
        if bucket_minutes < 0:
            raise ValueError("bucket_minutes must be non-negative.")

        if bucket_minutes == 0:
            ordered = sorted(readings, key=lambda reading: reading.timestamp)
            return [
                SeriesPoint(timestamp=r.timestamp, value=r.value, status=r.status)
                for r in ordered
            ]

        width = bucket_minutes * 60
        buckets: Dict[int, _Bucket] = {}
        for reading in readings:
            index = math.floor(reading.timestamp.timestamp() / width)
            buckets.setdefault(index, _Bucket()).add(reading)

        points: List[SeriesPoint] = []
        for index in sorted(buckets):
            bucket = buckets[index]
            if not bucket.numeric:
                continue
            status = (
                _STATUS_SEPARATOR.join(sorted(bucket.statuses))
                if bucket.statuses
                else None
            )
            points.append(
                SeriesPoint(
                    timestamp=datetime.fromtimestamp(index * width, tz=timezone.utc),
                    value=bucket.total / bucket.numeric,
                    status=status,
                )
            )
        return points
