"""
Read-side queries over the status store.

Counts per state, time-bucketed trends for charting and paged listing.
Nothing here writes to the store.
"""

from __future__ import annotations

import enum
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional

from app.models.records import FileStatus
from app.models.schemas import FilePage, StatusSummary, TrendPoint
from app.utils.helpers import ensure_utc, utc_now

from ..store import StatusStore


class TrendBucket(str, enum.Enum):
    """Width of a trend bucket."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> int:
        return {"minute": 60, "hour": 3600, "day": 86400}[self.value]

    def floor(self, moment: datetime) -> datetime:
        """Start of the bucket containing ``moment``."""
        epoch = int(ensure_utc(moment).timestamp())
        return datetime.fromtimestamp(epoch - epoch % self.seconds, tz=timezone.utc)

    def label(self, start: datetime) -> str:
        if self is TrendBucket.DAY:
            return start.strftime("%Y-%m-%d")
        return start.strftime("%Y-%m-%dT%H:%M")


class StatusAggregator:
    """Summary and trend queries for dashboards and the API."""

    def __init__(
        self,
        store: StatusStore,
        *,
        bucket: TrendBucket = TrendBucket.HOUR,
        window: int = 24,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.bucket = TrendBucket(bucket)
        self.window = window
        self.clock = clock

    def summary(self) -> StatusSummary:
        """Counts per state; they always add up to ``total``."""
        counts = self.store.count_by_status()
        return StatusSummary(
            total=sum(counts.values()),
            pending=counts[FileStatus.PENDING],
            processing=counts[FileStatus.PROCESSING],
            success=counts[FileStatus.SUCCESS],
            failed=counts[FileStatus.FAILED],
        )

    def trend(
        self,
        bucket: Optional[TrendBucket | str] = None,
        *,
        window: Optional[int] = None,
    ) -> Iterator[TrendPoint]:
        """
        Arrivals and completions per bucket, oldest first.

        Covers ``window`` consecutive buckets ending with the one containing
        now. ``pending`` counts records created in the bucket; ``success``
        and ``failed`` count records whose ``processed_at`` falls in it.
        The store is queried when iteration starts, so every call gives a
        fresh sequence.
        """
        bucket = TrendBucket(bucket) if bucket is not None else self.bucket
        window = self.window if window is None else window
        if window < 1:
            raise ValueError("window must be >= 1")
        return self._iter_trend(bucket, window)

    def _iter_trend(self, bucket: TrendBucket, window: int) -> Iterator[TrendPoint]:
        width = timedelta(seconds=bucket.seconds)
        last = bucket.floor(self.clock())
        first = last - width * (window - 1)

        arrivals: Counter = Counter()
        completions: dict[FileStatus, Counter] = {
            FileStatus.SUCCESS: Counter(),
            FileStatus.FAILED: Counter(),
        }
        for created_at, processed_at, status in self.store.activity_since(first):
            if created_at >= first:
                arrivals[bucket.floor(created_at)] += 1
            if processed_at is not None and processed_at >= first and status in completions:
                completions[status][bucket.floor(processed_at)] += 1

        for index in range(window):
            start = first + width * index
            yield TrendPoint(
                time=bucket.label(start),
                pending=arrivals[start],
                success=completions[FileStatus.SUCCESS][start],
                failed=completions[FileStatus.FAILED][start],
            )

    def list_files(self, page: int = 1, page_size: int = 25) -> FilePage:
        """Records ordered by id; a page past the end clamps to the last one."""
        return self.store.list_page(page, page_size)
