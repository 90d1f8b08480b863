"""Date range helpers shared by the queue, the orchestrator and the rollover.

WHAT:
    - DateRange: half-open [start, end) calendar range
    - split_range: fixed-size contiguous chunks for backfills
    - week_segment / month_bucket: rollover bucket boundaries
    - contiguous_ranges: collapse a set of days into runs

WHY:
    Backfill chunking and rollover bucketing must agree on boundaries, and
    half-open ranges make "contiguous and non-overlapping" checkable with a
    simple equality (chunk.end == next.start).
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Iterator, List, Tuple


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    return utcnow().date()


@dataclass(frozen=True)
class DateRange:
    """Half-open calendar range: start is included, end is excluded."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Range end {self.end} precedes start {self.start}")

    @classmethod
    def inclusive(cls, since: date, until: date) -> "DateRange":
        """Build from the API's inclusive since/until pair."""
        return cls(since, until + timedelta(days=1))

    @property
    def since(self) -> date:
        return self.start

    @property
    def until(self) -> date:
        """Last day included in the range (inclusive form used by the API)."""
        return self.end - timedelta(days=1)

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def __contains__(self, day: date) -> bool:
        return self.start <= day < self.end

    def iter_days(self) -> Iterator[date]:
        current = self.start
        while current < self.end:
            yield current
            current += timedelta(days=1)


def split_range(date_range: DateRange, chunk_days: int) -> List[DateRange]:
    """Split a range into fixed-size, contiguous, non-overlapping chunks.

    The final chunk is truncated so the union equals the input exactly.

    Args:
        date_range: Range to split
        chunk_days: Chunk size in days (must be positive)

    Returns:
        Chunks in ascending order
    """
    if chunk_days <= 0:
        raise ValueError("chunk_days must be positive")

    chunks = []
    cursor = date_range.start
    while cursor < date_range.end:
        chunk_end = min(cursor + timedelta(days=chunk_days), date_range.end)
        chunks.append(DateRange(cursor, chunk_end))
        cursor = chunk_end
    return chunks


def add_months(day: date, months: int) -> date:
    """Shift by calendar months, clamping to the last day of the target month."""
    month_index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def month_bucket(day: date) -> Tuple[date, date]:
    """Inclusive (first, last) day of the calendar month containing `day`."""
    first = day.replace(day=1)
    last = day.replace(day=calendar.monthrange(day.year, day.month)[1])
    return first, last


def week_segment(day: date) -> Tuple[date, date]:
    """Inclusive (start, end) of the Monday-based week containing `day`,
    clipped to the calendar month so weekly rows roll cleanly into months.
    """
    monday = day - timedelta(days=day.weekday())
    sunday = monday + timedelta(days=6)
    first, last = month_bucket(day)
    return max(monday, first), min(sunday, last)


def contiguous_ranges(days: Iterable[date]) -> List[DateRange]:
    """Collapse days into maximal runs of consecutive dates."""
    ordered = sorted(set(days))
    ranges: List[DateRange] = []
    if not ordered:
        return ranges

    run_start = previous = ordered[0]
    for day in ordered[1:]:
        if day - previous != timedelta(days=1):
            ranges.append(DateRange.inclusive(run_start, previous))
            run_start = day
        previous = day
    ranges.append(DateRange.inclusive(run_start, previous))
    return ranges
