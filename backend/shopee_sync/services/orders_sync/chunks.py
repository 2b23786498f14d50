"""Time-window planning for month and date-range syncs.

All bounds are inclusive epoch seconds in UTC. A month runs from the 1st at
00:00:00 to its last day at 23:59:59; it is walked newest-first in windows of
at most :data:`CHUNK_SIZE_SECONDS`, where each window ends one second before
the previous one starts. Date ranges are split the same way up front so a
caller can address a window by index.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple


CHUNK_SIZE_DAYS = 7
CHUNK_SIZE_SECONDS = CHUNK_SIZE_DAYS * 24 * 60 * 60
AVAILABLE_MONTHS_COUNT = 12

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class InvalidSyncInput(ValueError):
    """Malformed month/date/chunk parameters; rejected before any remote call."""


@dataclass(frozen=True)
class TimeWindow:
    time_from: int
    time_to: int

    @property
    def seconds(self) -> int:
        return self.time_to - self.time_from + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time_from": self.time_from,
            "time_to": self.time_to,
            "from": epoch_to_iso(self.time_from),
            "to": epoch_to_iso(self.time_to),
        }


def epoch_to_iso(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _epoch(dt: datetime) -> int:
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


# ----------------------------------------------------------------------
# Months
# ----------------------------------------------------------------------


def parse_month(month: Optional[str]) -> Tuple[int, int]:
    match = _MONTH_RE.match(month or "")
    if not match:
        raise InvalidSyncInput(f"Invalid month format: {month!r}. Use YYYY-MM")
    year, month_no = int(match.group(1)), int(match.group(2))
    if not 1 <= month_no <= 12:
        raise InvalidSyncInput(f"Invalid month: {month!r}")
    return year, month_no


def month_bounds(month: str) -> TimeWindow:
    year, month_no = parse_month(month)
    last_day = calendar.monthrange(year, month_no)[1]
    start = _epoch(datetime(year, month_no, 1, 0, 0, 0))
    end = _epoch(datetime(year, month_no, last_day, 23, 59, 59))
    return TimeWindow(start, end)


def month_chunk(month: str, chunk_end: Optional[int] = None) -> TimeWindow:
    """Return the window of ``month`` that ends at ``chunk_end`` (default: month end)."""

    bounds = month_bounds(month)
    end = bounds.time_to if chunk_end is None else int(chunk_end)
    if end < bounds.time_from or end > bounds.time_to:
        raise InvalidSyncInput(f"chunk_end {chunk_end} is outside {month}")
    start = max(end - CHUNK_SIZE_SECONDS + 1, bounds.time_from)
    return TimeWindow(start, end)


def next_month_chunk_end(month: str, window: TimeWindow) -> Optional[int]:
    """End of the window after ``window``, or None once the month start is covered."""

    bounds = month_bounds(month)
    if window.time_from <= bounds.time_from:
        return None
    return window.time_from - 1


def month_windows(month: str) -> List[TimeWindow]:
    windows = [month_chunk(month)]
    while True:
        next_end = next_month_chunk_end(month, windows[-1])
        if next_end is None:
            return windows
        windows.append(month_chunk(month, next_end))


def current_month(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{now.year:04d}-{now.month:02d}"


def available_months(now: Optional[datetime] = None, count: int = AVAILABLE_MONTHS_COUNT) -> List[str]:
    """The current month and the ``count - 1`` before it, newest first."""

    now = now or datetime.now(timezone.utc)
    year, month_no = now.year, now.month
    months = []
    for _ in range(count):
        months.append(f"{year:04d}-{month_no:02d}")
        month_no -= 1
        if month_no == 0:
            year, month_no = year - 1, 12
    return months


# ----------------------------------------------------------------------
# Date ranges
# ----------------------------------------------------------------------


def parse_date(value: Optional[str], field: str = "date") -> date:
    if not value or not _DATE_RE.match(value):
        raise InvalidSyncInput(f"Invalid {field}: {value!r}. Use YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise InvalidSyncInput(f"Invalid {field}: {value!r}") from exc


def date_range_bounds(start_date: str, end_date: str) -> TimeWindow:
    start = parse_date(start_date, "start_date")
    end = parse_date(end_date, "end_date")
    if start > end:
        raise InvalidSyncInput(f"start_date {start_date} is after end_date {end_date}")
    time_from = _epoch(datetime(start.year, start.month, start.day))
    end_next = end + timedelta(days=1)
    time_to = _epoch(datetime(end_next.year, end_next.month, end_next.day)) - 1
    return TimeWindow(time_from, time_to)


def split_windows(bounds: TimeWindow, chunk_seconds: int = CHUNK_SIZE_SECONDS) -> List[TimeWindow]:
    """Split ``bounds`` into contiguous windows, newest first."""

    windows: List[TimeWindow] = []
    end = bounds.time_to
    while end >= bounds.time_from:
        start = max(end - chunk_seconds + 1, bounds.time_from)
        windows.append(TimeWindow(start, end))
        end = start - 1
    return windows


def date_range_windows(start_date: str, end_date: str) -> List[TimeWindow]:
    return split_windows(date_range_bounds(start_date, end_date))


def make_range_id(start_date: str, end_date: str) -> str:
    return f"{start_date}..{end_date}"
