"""
Time-range extraction.

Relative expressions are resolved against an injectable clock so the same
question always yields the same range in tests.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from shared.models import TimeGranularity, TimeRange

logger = logging.getLogger(__name__)

_UNITS = r"(hour|day|week|month|quarter|year)s?"

# (pattern, kind). Earlier patterns win.
TIME_PATTERNS: Tuple[Tuple[str, str], ...] = (
    (r"(?:between|from)\s+\d{4}-\d{2}-\d{2}\s+(?:and|to)\s+\d{4}-\d{2}-\d{2}", "absolute_range"),
    (r"\d{4}-\d{2}-\d{2}", "absolute_date"),
    (rf"(?:last|past|previous)\s+(\d+)\s+{_UNITS}", "last_n"),
    (rf"(?:last|past|previous)\s+{_UNITS}", "previous_unit"),
    (rf"this\s+{_UNITS}", "this_unit"),
    (r"q([1-4])(?:\s+(\d{4}))?", "quarter"),
    (r"ytd|year to date", "ytd"),
    (r"mtd|month to date", "mtd"),
    (r"today", "today"),
    (r"yesterday", "yesterday"),
)

_COMPILED = [(re.compile(rf"\b{p}\b", re.IGNORECASE), kind) for p, kind in TIME_PATTERNS]

_GRANULARITY = {
    "hour": TimeGranularity.HOUR,
    "day": TimeGranularity.DAY,
    "week": TimeGranularity.WEEK,
    "month": TimeGranularity.MONTH,
    "quarter": TimeGranularity.QUARTER,
    "year": TimeGranularity.YEAR,
}


def add_months(moment: datetime, months: int) -> datetime:
    """First day of the month `months` away from `moment`'s month."""
    index = moment.year * 12 + (moment.month - 1) + months
    return moment.replace(year=index // 12, month=index % 12 + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def start_of(unit: str, moment: datetime) -> datetime:
    """Start of the calendar `unit` containing `moment`."""
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit == "hour":
        return moment.replace(minute=0, second=0, microsecond=0)
    if unit == "day":
        return midnight
    if unit == "week":
        return midnight - timedelta(days=midnight.weekday())
    if unit == "month":
        return midnight.replace(day=1)
    if unit == "quarter":
        return midnight.replace(month=3 * ((moment.month - 1) // 3) + 1, day=1)
    if unit == "year":
        return midnight.replace(month=1, day=1)
    raise ValueError(f"Unknown time unit: {unit}")


def shift(unit: str, moment: datetime, count: int) -> datetime:
    """Move `moment` by `count` units (months and longer snap to month start)."""
    if unit == "hour":
        return moment + timedelta(hours=count)
    if unit == "day":
        return moment + timedelta(days=count)
    if unit == "week":
        return moment + timedelta(weeks=count)
    if unit == "month":
        return add_months(moment, count)
    if unit == "quarter":
        return add_months(moment, 3 * count)
    if unit == "year":
        return add_months(moment, 12 * count)
    raise ValueError(f"Unknown time unit: {unit}")


class TimeRangeExtractor:
    """
    Resolve the first time expression of a question into a TimeRange.

    Usage:
        extractor = TimeRangeExtractor(clock=lambda: datetime(2024, 3, 15, 12))
        extractor.extract("Top 10 depositors yesterday")  # 2024-03-14 day range
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock

    def extract(self, question: str) -> Optional[TimeRange]:
        for regex, kind in _COMPILED:
            match = regex.search(question)
            if match:
                resolved = self._resolve(kind, match, self.clock())
                logger.debug(f"Time expression '{match.group()}' -> {resolved.describe()}")
                return resolved
        return None

    def _resolve(self, kind: str, match: re.Match, now: datetime) -> TimeRange:
        text = match.group().lower()
        today = start_of("day", now)

        if kind == "absolute_range":
            first, second = re.findall(r"\d{4}-\d{2}-\d{2}", text)
            start = datetime.strptime(first, "%Y-%m-%d")
            end = datetime.strptime(second, "%Y-%m-%d") + timedelta(days=1)
            return TimeRange(start=start, end=end, relative_expression=text, granularity=TimeGranularity.DAY)

        if kind == "absolute_date":
            start = datetime.strptime(text, "%Y-%m-%d")
            return TimeRange(
                start=start, end=start + timedelta(days=1), relative_expression=text,
                granularity=TimeGranularity.DAY,
            )

        if kind == "last_n":
            count, unit = int(match.group(1)), match.group(2).lower()
            start = shift(unit, now, -count) if unit in ("hour", "day", "week") else add_months(
                start_of(unit, now), -count * {"month": 1, "quarter": 3, "year": 12}[unit]
            )
            return TimeRange(start=start, end=now, relative_expression=text, granularity=_GRANULARITY[unit])

        if kind == "previous_unit":
            unit = match.group(1).lower()
            current = start_of(unit, now)
            return TimeRange(
                start=shift(unit, current, -1), end=current, relative_expression=text,
                granularity=_GRANULARITY[unit],
            )

        if kind == "this_unit":
            unit = match.group(1).lower()
            return TimeRange(
                start=start_of(unit, now), end=now, relative_expression=text, granularity=_GRANULARITY[unit],
            )

        if kind == "quarter":
            quarter = int(match.group(1))
            year = int(match.group(2)) if match.group(2) else now.year
            start = datetime(year, 3 * (quarter - 1) + 1, 1)
            return TimeRange(
                start=start, end=add_months(start, 3), relative_expression=text,
                granularity=TimeGranularity.QUARTER,
            )

        if kind == "ytd":
            return TimeRange(
                start=start_of("year", now), end=now, relative_expression=text, granularity=TimeGranularity.DAY,
            )

        if kind == "mtd":
            return TimeRange(
                start=start_of("month", now), end=now, relative_expression=text, granularity=TimeGranularity.DAY,
            )

        if kind == "today":
            return TimeRange(
                start=today, end=today + timedelta(days=1), relative_expression=text,
                granularity=TimeGranularity.DAY,
            )

        # yesterday
        return TimeRange(
            start=today - timedelta(days=1), end=today, relative_expression=text,
            granularity=TimeGranularity.DAY,
        )
