"""Calendar activity statistics over canonical records."""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .import_contract import CanonicalRecord


@dataclass(frozen=True)
class YearStatistics:
    year: int
    total: int
    active_days: int
    longest_streak: int
    longest_gap: int
    weekend_percentage: int
    busiest_day: Optional[date]
    busiest_day_count: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "year": self.year,
            "total": self.total,
            "active_days": self.active_days,
            "longest_streak": self.longest_streak,
            "longest_gap": self.longest_gap,
            "weekend_percentage": self.weekend_percentage,
            "busiest_day": self.busiest_day.isoformat() if self.busiest_day else None,
            "busiest_day_count": self.busiest_day_count,
        }


@dataclass(frozen=True)
class CalendarDay:
    day: date
    count: int
    level: int

    def as_dict(self) -> Dict[str, Any]:
        return {"date": self.day.isoformat(), "count": self.count, "level": self.level}


def record_day(record: CanonicalRecord) -> date:
    """Calendar day of a record, taken in UTC."""

    created_at = record.created_at
    if created_at.tzinfo is not None:
        created_at = created_at.astimezone(timezone.utc)
    return created_at.date()


def build_day_counts(records: Iterable[CanonicalRecord]) -> Dict[date, int]:
    return dict(Counter(record_day(record) for record in records))


def available_years(records: Iterable[CanonicalRecord], current_year: Optional[int] = None) -> List[int]:
    """Years present in the records, newest first, always including the current year."""

    if current_year is None:
        current_year = datetime.now(timezone.utc).year
    years = {record_day(record).year for record in records}
    years.add(current_year)
    return sorted(years, reverse=True)


def activity_level(count: int) -> int:
    return min(4, math.ceil(count / 2))


def build_year_calendar(day_counts: Mapping[date, int], year: int) -> List[CalendarDay]:
    """One entry per day from Jan 1 to Dec 31 of ``year``."""

    current = date(year, 1, 1)
    end = date(year, 12, 31)
    calendar: List[CalendarDay] = []
    while current <= end:
        count = day_counts.get(current, 0)
        calendar.append(CalendarDay(day=current, count=count, level=activity_level(count)))
        current += timedelta(days=1)
    return calendar


def _longest_streak(active_days: List[date]) -> int:
    longest = 0
    current = 0
    previous: Optional[date] = None
    for day in active_days:
        if previous is not None and (day - previous).days == 1:
            current += 1
        else:
            current = 1
        longest = max(longest, current)
        previous = day
    return longest


def _longest_gap(active_days: List[date]) -> int:
    if len(active_days) < 2:
        return 0
    widest = max((later - earlier).days for earlier, later in zip(active_days, active_days[1:]))
    return max(0, widest - 1)


def compute_year_stats(records: Iterable[CanonicalRecord], year: int) -> YearStatistics:
    """Derive activity statistics for one calendar year.

    ``records`` is expected to be the non-deleted records of a single category;
    the caller does that filtering. Days are counted across the whole input and
    then restricted to ``year``.
    """

    records = list(records)
    day_counts = build_day_counts(records)
    in_year = [record for record in records if record_day(record).year == year]
    active = sorted(day for day in day_counts if day.year == year)

    total = len(in_year)
    weekend = sum(1 for record in in_year if record_day(record).weekday() >= 5)
    weekend_percentage = math.floor(weekend * 100 / total + 0.5) if total else 0

    busiest_day: Optional[date] = None
    busiest_count = 0
    for day in active:
        if day_counts[day] > busiest_count:
            busiest_day = day
            busiest_count = day_counts[day]

    return YearStatistics(
        year=year,
        total=total,
        active_days=len(active),
        longest_streak=_longest_streak(active),
        longest_gap=_longest_gap(active),
        weekend_percentage=weekend_percentage,
        busiest_day=busiest_day,
        busiest_day_count=busiest_count,
    )
