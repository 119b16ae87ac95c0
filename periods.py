from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Optional


MIN_YEAR = 1970
MAX_YEAR = 3000


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.start, time.min)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.end, time.max)


def month_end(d: date) -> date:
    first = d.replace(day=1)
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def shift_months(d: date, count: int) -> date:
    """Move ``d`` by ``count`` months, clamping the day to the target month."""
    first = add_months(d, count)
    return first.replace(day=min(d.day, month_end(first).day))


def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def month_period(d: date) -> Period:
    first = d.replace(day=1)
    return Period(month_key(first), first, month_end(first))


def previous_month_period(d: date) -> Period:
    return month_period(add_months(d, -1))


def year_period(year: int) -> Period:
    return Period(f"{year:04d}", date(year, 1, 1), date(year, 12, 31))


def parse_month(value: Optional[str], *, today: Optional[date] = None) -> date:
    """Resolve a ``YYYY-MM`` query value to the first day of that month."""
    today = today or datetime.now(timezone.utc).date()
    if not value:
        return today.replace(day=1)
    try:
        year_str, month_str = value.split("-", 1)
        first = date(int(year_str), int(month_str), 1)
    except ValueError as exc:
        raise ValueError("Month must use the YYYY-MM format") from exc
    if first.year < MIN_YEAR or first.year > MAX_YEAR:
        raise ValueError("Month out of range")
    return first


def parse_year(value: Optional[str], *, today: Optional[date] = None) -> int:
    today = today or datetime.now(timezone.utc).date()
    if not value:
        return today.year
    try:
        year = int(value)
    except ValueError as exc:
        raise ValueError("Year must be a four digit number") from exc
    if year < MIN_YEAR or year > MAX_YEAR:
        raise ValueError("Year out of range")
    return year
