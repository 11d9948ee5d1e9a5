from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional

# smallest step between the end of one period and the start of the next
PERIOD_TICK = timedelta(seconds=1)


class PeriodToken(str, Enum):
    current_month = "current_month"
    last_month = "last_month"
    last_3_months = "last_3_months"
    last_6_months = "last_6_months"
    current_year = "current_year"
    custom = "custom"


class InvalidDateRange(ValueError):
    pass


@dataclass(frozen=True)
class Period:
    slug: str
    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def _add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def _span(slug: str, first_day: date, next_first_day: date) -> Period:
    return Period(
        slug,
        datetime.combine(first_day, time.min),
        datetime.combine(next_first_day, time.min) - PERIOD_TICK,
    )


def _custom_period(
    start: Optional[date], end: Optional[date], max_range_days: Optional[int]
) -> Period:
    if start is None or end is None:
        raise InvalidDateRange("Custom period requires start and end dates")
    if end < start:
        raise InvalidDateRange("End date must be after start date")
    if max_range_days is not None and (end - start).days > max_range_days:
        raise InvalidDateRange(f"Date range cannot exceed {max_range_days} days")
    return _span("custom", start, end + timedelta(days=1))


def resolve_period(
    period: Optional[str],
    start: Optional[date] = None,
    end: Optional[date] = None,
    *,
    now: Optional[datetime] = None,
    max_range_days: Optional[int] = None,
) -> Period:
    """Turn a named period or an explicit start/end pair into a concrete range.

    An explicit pair always wins over the token. Ranges run from the first
    instant of the first day through the last second of the last day.
    """
    if start is not None or end is not None or period == PeriodToken.custom:
        return _custom_period(start, end, max_range_days)

    now = now or datetime.now()
    month_first = now.date().replace(day=1)
    if period == PeriodToken.last_month:
        return _span("last_month", _add_months(month_first, -1), month_first)
    if period == PeriodToken.last_3_months:
        return _span(
            "last_3_months",
            _add_months(month_first, -2),
            _add_months(month_first, 1),
        )
    if period == PeriodToken.last_6_months:
        return _span(
            "last_6_months",
            _add_months(month_first, -5),
            _add_months(month_first, 1),
        )
    if period == PeriodToken.current_year:
        return _span(
            "current_year", date(now.year, 1, 1), date(now.year + 1, 1, 1)
        )

    # current month
    return _span("current_month", month_first, _add_months(month_first, 1))


def previous_period(period: Period) -> Period:
    prev_end = period.start - PERIOD_TICK
    return Period("previous", prev_end - period.duration, prev_end)


def period_length_days(period: Period) -> int:
    hours = period.duration.total_seconds() / 3600
    return max(int(hours / 24) + 1, 1)
