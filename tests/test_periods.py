from datetime import date, datetime

import pytest

from periods import (
    InvalidDateRange,
    PeriodToken,
    period_length_days,
    previous_period,
    resolve_period,
)

NOW = datetime(2025, 3, 15, 10, 30)


def test_current_month_is_default_and_inclusive_to_last_second() -> None:
    period = resolve_period(None, now=NOW)
    assert period.slug == "current_month"
    assert period.start == datetime(2025, 3, 1, 0, 0, 0)
    assert period.end == datetime(2025, 3, 31, 23, 59, 59)


@pytest.mark.parametrize(
    ("token", "start", "end"),
    [
        (PeriodToken.last_month, datetime(2025, 2, 1), datetime(2025, 2, 28, 23, 59, 59)),
        (
            PeriodToken.last_3_months,
            datetime(2025, 1, 1),
            datetime(2025, 3, 31, 23, 59, 59),
        ),
        (
            PeriodToken.last_6_months,
            datetime(2024, 10, 1),
            datetime(2025, 3, 31, 23, 59, 59),
        ),
        (
            PeriodToken.current_year,
            datetime(2025, 1, 1),
            datetime(2025, 12, 31, 23, 59, 59),
        ),
    ],
)
def test_named_periods_resolve_to_calendar_boundaries(token, start, end) -> None:
    period = resolve_period(token, now=NOW)
    assert period.start == start
    assert period.end == end


def test_last_month_crosses_year_boundary() -> None:
    period = resolve_period("last_month", now=datetime(2025, 1, 10, 8, 0))
    assert period.start == datetime(2024, 12, 1)
    assert period.end == datetime(2024, 12, 31, 23, 59, 59)


def test_explicit_pair_wins_over_token() -> None:
    period = resolve_period(
        PeriodToken.current_month, date(2025, 3, 5), date(2025, 3, 14), now=NOW
    )
    assert period.slug == "custom"
    assert period.start == datetime(2025, 3, 5)
    assert period.end == datetime(2025, 3, 14, 23, 59, 59)


def test_end_before_start_is_rejected_not_corrected() -> None:
    with pytest.raises(InvalidDateRange, match="End date must be after start date"):
        resolve_period(None, date(2025, 3, 14), date(2025, 3, 5), now=NOW)


def test_custom_requires_both_dates() -> None:
    with pytest.raises(InvalidDateRange):
        resolve_period(PeriodToken.custom, now=NOW)
    with pytest.raises(InvalidDateRange):
        resolve_period(None, date(2025, 3, 5), None, now=NOW)


def test_custom_range_respects_maximum_length() -> None:
    with pytest.raises(InvalidDateRange):
        resolve_period(
            None, date(2022, 1, 1), date(2025, 1, 1), now=NOW, max_range_days=730
        )

    period = resolve_period(
        None, date(2024, 1, 1), date(2025, 1, 1), now=NOW, max_range_days=730
    )
    assert period.slug == "custom"


def test_previous_period_of_a_month_has_identical_length() -> None:
    period = resolve_period(PeriodToken.current_month, now=NOW)
    prev = previous_period(period)
    assert prev.end == datetime(2025, 2, 28, 23, 59, 59)
    assert prev.start == datetime(2025, 1, 29)
    assert prev.end - prev.start == period.end - period.start


def test_previous_period_of_irregular_custom_range() -> None:
    period = resolve_period(None, date(2025, 3, 5), date(2025, 3, 14), now=NOW)
    prev = previous_period(period)
    assert prev.end == datetime(2025, 3, 4, 23, 59, 59)
    assert prev.start == datetime(2025, 2, 23)
    assert prev.end - prev.start == period.end - period.start


def test_period_length_in_days() -> None:
    assert period_length_days(resolve_period(None, now=NOW)) == 31
    single_day = resolve_period(None, date(2025, 3, 5), date(2025, 3, 5), now=NOW)
    assert period_length_days(single_day) == 1
