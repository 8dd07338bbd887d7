"""
Assessment period tests.

Covers:
  - H1/H2 boundaries and labels
  - contiguity across the year boundary
  - current/previous/next navigation
  - rejection of malformed halves and years
"""

from datetime import date, datetime

import pytest

from ranks.errors import InvalidArgument
from ranks.periods import AssessmentPeriod, current_period, next_period, period_for, previous_period


def test_second_half_covers_july_to_december():
    period = period_for(2024, 2)
    assert period.start_date == date(2024, 7, 1)
    assert period.end_date == date(2024, 12, 31)
    assert period.months() == ["2024-07", "2024-08", "2024-09", "2024-10", "2024-11", "2024-12"]
    assert period.label == "2024 H2"


def test_first_half_ends_on_june_30():
    period = period_for(2025, 1)
    assert period.start_date == date(2025, 1, 1)
    assert period.end_date == date(2025, 6, 30)


def test_periods_are_contiguous_across_year_boundary():
    h2 = period_for(2024, 2)
    h1 = period_for(2025, 1)
    assert (h1.start_date - h2.end_date).days == 1
    assert next_period(h2) == h1
    assert previous_period(h1) == h2


@pytest.mark.parametrize(
    "moment, expected",
    [
        (datetime(2025, 1, 1, 0, 0), (2025, 1)),
        (datetime(2025, 6, 30, 23, 59, 59), (2025, 1)),
        (datetime(2025, 7, 1, 0, 0), (2025, 2)),
        (date(2024, 12, 31), (2024, 2)),
    ],
)
def test_current_period_contains_moment(moment, expected):
    period = current_period(moment)
    assert (period.year, period.half) == expected
    assert period.contains(moment)


def test_exactly_one_period_contains_an_instant():
    moment = datetime(2024, 6, 30, 12, 0)
    candidates = [period_for(2024, 1), period_for(2024, 2), period_for(2023, 2)]
    assert [p.contains(moment) for p in candidates] == [True, False, False]


def test_periods_order_chronologically():
    assert period_for(2024, 2) < period_for(2025, 1) < period_for(2025, 2)


@pytest.mark.parametrize("half", [0, 3, -1, True, 1.0, "1"])
def test_invalid_half_is_rejected(half):
    with pytest.raises(InvalidArgument):
        period_for(2024, half)


def test_invalid_year_is_rejected():
    with pytest.raises(InvalidArgument):
        period_for(0, 1)


def test_to_dict_is_serializable():
    assert period_for(2024, 2).to_dict() == {
        "year": 2024,
        "half": 2,
        "label": "2024 H2",
        "start_date": "2024-07-01",
        "end_date": "2024-12-31",
    }
    assert isinstance(period_for(2024, 2), AssessmentPeriod)
