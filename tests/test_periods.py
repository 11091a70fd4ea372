from datetime import date, datetime

import pytest

from errors import ValidationError
from periods import add_months, days_in_month, iter_months, month_end, month_of


def test_month_of_normalizes_dates_datetimes_and_strings():
    assert month_of(date(2024, 6, 17)) == date(2024, 6, 1)
    assert month_of(datetime(2024, 6, 17, 23, 59)) == date(2024, 6, 1)
    assert month_of("2024-06") == date(2024, 6, 1)
    assert month_of("2024-06-17") == date(2024, 6, 1)
    assert month_of("2024-06-17T08:30:00") == date(2024, 6, 1)


def test_month_of_rejects_garbage():
    with pytest.raises(ValidationError):
        month_of("June 2024")


def test_add_months_clamps_to_month_length():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
    assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)
    assert add_months(date(2024, 3, 15), -3) == date(2023, 12, 15)


def test_month_helpers():
    assert days_in_month(2024, 2) == 29
    assert days_in_month(2024, 12) == 31
    assert month_end(date(2024, 2, 10)) == date(2024, 2, 29)
    assert list(iter_months(date(2024, 11, 20), 3)) == [
        date(2024, 11, 1),
        date(2024, 12, 1),
        date(2025, 1, 1),
    ]
