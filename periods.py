from datetime import date, datetime
from typing import Iterator, Union

from errors import ValidationError


def month_of(value: Union[date, datetime, str]) -> date:
    """Normalize a date, datetime or ISO date string to the first of its month."""
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 7:
                value = date.fromisoformat(f"{text}-01")
            elif len(text) == 10:
                value = date.fromisoformat(text)
            else:
                value = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"Invalid month: {value!r}") from exc
    if isinstance(value, datetime):
        value = value.date()
    return value.replace(day=1)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    """Shift ``base`` by whole months, clamping the day to the target month length."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def month_end(month: date) -> date:
    return add_months(month_of(month), 1) - date.resolution


def iter_months(start: date, count: int) -> Iterator[date]:
    first = month_of(start)
    for offset in range(count):
        yield add_months(first, offset)
