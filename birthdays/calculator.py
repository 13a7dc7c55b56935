"""Birthday arithmetic used to build greeting messages."""
from __future__ import annotations

import calendar
from datetime import date, datetime, timezone
from typing import Union

DateLike = Union[date, datetime]


def today_utc() -> date:
    """Return the current calendar date in UTC."""

    return datetime.now(timezone.utc).date()


def _as_date(value: DateLike) -> date:
    # datetime is a subclass of date, so it has to be checked first.
    if isinstance(value, datetime):
        return value.date()
    return value


def anniversary(date_of_birth: date, year: int) -> date:
    """Return the birthday that falls in ``year``.

    A 29 February birthday is celebrated on 28 February in non-leap years.
    """

    if date_of_birth.month == 2 and date_of_birth.day == 29 and not calendar.isleap(year):
        return date(year, 2, 28)
    return date_of_birth.replace(year=year)


def next_birthday(date_of_birth: DateLike, today: DateLike) -> date:
    """Return the first birthday on or after ``today``."""

    born = _as_date(date_of_birth)
    current = _as_date(today)
    upcoming = anniversary(born, current.year)
    if upcoming < current:
        upcoming = anniversary(born, current.year + 1)
    return upcoming


def days_until_birthday(date_of_birth: DateLike, today: DateLike) -> int:
    """Number of whole days from ``today`` to the next birthday (0 on the day itself)."""

    return (next_birthday(date_of_birth, today) - _as_date(today)).days


def compute_message(username: str, date_of_birth: DateLike, today: DateLike) -> str:
    days = days_until_birthday(date_of_birth, today)
    if days == 0:
        return f"Hello, {username}! Happy birthday!"
    return f"Hello, {username}! Your birthday is in {days} day(s)"


__all__ = [
    "anniversary",
    "compute_message",
    "days_until_birthday",
    "next_birthday",
    "today_utc",
]
