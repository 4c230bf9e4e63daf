"""Date-time helpers for period bucket calculations.

All timestamps are stored as naive UTC values; aware inputs are converted.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(moment: Optional[datetime]) -> datetime:
    """Normalise ``moment`` to naive UTC; ``None`` means now."""

    if moment is None:
        return utcnow()
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def day_start(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min)


def week_start(moment: datetime) -> datetime:
    """Return Monday 00:00 of the ISO week containing ``moment``."""

    start = day_start(moment)
    return start - timedelta(days=start.weekday())


def month_start(moment: datetime) -> datetime:
    return datetime(moment.year, moment.month, 1)


def next_month_start(moment: datetime) -> datetime:
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1)
    return datetime(moment.year, moment.month + 1, 1)


def quarter_start(moment: datetime) -> datetime:
    """Return the first day of the calendar quarter containing ``moment``."""

    return datetime(moment.year, 3 * ((moment.month - 1) // 3) + 1, 1)


def next_quarter_start(moment: datetime) -> datetime:
    start = quarter_start(moment)
    month = start.month + 3
    if month > 12:
        return datetime(start.year + 1, month - 12, 1)
    return datetime(start.year, month, 1)


def end_of_day(day: date) -> datetime:
    """Return the last representable instant of ``day``."""

    return datetime.combine(day, time.max)


def subtract_months(moment: datetime, months: int) -> datetime:
    """Step back ``months`` calendar months, clamping the day to the month end."""

    index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    following = datetime(year + (month == 12), month % 12 + 1, 1)
    last_day = (following - timedelta(days=1)).day
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))
