"""Map timestamps into daily/weekly/monthly/term/all-time buckets."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from ..core.errors import CalendarUnavailableError
from ..integrations.calendar import AcademicCalendar
from ..models import Period
from ..utils.datetime import (
    EPOCH,
    day_start,
    month_start,
    next_month_start,
    next_quarter_start,
    quarter_start,
    week_start,
)

logger = logging.getLogger(__name__)

ALL_PERIODS = tuple(Period)


@dataclass(frozen=True)
class Bucket:
    """Half-open ``[start, end)`` window; ``end`` is ``None`` for all-time."""

    period: Period
    start: datetime
    end: Optional[datetime]
    degraded: bool = False

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment and (self.end is None or moment < self.end)


class PeriodBucketing:
    """Bucket resolution; terms come from the academic calendar.

    When the calendar is unavailable or has no term covering a moment, terms
    fall back to calendar quarters and the bucket is flagged ``degraded``.
    """

    def __init__(self, calendar: AcademicCalendar) -> None:
        self._calendar = calendar

    def _term(self, moment: datetime) -> Bucket:
        try:
            bounds = self._calendar.term_for(moment)
        except CalendarUnavailableError as exc:
            logger.warning("academic calendar unavailable, using quarter boundaries: %s", exc)
            bounds = None
        else:
            if bounds is None:
                logger.debug("no term covers %s, using quarter boundaries", moment)
        if bounds is None:
            return Bucket(Period.TERM, quarter_start(moment), next_quarter_start(moment), degraded=True)
        return Bucket(Period.TERM, bounds[0], bounds[1])

    def bucket_for(self, period: Period, moment: datetime) -> Bucket:
        if period is Period.DAILY:
            start = day_start(moment)
            return Bucket(period, start, start + timedelta(days=1))
        if period is Period.WEEKLY:
            start = week_start(moment)
            return Bucket(period, start, start + timedelta(days=7))
        if period is Period.MONTHLY:
            return Bucket(period, month_start(moment), next_month_start(moment))
        if period is Period.TERM:
            return self._term(moment)
        return Bucket(Period.ALL_TIME, EPOCH, None)

    def buckets_for(self, moment: datetime, periods: Iterable[Period] = ALL_PERIODS) -> List[Bucket]:
        """Every bucket touched by one event at ``moment``."""

        return [self.bucket_for(period, moment) for period in periods]

    def closed_bucket(self, period: Period, moment: datetime) -> Optional[Bucket]:
        """Return the bucket that ended exactly at ``moment``'s day boundary.

        Used by the snapshot cycle: at midnight the previous day always closed,
        the previous week closes on Mondays, and so on. All-time never closes,
        so it is captured every day.
        """

        today = day_start(moment)
        yesterday = today - timedelta(microseconds=1)
        if period is Period.ALL_TIME:
            return self.bucket_for(period, yesterday)
        previous = self.bucket_for(period, yesterday)
        if previous.end is not None and previous.end <= today:
            return previous
        return None

    def previous_bucket(self, bucket: Bucket) -> Optional[Bucket]:
        """The bucket of the same period just before ``bucket``; all-time has none."""

        if bucket.period is Period.ALL_TIME:
            return None
        previous = self.bucket_for(bucket.period, bucket.start - timedelta(microseconds=1))
        if previous.end is None or previous.end > bucket.start:
            # quarter fallback overlapping a calendar term
            return None
        return previous
