"""Academic calendar adapters supplying term boundaries."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable, Iterable, List, Mapping, Optional, Protocol, Tuple

import httpx

from ..core.errors import CalendarUnavailableError
from ..utils.datetime import to_utc_naive

logger = logging.getLogger(__name__)

TermBounds = Tuple[datetime, datetime]


class AcademicCalendar(Protocol):
    def term_for(self, moment: datetime) -> Optional[TermBounds]:
        """Return ``(start, end)`` of the term containing ``moment``.

        ``None`` means no term covers the moment. Raises
        ``CalendarUnavailableError`` when the calendar cannot be consulted.
        """


def _parse_term(raw: Mapping[str, str]) -> TermBounds:
    start = to_utc_naive(datetime.fromisoformat(raw["start"]))
    end = to_utc_naive(datetime.fromisoformat(raw["end"]))
    if end <= start:
        raise ValueError(f"term end {end} is not after start {start}")
    return start, end


class StaticAcademicCalendar:
    """Calendar backed by a fixed list of terms (settings or tests)."""

    def __init__(self, terms: Iterable[Mapping[str, str]] = ()) -> None:
        self._terms: List[TermBounds] = sorted(_parse_term(term) for term in terms)

    def term_for(self, moment: datetime) -> Optional[TermBounds]:
        for start, end in self._terms:
            if start <= moment < end:
                return start, end
        return None


class UnavailableAcademicCalendar:
    """Used when no calendar source is configured; always degrades."""

    def term_for(self, moment: datetime) -> Optional[TermBounds]:
        raise CalendarUnavailableError("no academic calendar configured")


class HttpAcademicCalendar:
    """Calendar service client.

    Expects ``GET {base_url}/terms`` to return ``[{"start": ..., "end": ...}]``.
    Terms are fetched once and kept in memory. A failed fetch is remembered
    for ``retry_after`` seconds; lookups in that window fail without a
    request.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 2.0,
        retry_after: float = 30.0,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._retry_after = retry_after
        self._clock = clock
        self._terms: Optional[StaticAcademicCalendar] = None
        self._failure: Optional[Tuple[float, str]] = None

    def _load(self) -> StaticAcademicCalendar:
        try:
            response = self._client.get("/terms")
            response.raise_for_status()
            calendar = StaticAcademicCalendar(response.json())
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            raise CalendarUnavailableError(f"academic calendar request failed: {exc}") from exc
        logger.info("loaded academic calendar terms")
        return calendar

    def term_for(self, moment: datetime) -> Optional[TermBounds]:
        if self._terms is None:
            if self._failure is not None and self._clock() < self._failure[0]:
                raise CalendarUnavailableError(self._failure[1])
            try:
                self._terms = self._load()
            except CalendarUnavailableError as exc:
                self._failure = (self._clock() + self._retry_after, str(exc))
                raise
            self._failure = None
        return self._terms.term_for(moment)

    def close(self) -> None:
        self._client.close()
