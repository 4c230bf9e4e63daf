"""Process-wide collaborators shared by requests and background jobs."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from .core.cache import LeaderboardCache, LocalTTLCache, NullSharedCache, RedisSharedCache, SharedCache
from .core.config import Settings, get_settings
from .core.database import SessionLocal
from .core.single_flight import SingleFlight
from .integrations.calendar import (
    AcademicCalendar,
    HttpAcademicCalendar,
    StaticAcademicCalendar,
    UnavailableAcademicCalendar,
)
from .integrations.webhooks import WebhookDispatcher
from .models import ContextType
from .services.bucketing import PeriodBucketing
from .services.invalidation_bus import InvalidationBus, LeaderboardTarget
from .services.ledger_service import RecordResult
from .services.notifier import WebhookEvent, WebhookNotifier, milestone_events
from .utils.datetime import utcnow

logger = logging.getLogger(__name__)


def build_calendar(settings: Settings) -> AcademicCalendar:
    if settings.academic_calendar_url:
        return HttpAcademicCalendar(
            settings.academic_calendar_url,
            timeout=settings.academic_calendar_timeout_seconds,
            retry_after=settings.academic_calendar_retry_seconds,
        )
    if settings.academic_terms:
        return StaticAcademicCalendar(settings.academic_terms)
    return UnavailableAcademicCalendar()


def build_shared_cache(settings: Settings) -> SharedCache:
    if settings.redis_url:
        return RedisSharedCache.from_url(settings.redis_url, ttl_seconds=settings.shared_cache_ttl_seconds)
    return NullSharedCache()


class LeaderboardRuntime:
    """Cache tiers, single-flight registry, invalidation bus and notifier."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        calendar: Optional[AcademicCalendar] = None,
        shared_cache: Optional[SharedCache] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.bucketing = PeriodBucketing(calendar or build_calendar(self.settings))
        self.cache = LeaderboardCache(
            LocalTTLCache(self.settings.local_cache_ttl_seconds),
            shared_cache if shared_cache is not None else build_shared_cache(self.settings),
        )
        self._ranking_pool = ThreadPoolExecutor(
            max_workers=self.settings.ranking_workers,
            thread_name_prefix="leaderboard-rank",
        )
        self.single_flight = SingleFlight(self._ranking_pool)
        self.bus = InvalidationBus(
            self.cache,
            self.bucketing,
            window_seconds=self.settings.invalidation_window_seconds,
            on_flush=self.warm if self.settings.warm_cache_on_invalidate else None,
        )
        if dispatcher is None:
            dispatcher = WebhookDispatcher(
                self.settings.webhook_url,
                max_attempts=self.settings.webhook_max_attempts,
                timeout=self.settings.webhook_timeout_seconds,
                workers=self.settings.webhook_workers,
            )
        self.notifier = WebhookNotifier(dispatcher)

    def after_commit(self, result: RecordResult) -> List[WebhookEvent]:
        """Publish invalidations and milestone webhooks for a committed award."""

        if result.duplicate or result.event is None:
            return []
        self.bus.publish(result.event)
        if not result.milestones_crossed:
            return []
        event = result.event
        return self.notifier.emit(
            milestone_events(
                student_id=event.student_id,
                context_type=event.context_type.value,
                context_id=event.context_id,
                milestones=result.milestones_crossed,
                points=result.all_time_total,
                occurred_at=event.awarded_at,
            )
        )

    def warm(self, targets: List[LeaderboardTarget]) -> None:
        """Recompute the current-bucket leaderboards that were just invalidated."""

        from .services import leaderboard_service

        now = utcnow()
        current = {target for target in targets if target.bucket.contains(now)}
        if not current:
            return
        session = self.session_factory()
        try:
            for target in sorted(current, key=lambda item: item.key):
                leaderboard_service.load_leaderboard(
                    session,
                    self,
                    ContextType(target.context_type),
                    target.context_id,
                    target.bucket.period,
                    target.partition_key or None,
                    now=now,
                )
        finally:
            session.close()

    def close(self) -> None:
        self.bus.close()
        self.notifier.close()
        self._ranking_pool.shutdown(wait=True)


@lru_cache(maxsize=1)
def get_runtime() -> LeaderboardRuntime:
    """Return the process-wide runtime."""

    return LeaderboardRuntime()
