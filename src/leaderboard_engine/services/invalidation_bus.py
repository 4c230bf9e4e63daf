"""Fan-out of point events to every affected leaderboard cache entry."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set

from ..core.cache import LeaderboardCache, cache_key
from ..models import ContextType
from .bucketing import Bucket, PeriodBucketing
from .ledger_service import PointAwarded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaderboardTarget:
    """One cached leaderboard: context, partition and period bucket."""

    context_type: ContextType
    context_id: str
    partition_key: str
    bucket: Bucket

    @property
    def key(self) -> str:
        return cache_key(
            self.context_type.value,
            self.context_id,
            self.partition_key,
            self.bucket.period.value,
            self.bucket.start,
        )


class InvalidationBus:
    """Single entry point for cache invalidation.

    Publishing marks the affected entries dirty right away so local reads
    recompute; purging the shared tier and the optional warm-up callback are
    coalesced over ``window_seconds`` so a burst of awards for one class
    results in one recomputation per leaderboard. The timer runs on its own
    thread and publishers never wait for it.
    """

    def __init__(
        self,
        cache: LeaderboardCache,
        bucketing: PeriodBucketing,
        *,
        window_seconds: float = 2.0,
        on_flush: Optional[Callable[[List[LeaderboardTarget]], None]] = None,
    ) -> None:
        self._cache = cache
        self._bucketing = bucketing
        self._window = window_seconds
        self._on_flush = on_flush
        self._lock = threading.Lock()
        self._pending: Set[LeaderboardTarget] = set()
        self._timer: Optional[threading.Timer] = None
        self._closed = False

    def publish(self, event: PointAwarded) -> List[LeaderboardTarget]:
        """Invalidate every period bucket containing the event's timestamp."""

        targets = [
            LeaderboardTarget(event.context_type, event.context_id, event.partition_key, bucket)
            for bucket in self._bucketing.buckets_for(event.awarded_at, event.periods)
        ]
        self.invalidate(targets)
        return targets

    def invalidate(self, targets: Iterable[LeaderboardTarget]) -> None:
        targets = list(targets)
        if not targets:
            return
        self._cache.invalidate(target.key for target in targets)
        if self._window <= 0:
            with self._lock:
                self._pending.update(targets)
            self.flush()
            return
        with self._lock:
            self._pending.update(targets)
            if self._timer is None and not self._closed:
                self._timer = threading.Timer(self._window, self.flush)
                self._timer.daemon = True
                self._timer.start()

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def flush(self) -> int:
        """Purge the shared tier for pending targets and run the warm-up hook."""

        with self._lock:
            targets = list(self._pending)
            self._pending.clear()
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if not targets:
            return 0
        self._cache.flush(target.key for target in targets)
        logger.debug("flushed %s leaderboard invalidations", len(targets))
        if self._on_flush is not None:
            try:
                self._on_flush(targets)
            except Exception:
                logger.exception("cache warm-up after invalidation failed")
        return len(targets)

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self.flush()
