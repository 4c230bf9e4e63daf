"""Tests for cache tiers, single-flight and the invalidation bus."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from unittest.mock import MagicMock

import pytest
import redis

from leaderboard_engine.core.cache import LeaderboardCache, LocalTTLCache, RedisSharedCache, cache_key
from leaderboard_engine.core.single_flight import SingleFlight
from leaderboard_engine.integrations.calendar import StaticAcademicCalendar
from leaderboard_engine.models import ContextType, Period
from leaderboard_engine.services.bucketing import PeriodBucketing
from leaderboard_engine.services.invalidation_bus import InvalidationBus, LeaderboardTarget
from leaderboard_engine.services.ledger_service import PointAwarded

from .conftest import TERMS


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestLocalTTLCache:
    """Tests for the in-process tier."""

    def test_entries_expire(self):
        clock = FakeClock()
        cache = LocalTTLCache(ttl_seconds=10, clock=clock)
        cache.set("k", {"v": 1})
        assert cache.get("k") == {"v": 1}
        clock.now = 11
        assert cache.get("k") is None

    def test_evicts_least_recently_used(self):
        cache = LocalTTLCache(ttl_seconds=10, max_entries=2)
        cache.set("a", {})
        cache.set("b", {})
        cache.get("a")
        cache.set("c", {})
        assert cache.get("b") is None
        assert cache.get("a") == {}
        assert len(cache) == 2

    def test_len_takes_the_lock(self):
        cache = LocalTTLCache(ttl_seconds=10)
        cache.set("a", {})
        cache._lock = MagicMock()
        assert len(cache) == 1
        cache._lock.__enter__.assert_called_once()


class TestRedisSharedCache:
    """Tests for the Redis tier with a mocked client."""

    def test_set_uses_ttl_and_json(self):
        client = MagicMock()
        RedisSharedCache(client, ttl_seconds=30).set("k", {"a": 1})
        client.setex.assert_called_once_with("k", 30, '{"a": 1}')

    def test_get_decodes_json(self):
        client = MagicMock()
        client.get.return_value = '{"a": 1}'
        assert RedisSharedCache(client).get("k") == {"a": 1}

    def test_errors_degrade_to_miss(self):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError("down")
        client.delete.side_effect = redis.ConnectionError("down")
        cache = RedisSharedCache(client)
        assert cache.get("k") is None
        cache.delete(["k"])


class TestLeaderboardCache:
    """Tests for generations, dirty keys and last-good values."""

    def test_read_through_from_shared_tier(self):
        shared = MagicMock()
        shared.get.return_value = {"v": 1}
        cache = LeaderboardCache(LocalTTLCache(60), shared)
        assert cache.get("k") == {"v": 1}
        shared.get.return_value = None
        assert cache.get("k") == {"v": 1}

    def test_invalidated_key_misses_immediately(self):
        shared = MagicMock()
        cache = LeaderboardCache(LocalTTLCache(60), shared)
        cache.put("k", {"v": 1}, cache.generation("k"))
        cache.invalidate(["k"])
        shared.get.return_value = {"v": 1}
        assert cache.get("k") is None

    def test_put_after_invalidation_is_discarded(self):
        cache = LeaderboardCache(LocalTTLCache(60))
        generation = cache.generation("k")
        cache.invalidate(["k"])
        assert cache.put("k", {"v": "old"}, generation) is False
        assert cache.get("k") is None
        assert cache.put("k", {"v": "new"}, cache.generation("k")) is True
        assert cache.get("k") == {"v": "new"}

    def test_last_good_survives_invalidation(self):
        cache = LeaderboardCache(LocalTTLCache(60))
        cache.put("k", {"v": 1}, 0)
        cache.invalidate(["k"])
        cache.flush(["k"])
        assert cache.get("k") is None
        assert cache.last_good("k") == {"v": 1}

    def test_cache_key_format(self):
        key = cache_key("class", "C", "", "weekly", datetime(2025, 11, 10))
        assert key == "leaderboard:class:C:-:weekly:2025-11-10T00:00:00"


class TestSingleFlight:
    """Tests for per-key call de-duplication."""

    def test_concurrent_callers_share_one_call(self):
        flight = SingleFlight()
        started = threading.Event()
        release = threading.Event()
        calls = []

        def compute():
            calls.append(1)
            started.set()
            release.wait(5)
            return "result"

        results = []
        leader = threading.Thread(target=lambda: results.append(flight.do("k", compute)))
        leader.start()
        assert started.wait(5)
        follower = threading.Thread(target=lambda: results.append(flight.do("k", compute)))
        follower.start()
        deadline = time.monotonic() + 5
        while flight._calls["k"].waiters == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        release.set()
        leader.join(5)
        follower.join(5)

        assert calls == [1]
        assert sorted(results, key=lambda item: item[1]) == [("result", False), ("result", True)]
        assert not flight.in_flight("k")

    def test_errors_propagate_and_clear_key(self):
        flight = SingleFlight()

        def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            flight.do("k", boom)
        assert not flight.in_flight("k")
        assert flight.do("k", lambda: 42) == (42, False)

    def test_waiting_is_bounded_and_late_result_lands(self):
        flight = SingleFlight(ThreadPoolExecutor(max_workers=1))
        release = threading.Event()
        landed = []

        def slow():
            release.wait(5)
            landed.append("done")
            return "late"

        started = time.monotonic()
        with pytest.raises(TimeoutError):
            flight.do("k", slow, timeout=0.05)
        assert time.monotonic() - started < 1
        assert flight.in_flight("k")

        with pytest.raises(TimeoutError):
            flight.do("k", slow, timeout=0.05)

        release.set()
        deadline = time.monotonic() + 5
        while flight.in_flight("k") and time.monotonic() < deadline:
            time.sleep(0.01)
        assert landed == ["done"]
        assert not flight.in_flight("k")

    def test_worker_errors_reach_the_caller(self):
        flight = SingleFlight(ThreadPoolExecutor(max_workers=1))

        def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            flight.do("k", boom, timeout=5)
        assert flight.do("k", lambda: 42, timeout=5) == (42, False)


@pytest.fixture
def bucketing():
    return PeriodBucketing(StaticAcademicCalendar(TERMS))


def _event(**overrides):
    values = dict(
        transaction_id="t1",
        student_id="A",
        context_type=ContextType.CLASS,
        context_id="C",
        partition_key="",
        amount=10,
        awarded_at=datetime(2025, 11, 12, 10),
        periods=tuple(Period),
    )
    values.update(overrides)
    return PointAwarded(**values)


class TestInvalidationBus:
    """Tests for fan-out and coalescing of invalidations."""

    def test_publish_targets_every_period_bucket(self, bucketing):
        cache = LeaderboardCache(LocalTTLCache(60))
        bus = InvalidationBus(cache, bucketing, window_seconds=0)
        targets = bus.publish(_event())
        assert {target.bucket.period for target in targets} == set(Period)
        assert all(target.bucket.contains(datetime(2025, 11, 12, 10)) for target in targets)

    def test_publish_only_enabled_periods(self, bucketing):
        bus = InvalidationBus(LeaderboardCache(LocalTTLCache(60)), bucketing, window_seconds=0)
        targets = bus.publish(_event(periods=(Period.WEEKLY,)))
        assert [target.bucket.period for target in targets] == [Period.WEEKLY]

    def test_invalidated_entries_miss_before_flush(self, bucketing):
        shared = MagicMock()
        cache = LeaderboardCache(LocalTTLCache(60), shared)
        bus = InvalidationBus(cache, bucketing, window_seconds=60)
        target = LeaderboardTarget(
            ContextType.CLASS, "C", "", bucketing.bucket_for(Period.WEEKLY, datetime(2025, 11, 12))
        )
        cache.put(target.key, {"v": 1}, cache.generation(target.key))
        try:
            bus.invalidate([target])
            assert cache.get(target.key) is None
            shared.delete.assert_not_called()
            assert bus.pending() == 1
        finally:
            bus.close()
        shared.delete.assert_called_once_with([target.key])
        assert bus.pending() == 0

    def test_burst_is_coalesced_into_one_flush(self, bucketing):
        flushed = []
        bus = InvalidationBus(
            LeaderboardCache(LocalTTLCache(60)),
            bucketing,
            window_seconds=60,
            on_flush=flushed.append,
        )
        try:
            for index in range(5):
                bus.publish(_event(transaction_id=f"t{index}", periods=(Period.WEEKLY,)))
            assert bus.pending() == 1
        finally:
            bus.close()
        assert len(flushed) == 1
        assert len(flushed[0]) == 1

    def test_warm_up_failure_is_logged_not_raised(self, bucketing):
        def failing(targets):
            raise RuntimeError("warm-up failed")

        bus = InvalidationBus(LeaderboardCache(LocalTTLCache(60)), bucketing, window_seconds=0, on_flush=failing)
        bus.publish(_event())
        assert bus.pending() == 0
