"""Tests for deterministic ranking, levels and percentiles."""

from __future__ import annotations

from datetime import datetime

import pytest

from leaderboard_engine.core.errors import ComputationBudgetExceeded
from leaderboard_engine.services.ranking import (
    LeaderboardResult,
    RankingBudget,
    StudentTotal,
    TieBreak,
    achievements_for_points,
    improvement,
    level_for_points,
    order_totals,
    percentile,
    rank_totals,
)

NOW = datetime(2025, 11, 12, 10, 0)


def _rank(totals, **kwargs):
    kwargs.setdefault("context_type", "class")
    kwargs.setdefault("context_id", "C")
    kwargs.setdefault("period", "weekly")
    kwargs.setdefault("computed_at", NOW)
    return rank_totals(totals, **kwargs)


class TestRankTotals:
    """Tests for rank_totals."""

    def test_ranks_are_contiguous_even_with_ties(self):
        totals = [
            StudentTotal("A", 50, datetime(2025, 11, 10, 9)),
            StudentTotal("B", 50, datetime(2025, 11, 10, 10)),
            StudentTotal("C", 70, datetime(2025, 11, 10, 11)),
            StudentTotal("D", 0, None),
        ]
        entries = _rank(totals)
        assert [entry.rank for entry in entries] == [1, 2, 3, 4]
        assert [entry.student_id for entry in entries] == ["C", "A", "B", "D"]

    def test_earliest_timestamp_wins_tie(self):
        totals = [
            StudentTotal("B", 50, datetime(2025, 11, 10, 9)),
            StudentTotal("A", 50, datetime(2025, 11, 10, 10)),
        ]
        entries = _rank(totals)
        assert entries[0].student_id == "B"

    def test_identical_timestamps_fall_back_to_student_id(self):
        stamp = datetime(2025, 11, 10, 9)
        entries = _rank([StudentTotal("Z", 10, stamp), StudentTotal("M", 10, stamp)])
        assert [entry.student_id for entry in entries] == ["M", "Z"]

    def test_zero_point_members_rank_last(self):
        totals = [StudentTotal("A", 0, None), StudentTotal("B", 0, datetime(2025, 11, 10))]
        entries = _rank(totals)
        assert [entry.student_id for entry in entries] == ["B", "A"]
        assert all(entry.level == 1 for entry in entries)

    def test_negative_totals_rank_below_zero(self):
        entries = _rank([StudentTotal("A", -20, datetime(2025, 11, 10)), StudentTotal("B", 0, None)])
        assert [entry.student_id for entry in entries] == ["B", "A"]

    def test_previous_ranks_produce_deltas(self):
        totals = [StudentTotal("A", 100, NOW), StudentTotal("B", 130, NOW)]
        entries = _rank(totals, previous_ranks={"A": 1})
        by_student = {entry.student_id: entry for entry in entries}
        assert by_student["A"].previous_rank == 1
        assert by_student["A"].rank_delta == -1
        assert by_student["B"].previous_rank is None
        assert by_student["B"].rank_delta is None

    def test_achievements_follow_milestones(self):
        entries = _rank([StudentTotal("A", 600, NOW)], milestones=[100, 500, 1000])
        assert entries[0].achievements_count == 2

    def test_input_order_does_not_matter(self):
        totals = [StudentTotal(f"S{i}", i % 3 * 10, datetime(2025, 11, 1, i)) for i in range(10)]
        forward = [entry.student_id for entry in _rank(totals)]
        backward = [entry.student_id for entry in _rank(list(reversed(totals)))]
        assert forward == backward


class TestTieBreaks:
    """Tests for configurable tie-break strategies."""

    def test_alphabetical(self):
        totals = [StudentTotal("b", 5, datetime(2025, 1, 1)), StudentTotal("a", 5, datetime(2025, 1, 2))]
        ordered = order_totals(totals, TieBreak.ALPHABETICAL)
        assert [total.student_id for total in ordered] == ["a", "b"]

    def test_random_is_stable_for_a_seed(self):
        totals = [StudentTotal(f"S{i}", 10) for i in range(20)]
        first = [total.student_id for total in order_totals(totals, TieBreak.RANDOM, "class:C:2025-11-10")]
        second = [total.student_id for total in order_totals(list(reversed(totals)), TieBreak.RANDOM, "class:C:2025-11-10")]
        assert first == second

    def test_random_still_orders_by_points(self):
        totals = [StudentTotal("A", 1), StudentTotal("B", 99)]
        ordered = order_totals(totals, TieBreak.RANDOM, "seed")
        assert ordered[0].student_id == "B"


class TestLevels:
    """Tests for level_for_points."""

    @pytest.mark.parametrize(
        "points,level",
        [(0, 1), (99, 1), (100, 2), (381, 2), (382, 3), (-50, 1)],
    )
    def test_level_thresholds(self, points, level):
        assert level_for_points(points) == level

    def test_achievements_count(self):
        assert achievements_for_points(0, [100, 500]) == 0
        assert achievements_for_points(500, [100, 500]) == 2


class TestPercentile:
    """Tests for percentile."""

    def test_single_student_is_top(self):
        assert percentile(1, 1) == 100

    def test_bounds(self):
        assert percentile(1, 5) == 100
        assert percentile(5, 5) == 0
        assert percentile(3, 5) == 50


class TestRankingBudget:
    """Tests for RankingBudget."""

    def test_population_over_budget(self):
        budget = RankingBudget(max_population=1, seconds=10)
        with pytest.raises(ComputationBudgetExceeded):
            _rank([StudentTotal("A", 1), StudentTotal("B", 2)], budget=budget)

    def test_population_within_budget(self):
        budget = RankingBudget(max_population=2, seconds=10)
        assert len(_rank([StudentTotal("A", 1), StudentTotal("B", 2)], budget=budget)) == 2


class TestImprovement:
    """Tests for improvement against the previous bucket."""

    def test_percent_change(self):
        assert improvement(150, 100) == 50.0
        assert improvement(50, 100) == -50.0
        assert improvement(10, 3) == 233.33

    def test_no_positive_base_means_zero(self):
        assert improvement(40, 0) == 0.0
        assert improvement(40, -10) == 0.0

    def test_entries_carry_improvement_and_its_rank(self):
        entries = _rank(
            [StudentTotal("A", 100), StudentTotal("B", 60), StudentTotal("C", 30), StudentTotal("D", 20)],
            previous_points={"A": 100, "B": 20, "C": 10},
        )
        by_student = {entry.student_id: entry for entry in entries}
        assert by_student["A"].improvement == 0.0
        assert by_student["B"].improvement == 200.0
        assert by_student["C"].improvement == 200.0
        assert by_student["D"].previous_points == 0
        assert by_student["D"].improvement == 0.0
        # C ties B on improvement and keeps leaderboard order behind it
        assert [(entry.student_id, entry.improvement_rank) for entry in entries] == [
            ("A", 3),
            ("B", 1),
            ("C", 2),
            ("D", 4),
        ]

    def test_without_previous_bucket_no_metrics(self):
        (entry,) = _rank([StudentTotal("A", 10)])
        assert entry.previous_points is None
        assert entry.improvement == 0.0
        assert entry.improvement_rank is None


class TestLeaderboardResult:
    """Tests for the cached leaderboard representation."""

    def test_dict_round_trip_preserves_entries(self):
        entries = _rank([StudentTotal("A", 10, NOW)], previous_ranks={"A": 2})
        result = LeaderboardResult(
            context_type="class",
            context_id="C",
            partition_key="",
            period="weekly",
            bucket_start=datetime(2025, 11, 10),
            bucket_end=datetime(2025, 11, 17),
            computed_at=NOW,
            entries=entries,
        )
        restored = LeaderboardResult.from_dict(result.to_dict())
        assert restored == result
        assert restored.as_stale().stale is True
        assert restored.entry_for("A").rank_delta == 1
        assert restored.entry_for("missing") is None
