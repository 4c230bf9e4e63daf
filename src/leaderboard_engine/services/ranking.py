"""Deterministic ranking of aggregated totals."""

from __future__ import annotations

import enum
import hashlib
import math
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.errors import ComputationBudgetExceeded
from ..utils.datetime import EPOCH


class TieBreak(str, enum.Enum):
    """Secondary ordering among students tied on points."""

    EARLIEST_TIMESTAMP = "earliest_timestamp"
    ALPHABETICAL = "alphabetical"
    RANDOM = "random"


@dataclass(frozen=True)
class StudentTotal:
    student_id: str
    points: int
    first_awarded_at: Optional[datetime] = None


@dataclass
class LeaderboardEntry:
    student_id: str
    context_type: str
    context_id: str
    period: str
    points: int
    rank: int
    previous_rank: Optional[int]
    level: int
    achievements_count: int
    computed_at: datetime
    partition_key: str = ""
    previous_points: Optional[int] = None
    improvement: float = 0.0
    improvement_rank: Optional[int] = None

    @property
    def rank_delta(self) -> Optional[int]:
        """Positive when the student moved up; ``None`` for new entrants."""

        if self.previous_rank is None:
            return None
        return self.previous_rank - self.rank

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["computed_at"] = self.computed_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LeaderboardEntry":
        values = dict(data)
        values["computed_at"] = datetime.fromisoformat(values["computed_at"])
        return cls(**values)


@dataclass
class LeaderboardResult:
    context_type: str
    context_id: str
    partition_key: str
    period: str
    bucket_start: datetime
    bucket_end: Optional[datetime]
    computed_at: datetime
    entries: List[LeaderboardEntry] = field(default_factory=list)
    stale: bool = False
    degraded: bool = False

    @property
    def total_students(self) -> int:
        return len(self.entries)

    def entry_for(self, student_id: str) -> Optional[LeaderboardEntry]:
        for entry in self.entries:
            if entry.student_id == student_id:
                return entry
        return None

    def as_stale(self) -> "LeaderboardResult":
        return replace(self, stale=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context_type": self.context_type,
            "context_id": self.context_id,
            "partition_key": self.partition_key,
            "period": self.period,
            "bucket_start": self.bucket_start.isoformat(),
            "bucket_end": self.bucket_end.isoformat() if self.bucket_end else None,
            "computed_at": self.computed_at.isoformat(),
            "entries": [entry.to_dict() for entry in self.entries],
            "stale": self.stale,
            "degraded": self.degraded,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LeaderboardResult":
        return cls(
            context_type=data["context_type"],
            context_id=data["context_id"],
            partition_key=data["partition_key"],
            period=data["period"],
            bucket_start=datetime.fromisoformat(data["bucket_start"]),
            bucket_end=datetime.fromisoformat(data["bucket_end"]) if data["bucket_end"] else None,
            computed_at=datetime.fromisoformat(data["computed_at"]),
            entries=[LeaderboardEntry.from_dict(item) for item in data["entries"]],
            stale=data.get("stale", False),
            degraded=data.get("degraded", False),
        )


class RankingBudget:
    """Population and wall-clock limits for one computation.

    The population is checked before sorting. ``seconds`` bounds how long a
    reader waits for the result before falling back.
    """

    def __init__(self, max_population: int, seconds: float) -> None:
        self.max_population = max_population
        self.seconds = seconds

    def check_population(self, population: int) -> None:
        if population > self.max_population:
            raise ComputationBudgetExceeded(
                f"population {population} exceeds budget of {self.max_population}"
            )


def exp_for_level(level: int) -> int:
    return math.floor(100 * math.pow(level, 1.5))


def level_for_points(points: int) -> int:
    """Level reached with ``points``; each level ``n`` costs floor(100 * n^1.5)."""

    level = 1
    remaining = points
    while remaining >= exp_for_level(level):
        remaining -= exp_for_level(level)
        level += 1
    return level


def achievements_for_points(points: int, milestones: Iterable[int]) -> int:
    return sum(1 for milestone in milestones if points >= milestone)


def percentile(rank: int, total: int) -> int:
    if total <= 1:
        return 100
    return round((total - rank) / (total - 1) * 100)


def improvement(points: int, previous_points: int) -> float:
    """Percent change against the previous period; 0 without a positive base."""

    if previous_points <= 0:
        return 0.0
    return round((points - previous_points) / previous_points * 100, 2)


def _sort_key(tie_break: TieBreak, seed: str) -> Callable[[StudentTotal], Tuple]:
    if tie_break is TieBreak.ALPHABETICAL:
        return lambda total: (-total.points, total.student_id)
    if tie_break is TieBreak.RANDOM:
        def shuffled(total: StudentTotal) -> Tuple:
            digest = hashlib.sha256(f"{seed}:{total.student_id}".encode()).hexdigest()
            return (-total.points, digest, total.student_id)

        return shuffled

    def earliest(total: StudentTotal) -> Tuple:
        stamp = total.first_awarded_at
        return (-total.points, stamp is None, stamp or EPOCH, total.student_id)

    return earliest


def order_totals(
    totals: Iterable[StudentTotal],
    tie_break: TieBreak = TieBreak.EARLIEST_TIMESTAMP,
    seed: str = "",
) -> List[StudentTotal]:
    """Total order: points desc, then the tie-break, then student id."""

    return sorted(totals, key=_sort_key(tie_break, seed))


def rank_totals(
    totals: Sequence[StudentTotal],
    *,
    context_type: str,
    context_id: str,
    period: str,
    computed_at: datetime,
    previous_ranks: Optional[Mapping[str, int]] = None,
    previous_points: Optional[Mapping[str, int]] = None,
    tie_break: TieBreak = TieBreak.EARLIEST_TIMESTAMP,
    seed: str = "",
    milestones: Sequence[int] = (),
    partition_key: str = "",
    budget: Optional[RankingBudget] = None,
) -> List[LeaderboardEntry]:
    """Assign contiguous 1..N ranks; ties never share a rank.

    ``previous_points`` holds totals from the preceding bucket of the same
    period. When given, every entry gets its improvement and a contiguous
    improvement rank (ties keep leaderboard order). All-time boards pass
    ``None`` and carry no improvement metrics.
    """

    previous_ranks = previous_ranks or {}
    if budget is not None:
        budget.check_population(len(totals))
    ordered = order_totals(totals, tie_break, seed)
    entries = []
    for position, total in enumerate(ordered, start=1):
        entry = LeaderboardEntry(
            student_id=total.student_id,
            context_type=context_type,
            context_id=context_id,
            period=period,
            points=total.points,
            rank=position,
            previous_rank=previous_ranks.get(total.student_id),
            level=level_for_points(total.points),
            achievements_count=achievements_for_points(total.points, milestones),
            computed_at=computed_at,
            partition_key=partition_key,
        )
        if previous_points is not None:
            entry.previous_points = previous_points.get(total.student_id, 0)
            entry.improvement = improvement(entry.points, entry.previous_points)
        entries.append(entry)

    if previous_points is not None:
        by_improvement = sorted(entries, key=lambda item: (-item.improvement, item.rank))
        for position, entry in enumerate(by_improvement, start=1):
            entry.improvement_rank = position
    return entries
