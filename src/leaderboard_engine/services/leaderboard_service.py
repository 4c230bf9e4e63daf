"""Leaderboard reads: cache, single-flight recomputation and stale fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.cache import cache_key
from ..core.errors import ComputationBudgetExceeded, NotFoundError, ValidationError
from ..integrations import enrollment
from ..models import ContextType, LeaderboardSnapshot, Period, PointAggregate
from ..utils.datetime import to_utc_naive, utcnow
from . import aggregation_service, config_service, ledger_service
from .bucketing import Bucket
from .config_service import LeaderboardConfig
from .ledger_service import ensure_context
from .invalidation_bus import LeaderboardTarget
from .ranking import (
    LeaderboardEntry,
    LeaderboardResult,
    RankingBudget,
    StudentTotal,
    percentile,
    rank_totals,
)

if TYPE_CHECKING:
    from ..runtime import LeaderboardRuntime

logger = logging.getLogger(__name__)


@dataclass
class LeaderboardPage:
    context_type: str
    context_id: str
    partition_key: str
    period: str
    bucket_start: datetime
    bucket_end: Optional[datetime]
    computed_at: datetime
    total_students: int
    entries: List[LeaderboardEntry] = field(default_factory=list)
    visible_columns: List[str] = field(default_factory=list)
    stale: bool = False
    degraded: bool = False


@dataclass
class StudentRank:
    student_id: str
    period: str
    rank: int
    total_students: int
    points: int
    previous_rank: Optional[int]
    rank_delta: Optional[int]
    percentile: int
    level: int
    achievements_count: int
    previous_points: Optional[int] = None
    improvement: float = 0.0
    improvement_rank: Optional[int] = None
    stale: bool = False


def resolve_period(config: LeaderboardConfig, period: Optional[Period]) -> Period:
    if period is None:
        return config.default_period
    if period not in config.enabled_periods:
        raise ValidationError(f"Period {period.value} is not enabled for this leaderboard.")
    return period


def resolve_partition(config: LeaderboardConfig, partition: Optional[str]) -> str:
    if not config.partitioned:
        if partition:
            raise ValidationError("This leaderboard is not partitioned.")
        return ""
    if not partition:
        raise ValidationError(f"A '{config.partition_key}' partition must be selected.")
    return partition


def previous_snapshot(
    session: Session,
    context_type: ContextType,
    context_id: str,
    partition_key: str,
    period: Period,
    before: datetime,
) -> Optional[LeaderboardSnapshot]:
    """Most recent snapshot taken strictly before ``before``."""

    stmt = (
        select(LeaderboardSnapshot)
        .where(
            LeaderboardSnapshot.context_type == context_type,
            LeaderboardSnapshot.context_id == context_id,
            LeaderboardSnapshot.partition_key == partition_key,
            LeaderboardSnapshot.period == period,
            LeaderboardSnapshot.as_of < before,
        )
        .order_by(LeaderboardSnapshot.as_of.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def _eligible_totals(
    totals: Dict[str, StudentTotal],
    members: Optional[Dict[str, Dict[str, str]]],
    config: LeaderboardConfig,
    partition_key: str,
    *,
    filter_partition: bool,
) -> List[StudentTotal]:
    if members is None:
        # untracked context: every ledger student sits in the same partition
        if filter_partition and enrollment.partition_of(None, config.partition_key) != partition_key:
            return []
        return list(totals.values())

    eligible = {
        student_id
        for student_id, attributes in members.items()
        if enrollment.partition_of(attributes, config.partition_key) == partition_key
    }
    ranked = [total for student_id, total in totals.items() if student_id in eligible]
    ranked.extend(StudentTotal(student_id, 0, None) for student_id in eligible - totals.keys())
    return ranked


def _previous_points(
    session: Session,
    config: LeaderboardConfig,
    partition_key: str,
    previous_bucket: Optional[Bucket],
    as_of: Optional[datetime],
) -> Optional[Dict[str, int]]:
    if previous_bucket is None:
        return None
    if as_of is None:
        totals = aggregation_service.aggregated_totals(
            session, config.context_type, config.context_id, partition_key, previous_bucket
        )
        return {total.student_id: total.points for total in totals}
    totals = aggregation_service.ledger_totals(
        session, config.context_type, config.context_id, previous_bucket, as_of
    )
    return {student_id: total.points for student_id, total in totals.items()}


def compute_leaderboard(
    session: Session,
    config: LeaderboardConfig,
    bucket: Bucket,
    *,
    partition_key: str = "",
    as_of: Optional[datetime] = None,
    budget: Optional[RankingBudget] = None,
    previous_bucket: Optional[Bucket] = None,
) -> LeaderboardResult:
    """Rank one (context, partition, period bucket).

    Live reads use the materialized aggregates; ``as_of`` re-sums the ledger
    up to that instant, which is how snapshots are taken. Totals from
    ``previous_bucket`` feed the improvement metrics.
    """

    computed_at = utcnow()
    members = enrollment.active_members(session, config.context_type, config.context_id)
    if as_of is None:
        totals = {
            total.student_id: total
            for total in aggregation_service.aggregated_totals(
                session, config.context_type, config.context_id, partition_key, bucket
            )
        }
        filter_partition = False
    else:
        totals = aggregation_service.ledger_totals(
            session, config.context_type, config.context_id, bucket, as_of
        )
        filter_partition = True
    population = _eligible_totals(totals, members, config, partition_key, filter_partition=filter_partition)
    previous_points = _previous_points(session, config, partition_key, previous_bucket, as_of)

    previous = previous_snapshot(
        session,
        config.context_type,
        config.context_id,
        partition_key,
        bucket.period,
        as_of or computed_at,
    )
    previous_ranks = {item["student_id"]: item["rank"] for item in previous.entries} if previous else {}

    entries = rank_totals(
        population,
        context_type=config.context_type.value,
        context_id=config.context_id,
        period=bucket.period.value,
        computed_at=computed_at,
        previous_ranks=previous_ranks,
        previous_points=previous_points,
        tie_break=config.tie_break,
        seed=f"{config.context_type.value}:{config.context_id}:{partition_key}:{bucket.start.isoformat()}",
        milestones=config.point_milestones,
        partition_key=partition_key,
        budget=budget,
    )
    return LeaderboardResult(
        context_type=config.context_type.value,
        context_id=config.context_id,
        partition_key=partition_key,
        period=bucket.period.value,
        bucket_start=bucket.start,
        bucket_end=bucket.end,
        computed_at=computed_at,
        entries=entries,
        degraded=bucket.degraded,
    )


def _stale_fallback(
    session: Session,
    runtime: "LeaderboardRuntime",
    key: str,
    config: LeaderboardConfig,
    partition_key: str,
    bucket: Bucket,
) -> LeaderboardResult:
    last = runtime.cache.last_good(key)
    if last is not None:
        return LeaderboardResult.from_dict(last).as_stale()

    stmt = (
        select(LeaderboardSnapshot)
        .where(
            LeaderboardSnapshot.context_type == config.context_type,
            LeaderboardSnapshot.context_id == config.context_id,
            LeaderboardSnapshot.partition_key == partition_key,
            LeaderboardSnapshot.period == bucket.period,
            LeaderboardSnapshot.bucket_start == bucket.start,
        )
        .order_by(LeaderboardSnapshot.as_of.desc())
        .limit(1)
    )
    snapshot = session.execute(stmt).scalar_one_or_none()
    entries = [LeaderboardEntry.from_dict(item) for item in snapshot.entries] if snapshot else []
    return LeaderboardResult(
        context_type=config.context_type.value,
        context_id=config.context_id,
        partition_key=partition_key,
        period=bucket.period.value,
        bucket_start=bucket.start,
        bucket_end=bucket.end,
        computed_at=snapshot.created_at if snapshot else utcnow(),
        entries=entries,
        stale=True,
        degraded=bucket.degraded,
    )


def load_leaderboard(
    session: Session,
    runtime: "LeaderboardRuntime",
    context_type: ContextType,
    context_id: str,
    period: Optional[Period] = None,
    partition: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Tuple[LeaderboardResult, LeaderboardConfig]:
    """Full leaderboard for the bucket containing ``now``.

    Order: in-process cache, shared cache, then a single-flight computation
    on a worker session whose result repopulates both tiers. Readers wait at
    most the time budget; over-budget computations return the last known
    result flagged ``stale``.
    """

    ensure_context(session, context_type, context_id)
    config = config_service.get_config(session, context_type, context_id, runtime.settings)
    period = resolve_period(config, period)
    partition_key = resolve_partition(config, partition)
    bucket = runtime.bucketing.bucket_for(period, to_utc_naive(now))
    key = cache_key(context_type.value, context_id, partition_key, period.value, bucket.start)

    cached = runtime.cache.get(key)
    if cached is not None:
        return LeaderboardResult.from_dict(cached), config

    generation = runtime.cache.generation(key)
    budget = RankingBudget(runtime.settings.ranking_max_population, runtime.settings.ranking_time_budget_seconds)

    def compute() -> LeaderboardResult:
        worker_session = runtime.session_factory()
        try:
            result = compute_leaderboard(
                worker_session,
                config,
                bucket,
                partition_key=partition_key,
                budget=budget,
                previous_bucket=runtime.bucketing.previous_bucket(bucket),
            )
        finally:
            worker_session.close()
        # a computation that outlives its reader still refreshes the cache
        runtime.cache.put(key, result.to_dict(), generation)
        return result

    try:
        result, shared = runtime.single_flight.do(key, compute, timeout=budget.seconds)
    except (ComputationBudgetExceeded, TimeoutError) as exc:
        logger.warning("leaderboard %s over budget, serving stale result: %s", key, exc)
        return _stale_fallback(session, runtime, key, config, partition_key, bucket), config
    if shared:
        logger.debug("joined in-flight computation for %s", key)
    return result, config


def get_leaderboard(
    session: Session,
    runtime: "LeaderboardRuntime",
    context_type: ContextType,
    context_id: str,
    period: Optional[Period] = None,
    *,
    limit: int = 50,
    offset: int = 0,
    partition: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LeaderboardPage:
    """GetLeaderboard: one page of ranked entries plus the population size."""

    if limit < 1:
        raise ValidationError("limit must be positive.")
    if offset < 0:
        raise ValidationError("offset cannot be negative.")
    result, config = load_leaderboard(session, runtime, context_type, context_id, period, partition, now=now)
    return LeaderboardPage(
        context_type=result.context_type,
        context_id=result.context_id,
        partition_key=result.partition_key,
        period=result.period,
        bucket_start=result.bucket_start,
        bucket_end=result.bucket_end,
        computed_at=result.computed_at,
        total_students=result.total_students,
        entries=result.entries[offset : offset + limit],
        visible_columns=list(config.visible_columns),
        stale=result.stale,
        degraded=result.degraded,
    )


def get_student_rank(
    session: Session,
    runtime: "LeaderboardRuntime",
    student_id: str,
    context_type: ContextType,
    context_id: str,
    period: Optional[Period] = None,
    *,
    partition: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StudentRank:
    """GetStudentRank: a single student's standing in one leaderboard."""

    result, _ = load_leaderboard(session, runtime, context_type, context_id, period, partition, now=now)
    entry = result.entry_for(student_id)
    if entry is None:
        raise NotFoundError(f"Student {student_id} is not ranked in {context_type.value} {context_id}")
    return StudentRank(
        student_id=student_id,
        period=result.period,
        rank=entry.rank,
        total_students=result.total_students,
        points=entry.points,
        previous_rank=entry.previous_rank,
        rank_delta=entry.rank_delta,
        percentile=percentile(entry.rank, result.total_students),
        level=entry.level,
        achievements_count=entry.achievements_count,
        previous_points=entry.previous_points,
        improvement=entry.improvement,
        improvement_rank=entry.improvement_rank,
        stale=result.stale,
    )


def partitions_for(session: Session, config: LeaderboardConfig) -> List[str]:
    """Every partition label with members or aggregates; ``[""]`` when unpartitioned."""

    if not config.partitioned:
        return [""]
    labels: Set[str] = set(
        session.execute(
            select(PointAggregate.partition_key)
            .where(
                PointAggregate.context_type == config.context_type,
                PointAggregate.context_id == config.context_id,
            )
            .distinct()
        ).scalars()
    )
    members = enrollment.active_members(session, config.context_type, config.context_id) or {}
    labels.update(enrollment.partition_of(attributes, config.partition_key) for attributes in members.values())
    return sorted(labels)


def rebuild_context(
    session: Session,
    runtime: "LeaderboardRuntime",
    context_type: ContextType,
    context_id: str,
) -> Tuple[Dict[str, int], List[LeaderboardTarget]]:
    """Full recompute of a context's aggregates from the ledger.

    Returns the summary and the cache targets the caller invalidates after
    committing.
    """

    ensure_context(session, context_type, context_id)
    config = config_service.get_config(session, context_type, context_id, runtime.settings)
    members = enrollment.active_members(session, context_type, context_id)
    summary, touched = aggregation_service.recompute_context(
        session,
        context_type,
        context_id,
        bucketing=runtime.bucketing,
        periods=config.enabled_periods,
        partition_key=config.partition_key,
        members=members,
    )
    current = runtime.bucketing.buckets_for(utcnow(), config.enabled_periods)
    refs = set(touched)
    for partition_key in partitions_for(session, config):
        refs.update((partition_key, bucket.period, bucket.start) for bucket in current)
    by_ref = {(bucket.period, bucket.start): bucket for bucket in current}
    targets = []
    for partition_key, period, bucket_start in refs:
        bucket = by_ref.get((period, bucket_start)) or runtime.bucketing.bucket_for(period, bucket_start)
        targets.append(LeaderboardTarget(context_type, context_id, partition_key, bucket))
    return summary, targets
