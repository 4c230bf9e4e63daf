"""Immutable leaderboard snapshots, history reads, trends and archiving."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Mapping, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.errors import NotFoundError
from ..models import ContextType, LeaderboardSnapshot, Period, SnapshotStatus
from ..utils.datetime import day_start, subtract_months, to_utc_naive, utcnow
from . import config_service, ledger_service
from .leaderboard_service import (
    compute_leaderboard,
    partitions_for,
    previous_snapshot,
    resolve_partition,
    resolve_period,
)
from .ledger_service import ensure_context
from .notifier import WebhookEvent, rank_events

if TYPE_CHECKING:
    from ..runtime import LeaderboardRuntime

logger = logging.getLogger(__name__)


@dataclass
class SnapshotResult:
    snapshot: LeaderboardSnapshot
    created: bool
    events: List[WebhookEvent] = field(default_factory=list)


def _by_key(
    session: Session,
    context_type: ContextType,
    context_id: str,
    partition_key: str,
    period: Period,
    snapshot_date: date,
) -> Optional[LeaderboardSnapshot]:
    stmt = select(LeaderboardSnapshot).where(
        LeaderboardSnapshot.context_type == context_type,
        LeaderboardSnapshot.context_id == context_id,
        LeaderboardSnapshot.partition_key == partition_key,
        LeaderboardSnapshot.period == period,
        LeaderboardSnapshot.snapshot_date == snapshot_date,
    )
    return session.execute(stmt).scalar_one_or_none()


def get_snapshot(session: Session, snapshot_id: str) -> LeaderboardSnapshot:
    snapshot = session.get(LeaderboardSnapshot, snapshot_id)
    if snapshot is None:
        raise NotFoundError(f"Snapshot {snapshot_id} not found")
    return snapshot


def create_snapshot(
    session: Session,
    runtime: "LeaderboardRuntime",
    context_type: ContextType,
    context_id: str,
    period: Period,
    as_of: Optional[datetime] = None,
    *,
    partition: Optional[str] = None,
) -> SnapshotResult:
    """CreateSnapshot: capture the leaderboard containing ``as_of``.

    Idempotent on (context, partition, period, date of ``as_of``); a repeat
    call, or a concurrent writer losing the unique-key race, gets the
    existing snapshot back unchanged.
    """

    ensure_context(session, context_type, context_id)
    config = config_service.get_config(session, context_type, context_id, runtime.settings)
    period = resolve_period(config, period)
    partition_key = resolve_partition(config, partition)
    as_of = to_utc_naive(as_of)
    snapshot_date = as_of.date()

    existing = _by_key(session, context_type, context_id, partition_key, period, snapshot_date)
    if existing is not None:
        return SnapshotResult(existing, created=False)

    bucket = runtime.bucketing.bucket_for(period, as_of)
    had_previous = (
        previous_snapshot(session, context_type, context_id, partition_key, period, as_of) is not None
    )
    result = compute_leaderboard(
        session,
        config,
        bucket,
        partition_key=partition_key,
        as_of=as_of,
        previous_bucket=runtime.bucketing.previous_bucket(bucket),
    )
    snapshot = LeaderboardSnapshot(
        context_type=context_type,
        context_id=context_id,
        partition_key=partition_key,
        period=period,
        snapshot_date=snapshot_date,
        as_of=as_of,
        bucket_start=bucket.start,
        entries=[entry.to_dict() for entry in result.entries],
        created_at=utcnow(),
    )
    try:
        with session.begin_nested():
            session.add(snapshot)
    except IntegrityError:
        existing = _by_key(session, context_type, context_id, partition_key, period, snapshot_date)
        if existing is None:
            raise
        return SnapshotResult(existing, created=False)

    logger.info(
        "snapshot %s created for %s/%s %s on %s with %s entries",
        snapshot.snapshot_id,
        context_type.value,
        context_id,
        period.value,
        snapshot_date,
        len(result.entries),
    )
    events = rank_events(
        result.entries,
        threshold=config.rank_change_threshold,
        occurred_at=as_of,
        reference=snapshot.snapshot_id,
        has_previous=had_previous,
    )
    return SnapshotResult(snapshot, created=True, events=events)


def iter_history(
    session: Session,
    context_type: ContextType,
    context_id: str,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    period: Optional[Period] = None,
    partition: Optional[str] = None,
    include_archived: bool = False,
    batch_size: int = 100,
) -> Iterator[LeaderboardSnapshot]:
    """GetHistory: snapshots in ``[start, end]`` ordered by date.

    Reads in keyset-paginated batches; calling again restarts from the
    beginning. Archived snapshots are skipped unless ``include_archived``.
    No side effects.
    """

    base = select(LeaderboardSnapshot).where(
        LeaderboardSnapshot.context_type == context_type,
        LeaderboardSnapshot.context_id == context_id,
    )
    if start is not None:
        base = base.where(LeaderboardSnapshot.snapshot_date >= start)
    if end is not None:
        base = base.where(LeaderboardSnapshot.snapshot_date <= end)
    if period is not None:
        base = base.where(LeaderboardSnapshot.period == period)
    if partition is not None:
        base = base.where(LeaderboardSnapshot.partition_key == partition)
    if not include_archived:
        base = base.where(LeaderboardSnapshot.status == SnapshotStatus.ACTIVE)

    cursor = None
    while True:
        stmt = base
        if cursor is not None:
            last_date, last_id = cursor
            stmt = stmt.where(
                or_(
                    LeaderboardSnapshot.snapshot_date > last_date,
                    and_(
                        LeaderboardSnapshot.snapshot_date == last_date,
                        LeaderboardSnapshot.snapshot_id > last_id,
                    ),
                )
            )
        stmt = stmt.order_by(LeaderboardSnapshot.snapshot_date, LeaderboardSnapshot.snapshot_id).limit(batch_size)
        batch = session.execute(stmt).scalars().all()
        yield from batch
        if len(batch) < batch_size:
            return
        cursor = (batch[-1].snapshot_date, batch[-1].snapshot_id)


def get_history(
    session: Session,
    context_type: ContextType,
    context_id: str,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    period: Optional[Period] = None,
    partition: Optional[str] = None,
    include_archived: bool = False,
) -> List[LeaderboardSnapshot]:
    ensure_context(session, context_type, context_id)
    return list(
        iter_history(
            session,
            context_type,
            context_id,
            start=start,
            end=end,
            period=period,
            partition=partition,
            include_archived=include_archived,
        )
    )


def _student_trend(snapshots: List[LeaderboardSnapshot], student_id: str) -> Dict[str, Any]:
    points = []
    for snapshot in snapshots:
        entry = next((item for item in snapshot.entries if item["student_id"] == student_id), None)
        points.append(
            {
                "date": snapshot.snapshot_date.isoformat(),
                "rank": entry["rank"] if entry else None,
                "points": entry["points"] if entry else 0,
                "totalStudents": len(snapshot.entries),
            }
        )
    return {"studentId": student_id, "trend": points}


def _overall_trend(snapshots: List[LeaderboardSnapshot]) -> Dict[str, Any]:
    points = []
    for snapshot in snapshots:
        entries = snapshot.entries
        total = sum(item["points"] for item in entries)
        points.append(
            {
                "date": snapshot.snapshot_date.isoformat(),
                "totalStudents": len(entries),
                "averagePoints": total / len(entries) if entries else 0,
                "topPerformers": [
                    {"studentId": item["student_id"], "points": item["points"], "rank": item["rank"]}
                    for item in entries[:3]
                ],
            }
        )
    return {"trends": points}


def get_trends(
    session: Session,
    context_type: ContextType,
    context_id: str,
    period: Period = Period.MONTHLY,
    *,
    months: int = 3,
    student_id: Optional[str] = None,
    partition: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Rank/points trend of one student, or overall trends, from snapshots."""

    now = to_utc_naive(now)
    snapshots = get_history(
        session,
        context_type,
        context_id,
        start=subtract_months(now, months).date(),
        end=now.date(),
        period=period,
        partition=partition or "",
    )
    if student_id:
        return _student_trend(snapshots, student_id)
    return _overall_trend(snapshots)


def snapshot_closed_periods(
    session: Session,
    runtime: "LeaderboardRuntime",
    now: Optional[datetime] = None,
) -> List[SnapshotResult]:
    """Snapshot every enabled period whose bucket closed at today's midnight."""

    now = to_utc_naive(now)
    as_of = day_start(now) - timedelta(microseconds=1)
    contexts = set(ledger_service.known_contexts(session)) | set(config_service.configured_contexts(session))
    results: List[SnapshotResult] = []
    for context_type, context_id in sorted(contexts, key=lambda item: (item[0].value, item[1])):
        config = config_service.get_config(session, context_type, context_id, runtime.settings)
        for period in config.enabled_periods:
            if runtime.bucketing.closed_bucket(period, now) is None:
                continue
            for partition_key in partitions_for(session, config):
                results.append(
                    create_snapshot(
                        session,
                        runtime,
                        context_type,
                        context_id,
                        period,
                        as_of,
                        partition=partition_key or None,
                    )
                )
    return results


def archive_snapshots(
    session: Session,
    retention_days: Mapping[str, int],
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Archive active snapshots past their period's retention window.

    Rows and entries are kept; archived snapshots only drop out of default
    history and trend reads.
    """

    now = to_utc_naive(now)
    archived: Dict[str, int] = {}
    for period in Period:
        days = retention_days.get(period.value)
        if days is None:
            continue
        cutoff = (now - timedelta(days=days)).date()
        result = session.execute(
            update(LeaderboardSnapshot)
            .where(
                LeaderboardSnapshot.period == period,
                LeaderboardSnapshot.status == SnapshotStatus.ACTIVE,
                LeaderboardSnapshot.snapshot_date < cutoff,
            )
            .values(status=SnapshotStatus.ARCHIVED, archived_at=now)
            .execution_options(synchronize_session=False)
        )
        archived[period.value] = result.rowcount or 0
    return archived
