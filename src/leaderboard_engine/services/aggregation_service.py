"""Running totals per (student, context, partition, period bucket)."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Set, Tuple

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.errors import ConcurrencyConflictError
from ..integrations.enrollment import partition_of
from ..models import ContextType, Period, PointAggregate, PointTransaction
from ..utils.datetime import utcnow
from .bucketing import Bucket, PeriodBucketing
from .ranking import StudentTotal

logger = logging.getLogger(__name__)

BucketRef = Tuple[str, Period, datetime]


def context_lock_key(context_type: ContextType, context_id: str) -> int:
    """Stable signed 64-bit key for a context's advisory lock."""

    digest = hashlib.blake2b(f"{context_type.value}:{context_id}".encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


def lock_context(session: Session, context_type: ContextType, context_id: str, *, exclusive: bool = False) -> None:
    """Take a transaction-scoped lock on one context's aggregates.

    Incremental writers share the lock; a full rebuild holds it exclusively
    from before it reads the ledger until commit. SQLite serializes writers
    on its own, so only PostgreSQL takes an advisory lock.
    """

    if session.get_bind().dialect.name != "postgresql":
        return
    function = "pg_advisory_xact_lock" if exclusive else "pg_advisory_xact_lock_shared"
    session.execute(text(f"SELECT {function}(:key)"), {"key": context_lock_key(context_type, context_id)})


def _increment(
    session: Session,
    transaction: PointTransaction,
    partition_key: str,
    bucket: Bucket,
    max_attempts: int,
) -> Tuple[int, int]:
    """Compare-and-swap ``total += amount`` on one aggregate row.

    Returns ``(old_total, new_total)``. A lost race re-reads and retries; after
    ``max_attempts`` the conflict surfaces as a transient error.
    """

    lookup = (
        select(PointAggregate)
        .where(
            PointAggregate.student_id == transaction.student_id,
            PointAggregate.context_type == transaction.context_type,
            PointAggregate.context_id == transaction.context_id,
            PointAggregate.partition_key == partition_key,
            PointAggregate.period == bucket.period,
            PointAggregate.bucket_start == bucket.start,
        )
        .execution_options(populate_existing=True)
    )
    for attempt in range(1, max_attempts + 1):
        row = session.execute(lookup).scalar_one_or_none()
        if row is None:
            try:
                with session.begin_nested():
                    session.add(
                        PointAggregate(
                            student_id=transaction.student_id,
                            context_type=transaction.context_type,
                            context_id=transaction.context_id,
                            partition_key=partition_key,
                            period=bucket.period,
                            bucket_start=bucket.start,
                            total=transaction.amount,
                            first_awarded_at=transaction.awarded_at,
                            degraded=bucket.degraded,
                            version=1,
                        )
                    )
                return 0, transaction.amount
            except IntegrityError:
                logger.debug("aggregate insert raced for %s, attempt %s", bucket, attempt)
                continue

        result = session.execute(
            update(PointAggregate)
            .where(
                PointAggregate.aggregate_id == row.aggregate_id,
                PointAggregate.version == row.version,
            )
            .values(
                total=row.total + transaction.amount,
                first_awarded_at=min(row.first_awarded_at, transaction.awarded_at),
                degraded=row.degraded or bucket.degraded,
                version=row.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return row.total, row.total + transaction.amount
        logger.debug("aggregate version conflict for %s, attempt %s", bucket, attempt)

    raise ConcurrencyConflictError(
        f"Could not update totals for student {transaction.student_id} after {max_attempts} attempts."
    )


def apply_transaction(
    session: Session,
    transaction: PointTransaction,
    buckets: List[Bucket],
    *,
    partition_key: str = "",
    max_attempts: int = 3,
) -> Dict[Period, Tuple[int, int]]:
    """Fold one ledger row into every bucket containing its timestamp."""

    lock_context(session, transaction.context_type, transaction.context_id)
    return {
        bucket.period: _increment(session, transaction, partition_key, bucket, max_attempts)
        for bucket in buckets
    }


def aggregated_totals(
    session: Session,
    context_type: ContextType,
    context_id: str,
    partition_key: str,
    bucket: Bucket,
) -> List[StudentTotal]:
    """Read totals for one leaderboard from the materialized store."""

    stmt = select(
        PointAggregate.student_id,
        PointAggregate.total,
        PointAggregate.first_awarded_at,
    ).where(
        PointAggregate.context_type == context_type,
        PointAggregate.context_id == context_id,
        PointAggregate.partition_key == partition_key,
        PointAggregate.period == bucket.period,
        PointAggregate.bucket_start == bucket.start,
    )
    return [StudentTotal(student_id, total, first) for student_id, total, first in session.execute(stmt)]


def ledger_totals(
    session: Session,
    context_type: ContextType,
    context_id: str,
    bucket: Bucket,
    as_of: datetime,
) -> Dict[str, StudentTotal]:
    """Re-sum the ledger for one bucket up to ``as_of`` (inclusive)."""

    stmt = (
        select(
            PointTransaction.student_id,
            func.coalesce(func.sum(PointTransaction.amount), 0),
            func.min(PointTransaction.awarded_at),
        )
        .where(
            PointTransaction.context_type == context_type,
            PointTransaction.context_id == context_id,
            PointTransaction.awarded_at >= bucket.start,
            PointTransaction.awarded_at <= as_of,
        )
        .group_by(PointTransaction.student_id)
    )
    if bucket.end is not None:
        stmt = stmt.where(PointTransaction.awarded_at < bucket.end)
    return {
        student_id: StudentTotal(student_id, int(total), first)
        for student_id, total, first in session.execute(stmt)
    }


def recompute_context(
    session: Session,
    context_type: ContextType,
    context_id: str,
    *,
    bucketing: PeriodBucketing,
    periods: List[Period],
    partition_key: Optional[str] = None,
    members: Optional[Mapping[str, Mapping[str, str]]] = None,
) -> Tuple[Dict[str, int], Set[BucketRef]]:
    """Rebuild every aggregate of a context from the ledger.

    Returns a summary (including how many rows had drifted) and the set of
    ``(partition, period, bucket_start)`` references whose cache entries must
    be invalidated.
    """

    lock_context(session, context_type, context_id, exclusive=True)
    members = members or {}
    rebuilt: Dict[Tuple[str, str, Period, datetime], List] = {}
    transactions = session.execute(
        select(PointTransaction)
        .where(PointTransaction.context_type == context_type, PointTransaction.context_id == context_id)
        .order_by(PointTransaction.awarded_at, PointTransaction.transaction_id)
    ).scalars()
    transaction_count = 0
    for transaction in transactions:
        transaction_count += 1
        partition = partition_of(members.get(transaction.student_id), partition_key)
        for bucket in bucketing.buckets_for(transaction.awarded_at, periods):
            key = (transaction.student_id, partition, bucket.period, bucket.start)
            state = rebuilt.get(key)
            if state is None:
                rebuilt[key] = [transaction.amount, transaction.awarded_at, bucket.degraded]
            else:
                state[0] += transaction.amount
                state[1] = min(state[1], transaction.awarded_at)
                state[2] = state[2] or bucket.degraded

    existing = session.execute(
        select(PointAggregate).where(
            PointAggregate.context_type == context_type,
            PointAggregate.context_id == context_id,
        )
    ).scalars().all()
    touched: Set[BucketRef] = set()
    existing_keys = set()
    drift = 0
    for row in existing:
        existing_keys.add((row.student_id, row.partition_key, row.period, row.bucket_start))
        touched.add((row.partition_key, row.period, row.bucket_start))
        state = rebuilt.get((row.student_id, row.partition_key, row.period, row.bucket_start))
        if state is None or state[0] != row.total:
            drift += 1

    session.execute(
        delete(PointAggregate)
        .where(PointAggregate.context_type == context_type, PointAggregate.context_id == context_id)
        .execution_options(synchronize_session=False)
    )
    session.expire_all()
    now = utcnow()
    for (student_id, partition, period, bucket_start), (total, first, degraded) in rebuilt.items():
        touched.add((partition, period, bucket_start))
        session.add(
            PointAggregate(
                student_id=student_id,
                context_type=context_type,
                context_id=context_id,
                partition_key=partition,
                period=period,
                bucket_start=bucket_start,
                total=total,
                first_awarded_at=first,
                degraded=degraded,
                version=1,
                updated_at=now,
            )
        )
    session.flush()

    summary = {
        "transactions": transaction_count,
        "aggregates": len(rebuilt),
        "drifted": drift + len(rebuilt.keys() - existing_keys),
    }
    logger.info("recomputed %s/%s aggregates: %s", context_type.value, context_id, summary)
    return summary, touched
