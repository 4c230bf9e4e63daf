"""Points ledger: idempotent recording, reversals and totals."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.errors import NotFoundError, ValidationError
from ..integrations import enrollment
from ..models import ContextType, Period, PointTransaction
from ..utils.datetime import to_utc_naive, utcnow
from . import aggregation_service, config_service

if TYPE_CHECKING:
    from ..runtime import LeaderboardRuntime

REVERSAL_CATEGORY = "reversal"


@dataclass(frozen=True)
class PointAwarded:
    """Emitted once per newly recorded transaction; drives cache invalidation."""

    transaction_id: str
    student_id: str
    context_type: ContextType
    context_id: str
    partition_key: str
    amount: int
    awarded_at: datetime
    periods: Tuple[Period, ...]


@dataclass
class RecordResult:
    transaction: PointTransaction
    duplicate: bool
    event: Optional[PointAwarded] = None
    totals: Dict[Period, int] = field(default_factory=dict)
    all_time_total: int = 0
    milestones_crossed: List[int] = field(default_factory=list)


def _find_by_source(
    session: Session,
    context_type: ContextType,
    context_id: str,
    source_event_id: str,
) -> Optional[PointTransaction]:
    stmt = select(PointTransaction).where(
        PointTransaction.context_type == context_type,
        PointTransaction.context_id == context_id,
        PointTransaction.source_event_id == source_event_id,
    )
    return session.execute(stmt).scalar_one_or_none()


def get_transaction(session: Session, transaction_id: str) -> PointTransaction:
    transaction = session.get(PointTransaction, transaction_id)
    if transaction is None:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return transaction


def record_transaction(
    session: Session,
    *,
    student_id: str,
    context_type: ContextType,
    context_id: str,
    amount: int,
    category: str,
    source_event_id: str,
    timestamp: Optional[datetime] = None,
    reverses_transaction_id: Optional[str] = None,
) -> Tuple[PointTransaction, bool]:
    """Append a transaction unless ``source_event_id`` was already seen.

    Returns ``(transaction, duplicate)``. Uniqueness is enforced by the
    database constraint; a concurrent writer losing the race gets the
    winner's row back.
    """

    if not student_id:
        raise ValidationError("student_id is required.")
    if not source_event_id:
        raise ValidationError("source_event_id is required.")
    if not category:
        raise ValidationError("category is required.")
    if amount == 0:
        raise ValidationError("amount must be non-zero.")

    existing = _find_by_source(session, context_type, context_id, source_event_id)
    if existing is not None:
        return existing, True

    transaction = PointTransaction(
        student_id=student_id,
        context_type=context_type,
        context_id=context_id,
        amount=amount,
        category=category,
        source_event_id=source_event_id,
        awarded_at=to_utc_naive(timestamp),
        reverses_transaction_id=reverses_transaction_id,
        recorded_at=utcnow(),
    )
    try:
        with session.begin_nested():
            session.add(transaction)
    except IntegrityError as exc:
        existing = _find_by_source(session, context_type, context_id, source_event_id)
        if existing is not None:
            return existing, True
        if reverses_transaction_id is None:
            raise
        raise ValidationError(
            f"Transaction {reverses_transaction_id} has already been reversed."
        ) from exc
    return transaction, False


def record_points(
    session: Session,
    runtime: "LeaderboardRuntime",
    *,
    student_id: str,
    context_type: ContextType,
    context_id: str,
    amount: int,
    category: str,
    source_event_id: str,
    timestamp: Optional[datetime] = None,
    reverses_transaction_id: Optional[str] = None,
) -> RecordResult:
    """RecordPoints: ledger append plus incremental aggregation.

    The caller commits and then hands the result to
    ``runtime.after_commit`` so invalidation never sees uncommitted rows.
    """

    transaction, duplicate = record_transaction(
        session,
        student_id=student_id,
        context_type=context_type,
        context_id=context_id,
        amount=amount,
        category=category,
        source_event_id=source_event_id,
        timestamp=timestamp,
        reverses_transaction_id=reverses_transaction_id,
    )
    if duplicate:
        return RecordResult(transaction=transaction, duplicate=True)

    config = config_service.get_config(session, context_type, context_id, runtime.settings)
    members = enrollment.active_members(session, context_type, context_id) or {}
    partition_key = enrollment.partition_of(members.get(student_id), config.partition_key)
    buckets = runtime.bucketing.buckets_for(transaction.awarded_at, config.enabled_periods)
    changes = aggregation_service.apply_transaction(
        session,
        transaction,
        buckets,
        partition_key=partition_key,
        max_attempts=runtime.settings.aggregate_update_attempts,
    )

    # all-time total from the ledger, independent of enabled periods
    new_total = _sum_amounts(session, student_id, context_type, context_id)
    old_total = new_total - transaction.amount
    crossed = [m for m in config.point_milestones if old_total < m <= new_total]

    event = PointAwarded(
        transaction_id=transaction.transaction_id,
        student_id=student_id,
        context_type=context_type,
        context_id=context_id,
        partition_key=partition_key,
        amount=transaction.amount,
        awarded_at=transaction.awarded_at,
        periods=tuple(config.enabled_periods),
    )
    return RecordResult(
        transaction=transaction,
        duplicate=False,
        event=event,
        totals={period: new for period, (_, new) in changes.items()},
        all_time_total=new_total,
        milestones_crossed=crossed,
    )


def reverse_points(
    session: Session,
    runtime: "LeaderboardRuntime",
    transaction_id: str,
    *,
    source_event_id: str,
) -> RecordResult:
    """Cancel an award with a negative transaction in the original's buckets."""

    original = get_transaction(session, transaction_id)
    if original.reverses_transaction_id is not None:
        raise ValidationError("A reversal cannot itself be reversed.")
    return record_points(
        session,
        runtime,
        student_id=original.student_id,
        context_type=original.context_type,
        context_id=original.context_id,
        amount=-original.amount,
        category=REVERSAL_CATEGORY,
        source_event_id=source_event_id,
        timestamp=original.awarded_at,
        reverses_transaction_id=original.transaction_id,
    )


def ensure_context(session: Session, context_type: ContextType, context_id: str) -> None:
    """A context is known once configured, enrolled into, or awarded in."""

    if (
        config_service.has_config(session, context_type, context_id)
        or context_has_transactions(session, context_type, context_id)
        or enrollment.is_tracked(session, context_type, context_id)
    ):
        return
    raise NotFoundError(f"Unknown {context_type.value} context {context_id}")


def _sum_amounts(
    session: Session,
    student_id: str,
    context_type: ContextType,
    context_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> int:
    stmt = select(func.coalesce(func.sum(PointTransaction.amount), 0)).where(
        PointTransaction.student_id == student_id,
        PointTransaction.context_type == context_type,
        PointTransaction.context_id == context_id,
    )
    if start is not None:
        stmt = stmt.where(PointTransaction.awarded_at >= to_utc_naive(start))
    if end is not None:
        stmt = stmt.where(PointTransaction.awarded_at < to_utc_naive(end))
    return int(session.execute(stmt).scalar_one())


def get_total(
    session: Session,
    *,
    student_id: str,
    context_type: ContextType,
    context_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> int:
    """Sum of amounts (reversals included) with ``start <= timestamp < end``.

    Unknown contexts raise ``NotFoundError``; a known context reports zero
    for students without awards.
    """

    ensure_context(session, context_type, context_id)
    return _sum_amounts(session, student_id, context_type, context_id, start, end)


def known_contexts(session: Session) -> List[Tuple[ContextType, str]]:
    """Contexts with at least one ledger row."""

    stmt = select(PointTransaction.context_type, PointTransaction.context_id).distinct()
    return [(context_type, context_id) for context_type, context_id in session.execute(stmt)]


def context_has_transactions(session: Session, context_type: ContextType, context_id: str) -> bool:
    stmt = (
        select(PointTransaction.transaction_id)
        .where(PointTransaction.context_type == context_type, PointTransaction.context_id == context_id)
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none() is not None
