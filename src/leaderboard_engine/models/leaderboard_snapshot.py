"""Immutable historical captures of computed leaderboards."""

import enum
import uuid

from sqlalchemy import JSON, Column, Date, DateTime, Enum, Index, String, UniqueConstraint

from ..core.database import Base
from ..utils.datetime import utcnow
from .point_aggregate import Period
from .point_transaction import ContextType


class SnapshotStatus(str, enum.Enum):
    """Archived snapshots are kept but left out of default history reads."""

    ACTIVE = "active"
    ARCHIVED = "archived"


class LeaderboardSnapshot(Base):
    """One row per (context, partition, period, snapshot date).

    Entries are never updated; retention only moves a row to ``ARCHIVED``.
    """

    __tablename__ = "leaderboard_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "context_type",
            "context_id",
            "partition_key",
            "period",
            "snapshot_date",
            name="leaderboard_snapshots_key_unique",
        ),
        Index(
            "leaderboard_snapshots_history",
            "context_type",
            "context_id",
            "snapshot_date",
        ),
        Index("leaderboard_snapshots_status", "status", "period", "snapshot_date"),
    )

    snapshot_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    context_type = Column(Enum(ContextType, name="context_type"), nullable=False)
    context_id = Column(String(64), nullable=False)
    partition_key = Column(String(64), nullable=False, default="")
    period = Column(Enum(Period, name="leaderboard_period"), nullable=False)
    snapshot_date = Column(Date, nullable=False)
    as_of = Column(DateTime, nullable=False)
    bucket_start = Column(DateTime, nullable=False)
    entries = Column(JSON, nullable=False, default=list)
    status = Column(
        Enum(SnapshotStatus, name="snapshot_status"),
        nullable=False,
        default=SnapshotStatus.ACTIVE,
    )
    archived_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
