"""Materialized running totals per student, context, partition and period bucket."""

import enum

from sqlalchemy import Boolean, Column, DateTime, Enum, Index, Integer, String, UniqueConstraint

from ..core.database import Base
from ..utils.datetime import utcnow
from .point_transaction import ContextType


class Period(str, enum.Enum):
    """Aggregation time window."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    TERM = "term"
    ALL_TIME = "all_time"


class PointAggregate(Base):
    """Derived running total; rebuildable from the ledger at any time."""

    __tablename__ = "point_aggregates"
    __table_args__ = (
        UniqueConstraint(
            "student_id",
            "context_type",
            "context_id",
            "partition_key",
            "period",
            "bucket_start",
            name="point_aggregates_bucket_unique",
        ),
        Index(
            "point_aggregates_leaderboard",
            "context_type",
            "context_id",
            "partition_key",
            "period",
            "bucket_start",
        ),
    )

    aggregate_id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(String(64), nullable=False)
    context_type = Column(Enum(ContextType, name="context_type"), nullable=False)
    context_id = Column(String(64), nullable=False)
    partition_key = Column(String(64), nullable=False, default="")
    period = Column(Enum(Period, name="leaderboard_period"), nullable=False)
    bucket_start = Column(DateTime, nullable=False)
    total = Column(Integer, nullable=False, default=0)
    first_awarded_at = Column(DateTime, nullable=False)
    degraded = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
