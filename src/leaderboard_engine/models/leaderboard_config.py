"""Per-context leaderboard settings."""

from sqlalchemy import JSON, Column, DateTime, Enum, Integer, String, UniqueConstraint

from ..core.database import Base
from ..utils.datetime import utcnow
from .point_transaction import ContextType


class LeaderboardConfigRecord(Base):
    """Stored configuration for one context; absent rows fall back to defaults."""

    __tablename__ = "leaderboard_configs"
    __table_args__ = (
        UniqueConstraint("context_type", "context_id", name="leaderboard_configs_context_unique"),
    )

    config_id = Column(Integer, primary_key=True, autoincrement=True)
    context_type = Column(Enum(ContextType, name="context_type"), nullable=False)
    context_id = Column(String(64), nullable=False)
    visible_columns = Column(JSON, nullable=False)
    enabled_periods = Column(JSON, nullable=False)
    default_period = Column(String(16), nullable=False)
    partition_key = Column(String(64))
    tie_break = Column(String(32), nullable=False, default="earliest_timestamp")
    rank_change_threshold = Column(Integer, nullable=False)
    point_milestones = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
