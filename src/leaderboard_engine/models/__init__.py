"""SQLAlchemy models for the leaderboard engine."""

from .leaderboard_config import LeaderboardConfigRecord
from .leaderboard_snapshot import LeaderboardSnapshot, SnapshotStatus
from .point_aggregate import Period, PointAggregate
from .point_transaction import ContextType, PointTransaction
from .scope_member import ScopeMember

__all__ = [
    "ContextType",
    "LeaderboardConfigRecord",
    "LeaderboardSnapshot",
    "Period",
    "PointAggregate",
    "PointTransaction",
    "ScopeMember",
    "SnapshotStatus",
]
