"""Public schema exports."""

from .config import (
    LeaderboardConfigRead,
    LeaderboardConfigUpdate,
    MembershipSync,
    MembershipSyncResult,
    ScopeMemberWrite,
)
from .leaderboard import LeaderboardEntryRead, LeaderboardRead, RecomputeSummary, StudentRankRead
from .points import PointAwardCreate, PointAwardResult, PointTotal, PointTransactionRead, ReversalCreate
from .snapshot import SnapshotCreate, SnapshotEntry, SnapshotRead, TrendRead

__all__ = [
	"LeaderboardConfigRead",
	"LeaderboardConfigUpdate",
	"LeaderboardEntryRead",
	"LeaderboardRead",
	"MembershipSync",
	"MembershipSyncResult",
	"PointAwardCreate",
	"PointAwardResult",
	"PointTotal",
	"PointTransactionRead",
	"RecomputeSummary",
	"ReversalCreate",
	"ScopeMemberWrite",
	"SnapshotCreate",
	"SnapshotEntry",
	"SnapshotRead",
	"StudentRankRead",
	"TrendRead",
]
