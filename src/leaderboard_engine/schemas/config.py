"""Leaderboard configuration and membership schemas."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import ContextType, Period
from ..services.ranking import TieBreak


class LeaderboardConfigRead(BaseModel):
    context_type: ContextType
    context_id: str
    visible_columns: List[str]
    enabled_periods: List[Period]
    default_period: Period
    partition_key: Optional[str] = None
    tie_break: TieBreak
    rank_change_threshold: int
    point_milestones: List[int]


class LeaderboardConfigUpdate(BaseModel):
    """Partial update; omitted fields keep their current value."""

    visible_columns: Optional[List[str]] = None
    enabled_periods: Optional[List[Period]] = None
    default_period: Optional[Period] = None
    partition_key: Optional[str] = Field(
        None,
        description="Member attribute used to split the leaderboard, e.g. 'cohort'. Empty string disables.",
    )
    tie_break: Optional[TieBreak] = None
    rank_change_threshold: Optional[int] = None
    point_milestones: Optional[List[int]] = None


class ScopeMemberWrite(BaseModel):
    student_id: str = Field(..., min_length=1, max_length=64)
    active: bool = True
    attributes: Dict[str, str] = Field(default_factory=dict)


class MembershipSync(BaseModel):
    members: List[ScopeMemberWrite]


class MembershipSyncResult(BaseModel):
    added: int
    updated: int
    deactivated: int
    invalidated: int
