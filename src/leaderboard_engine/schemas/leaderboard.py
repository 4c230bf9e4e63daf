"""Leaderboard response schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class LeaderboardEntryRead(BaseModel):
    """One ranked student."""

    student_id: str
    rank: int = Field(..., ge=1)
    previous_rank: Optional[int] = Field(None, description="Null for students new since the last snapshot.")
    rank_change: Optional[int] = Field(None, description="previous_rank - rank; positive means improvement.")
    points: int
    level: int = Field(..., ge=1)
    achievements_count: int = Field(..., ge=0)
    previous_points: Optional[int] = Field(None, description="Points in the previous bucket of the same period.")
    improvement: float = Field(0.0, description="Percent change against previous_points; 0 without a base.")
    improvement_rank: Optional[int] = Field(None, ge=1)
    computed_at: datetime


class LeaderboardRead(BaseModel):
    """A page of a computed leaderboard."""

    context_type: str
    context_id: str
    partition: Optional[str] = None
    period: str
    bucket_start: datetime
    bucket_end: Optional[datetime] = None
    computed_at: datetime
    total_students: int = Field(..., ge=0)
    visible_columns: List[str]
    stale: bool = False
    degraded: bool = False
    entries: List[LeaderboardEntryRead]


class StudentRankRead(BaseModel):
    student_id: str
    period: str
    rank: int
    total_students: int
    points: int
    previous_rank: Optional[int] = None
    rank_change: Optional[int] = None
    percentile: int = Field(..., ge=0, le=100)
    level: int
    achievements_count: int
    previous_points: Optional[int] = None
    improvement: float = 0.0
    improvement_rank: Optional[int] = None
    stale: bool = False


class RecomputeSummary(BaseModel):
    transactions: int
    aggregates: int
    drifted: int
    invalidated: int
