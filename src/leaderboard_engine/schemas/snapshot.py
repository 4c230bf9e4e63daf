"""Snapshot and history schemas."""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models import ContextType, Period, SnapshotStatus


class SnapshotCreate(BaseModel):
    period: Period
    as_of: Optional[datetime] = Field(None, description="Capture instant; defaults to now.")
    partition: Optional[str] = None


class SnapshotEntry(BaseModel):
    student_id: str
    rank: int
    previous_rank: Optional[int] = None
    points: int
    level: int
    achievements_count: int
    previous_points: Optional[int] = None
    improvement: float = 0.0
    improvement_rank: Optional[int] = None


class SnapshotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    snapshot_id: str
    context_type: ContextType
    context_id: str
    partition_key: str
    period: Period
    snapshot_date: date
    as_of: datetime
    bucket_start: datetime
    entries: List[SnapshotEntry]
    status: SnapshotStatus = SnapshotStatus.ACTIVE
    archived_at: Optional[datetime] = None
    created_at: datetime


class TrendRead(BaseModel):
    """Either ``student_id``/``trend`` or ``trends`` is populated."""

    student_id: Optional[str] = None
    trend: Optional[List[Dict[str, Any]]] = None
    trends: Optional[List[Dict[str, Any]]] = None
