"""Pydantic schemas for point ledger endpoints."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models import ContextType


class PointAwardCreate(BaseModel):
    """Request body for recording a point award."""

    student_id: str = Field(..., min_length=1, max_length=64)
    context_type: ContextType
    context_id: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., description="Signed point delta; negative values reverse earlier awards.")
    category: str = Field(..., min_length=1, max_length=64)
    source_event_id: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="Idempotency key, unique per context.",
    )
    timestamp: Optional[datetime] = Field(None, description="When the points were earned; defaults to now.")


class ReversalCreate(BaseModel):
    """Request body for reversing a recorded transaction."""

    source_event_id: str = Field(..., min_length=1, max_length=128)


class PointTransactionRead(BaseModel):
    """Stored ledger row."""

    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    student_id: str
    context_type: ContextType
    context_id: str
    amount: int
    category: str
    source_event_id: str
    awarded_at: datetime
    reverses_transaction_id: Optional[str] = None
    recorded_at: datetime


class PointAwardResult(BaseModel):
    """Outcome of RecordPoints; ``duplicate`` marks an idempotent replay."""

    transaction: PointTransactionRead
    duplicate: bool
    totals: Dict[str, int] = Field(default_factory=dict)
    milestones_reached: List[int] = Field(default_factory=list)


class PointTotal(BaseModel):
    student_id: str
    context_type: ContextType
    context_id: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    total: int
