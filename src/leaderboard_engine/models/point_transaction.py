"""Append-only ledger of point awards and reversals."""

import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Integer, String, UniqueConstraint

from ..core.database import Base
from ..utils.datetime import utcnow


class ContextType(str, enum.Enum):
    """Organizational scope a leaderboard is computed over."""

    CLASS = "class"
    SUBJECT = "subject"
    CAMPUS = "campus"


class PointTransaction(Base):
    """Immutable point fact. Reversals are new rows pointing at the original."""

    __tablename__ = "point_transactions"
    __table_args__ = (
        UniqueConstraint(
            "context_type",
            "context_id",
            "source_event_id",
            name="point_transactions_source_event_unique",
        ),
        UniqueConstraint("reverses_transaction_id", name="point_transactions_single_reversal"),
        Index("point_transactions_context_time", "context_type", "context_id", "awarded_at"),
        Index("point_transactions_student", "student_id", "context_type", "context_id"),
    )

    transaction_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id = Column(String(64), nullable=False)
    context_type = Column(Enum(ContextType, name="context_type"), nullable=False)
    context_id = Column(String(64), nullable=False)
    amount = Column(Integer, nullable=False)
    category = Column(String(64), nullable=False)
    source_event_id = Column(String(128), nullable=False)
    awarded_at = Column(DateTime, nullable=False)
    reverses_transaction_id = Column(
        String(36),
        ForeignKey("point_transactions.transaction_id", ondelete="RESTRICT"),
    )
    recorded_at = Column(DateTime, default=utcnow, nullable=False)
