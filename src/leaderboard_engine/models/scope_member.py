"""Local mirror of scope membership supplied by the enrollment service."""

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, Integer, String, UniqueConstraint

from ..core.database import Base
from ..utils.datetime import utcnow
from .point_transaction import ContextType


class ScopeMember(Base):
    """A student's membership in a class, subject or campus."""

    __tablename__ = "scope_members"
    __table_args__ = (
        UniqueConstraint("student_id", "context_type", "context_id", name="scope_members_unique"),
    )

    member_id = Column(Integer, primary_key=True, autoincrement=True)
    student_id = Column(String(64), nullable=False)
    context_type = Column(Enum(ContextType, name="context_type"), nullable=False)
    context_id = Column(String(64), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    attributes = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
