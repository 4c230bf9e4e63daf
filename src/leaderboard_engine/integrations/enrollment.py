"""Scope membership lookups backed by the ``scope_members`` mirror table."""

from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import ContextType, ScopeMember
from ..utils.datetime import utcnow

UNASSIGNED_PARTITION = "unassigned"


def active_members(
    session: Session,
    context_type: ContextType,
    context_id: str,
) -> Optional[Dict[str, Mapping[str, str]]]:
    """Return ``{student_id: attributes}`` for active members.

    ``None`` when the enrollment service has never reported membership for the
    context, in which case callers rank everyone present in the ledger.
    """

    rows = session.execute(
        select(ScopeMember).where(
            ScopeMember.context_type == context_type,
            ScopeMember.context_id == context_id,
        )
    ).scalars().all()
    if not rows:
        return None
    return {row.student_id: dict(row.attributes or {}) for row in rows if row.active}


def is_tracked(session: Session, context_type: ContextType, context_id: str) -> bool:
    stmt = (
        select(ScopeMember.member_id)
        .where(ScopeMember.context_type == context_type, ScopeMember.context_id == context_id)
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none() is not None


def partition_of(attributes: Optional[Mapping[str, str]], partition_key: Optional[str]) -> str:
    """Resolve the partition label for a member; ``""`` when partitioning is off."""

    if not partition_key:
        return ""
    value = (attributes or {}).get(partition_key)
    return str(value) if value else UNASSIGNED_PARTITION


def sync_members(
    session: Session,
    context_type: ContextType,
    context_id: str,
    members: Iterable[Mapping],
) -> Dict[str, int]:
    """Upsert membership rows reported by the enrollment service.

    Each item carries ``student_id``, ``active`` and optional ``attributes``.
    Students missing from the payload are left untouched.
    """

    existing = {
        row.student_id: row
        for row in session.execute(
            select(ScopeMember).where(
                ScopeMember.context_type == context_type,
                ScopeMember.context_id == context_id,
            )
        ).scalars()
    }
    summary = {"added": 0, "updated": 0, "deactivated": 0}
    now = utcnow()
    for item in members:
        student_id = item["student_id"]
        active = bool(item.get("active", True))
        attributes = dict(item.get("attributes") or {})
        row = existing.get(student_id)
        if row is None:
            row = ScopeMember(
                student_id=student_id,
                context_type=context_type,
                context_id=context_id,
                active=active,
                attributes=attributes,
                updated_at=now,
            )
            session.add(row)
            existing[student_id] = row
            summary["added"] += 1
            continue
        if row.active and not active:
            summary["deactivated"] += 1
        else:
            summary["updated"] += 1
        row.active = active
        row.attributes = attributes
        row.updated_at = now
    session.flush()
    return summary
