"""Per-context configuration, membership sync and recompute endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...core.errors import LeaderboardError
from ...integrations import enrollment
from ...models import ContextType
from ...runtime import LeaderboardRuntime, get_runtime
from ...schemas import (
    LeaderboardConfigRead,
    LeaderboardConfigUpdate,
    MembershipSync,
    MembershipSyncResult,
    RecomputeSummary,
)
from ...services import config_service, leaderboard_service, ledger_service
from ...services.config_service import LeaderboardConfig

router = APIRouter(prefix="/leaderboards", tags=["configuration"])


def _config_read(config: LeaderboardConfig) -> LeaderboardConfigRead:
    return LeaderboardConfigRead(
        context_type=config.context_type,
        context_id=config.context_id,
        visible_columns=config.visible_columns,
        enabled_periods=config.enabled_periods,
        default_period=config.default_period,
        partition_key=config.partition_key,
        tie_break=config.tie_break,
        rank_change_threshold=config.rank_change_threshold,
        point_milestones=config.point_milestones,
    )


@router.get("/{context_type}/{context_id}/config", response_model=LeaderboardConfigRead, summary="Get configuration")
def get_config(
    context_type: ContextType,
    context_id: str,
    db: Session = Depends(get_db),
    runtime: LeaderboardRuntime = Depends(get_runtime),
) -> LeaderboardConfigRead:
    """Stored configuration, or the defaults when none was saved."""

    return _config_read(config_service.get_config(db, context_type, context_id, runtime.settings))


@router.put(
    "/{context_type}/{context_id}/config",
    response_model=LeaderboardConfigRead,
    summary="Update configuration",
    responses={422: {"description": "Configuration rejected"}},
)
def update_config(
    context_type: ContextType,
    context_id: str,
    payload: LeaderboardConfigUpdate,
    db: Session = Depends(get_db),
    runtime: LeaderboardRuntime = Depends(get_runtime),
) -> LeaderboardConfigRead:
    """Validate and apply a partial update.

    Changing enabled periods or the partition key rebuilds the context's
    aggregates in the same transaction.
    """

    changes = payload.model_dump(exclude_unset=True)
    targets = []
    try:
        config, rebuild = config_service.update_config(db, context_type, context_id, changes, runtime.settings)
        if rebuild and ledger_service.context_has_transactions(db, context_type, context_id):
            _, targets = leaderboard_service.rebuild_context(db, runtime, context_type, context_id)
        db.commit()
    except LeaderboardError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    runtime.bus.invalidate(targets)
    return _config_read(config)


@router.put(
    "/{context_type}/{context_id}/members",
    response_model=MembershipSyncResult,
    summary="Sync scope membership from the enrollment service",
)
def sync_members(
    context_type: ContextType,
    context_id: str,
    payload: MembershipSync,
    db: Session = Depends(get_db),
    runtime: LeaderboardRuntime = Depends(get_runtime),
) -> MembershipSyncResult:
    """Upsert members; unenrolled students drop out of future rankings only."""

    try:
        summary = enrollment.sync_members(
            db,
            context_type,
            context_id,
            [member.model_dump() for member in payload.members],
        )
        _, targets = leaderboard_service.rebuild_context(db, runtime, context_type, context_id)
        db.commit()
    except LeaderboardError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    runtime.bus.invalidate(targets)
    return MembershipSyncResult(**summary, invalidated=len(targets))


@router.post(
    "/{context_type}/{context_id}/recompute",
    response_model=RecomputeSummary,
    summary="Rebuild running totals from the ledger",
    responses={404: {"description": "Unknown context"}},
)
def recompute(
    context_type: ContextType,
    context_id: str,
    db: Session = Depends(get_db),
    runtime: LeaderboardRuntime = Depends(get_runtime),
) -> RecomputeSummary:
    """Authoritative recovery path for drift in the incremental totals."""

    try:
        summary, targets = leaderboard_service.rebuild_context(db, runtime, context_type, context_id)
        db.commit()
    except LeaderboardError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    runtime.bus.invalidate(targets)
    return RecomputeSummary(**summary, invalidated=len(targets))
