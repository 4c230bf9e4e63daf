"""Snapshot, history and trend endpoints."""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...core.errors import LeaderboardError
from ...models import ContextType, Period
from ...runtime import LeaderboardRuntime, get_runtime
from ...schemas import SnapshotCreate, SnapshotRead, TrendRead
from ...services import snapshot_service

router = APIRouter(prefix="/leaderboards", tags=["history"])


@router.post(
    "/{context_type}/{context_id}/snapshots",
    response_model=SnapshotRead,
    status_code=status.HTTP_201_CREATED,
    summary="Capture a leaderboard snapshot",
    responses={
        200: {"description": "Snapshot already existed for this date"},
        404: {"description": "Unknown context"},
    },
)
def create_snapshot(
    context_type: ContextType,
    context_id: str,
    payload: SnapshotCreate,
    response: Response,
    db: Session = Depends(get_db),
    runtime: LeaderboardRuntime = Depends(get_runtime),
) -> SnapshotRead:
    """Idempotently persist the leaderboard as of ``as_of``."""

    try:
        result = snapshot_service.create_snapshot(
            db,
            runtime,
            context_type,
            context_id,
            payload.period,
            payload.as_of,
            partition=payload.partition,
        )
        db.commit()
    except LeaderboardError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    runtime.notifier.emit(result.events)
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return SnapshotRead.model_validate(result.snapshot)


@router.get(
    "/{context_type}/{context_id}/history",
    response_model=List[SnapshotRead],
    summary="Snapshots over a date range",
)
def get_history(
    context_type: ContextType,
    context_id: str,
    start: Optional[date] = Query(None, description="Inclusive first snapshot date"),
    end: Optional[date] = Query(None, description="Inclusive last snapshot date"),
    period: Optional[Period] = Query(None),
    partition: Optional[str] = Query(None),
    include_archived: bool = Query(False, description="Also return snapshots moved out by retention"),
    db: Session = Depends(get_db),
) -> List[SnapshotRead]:
    """Time-ordered snapshots; read-only."""

    try:
        snapshots = snapshot_service.get_history(
            db,
            context_type,
            context_id,
            start=start,
            end=end,
            period=period,
            partition=partition,
            include_archived=include_archived,
        )
    except LeaderboardError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    return [SnapshotRead.model_validate(snapshot) for snapshot in snapshots]


@router.get(
    "/{context_type}/{context_id}/trends",
    response_model=TrendRead,
    response_model_exclude_none=True,
    summary="Rank and points trends from snapshots",
)
def get_trends(
    context_type: ContextType,
    context_id: str,
    period: Period = Query(Period.MONTHLY),
    months: int = Query(3, ge=1, le=36),
    student_id: Optional[str] = Query(None),
    partition: Optional[str] = Query(None),
    db: Session = Depends(get_db),
) -> TrendRead:
    try:
        trends = snapshot_service.get_trends(
            db,
            context_type,
            context_id,
            period,
            months=months,
            student_id=student_id,
            partition=partition,
        )
    except LeaderboardError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    if student_id:
        return TrendRead(student_id=trends["studentId"], trend=trends["trend"])
    return TrendRead(trends=trends["trends"])
