"""Leaderboard read endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...core.errors import LeaderboardError
from ...models import ContextType, Period
from ...runtime import LeaderboardRuntime, get_runtime
from ...schemas import LeaderboardEntryRead, LeaderboardRead, StudentRankRead
from ...services import leaderboard_service

router = APIRouter(prefix="/leaderboards", tags=["leaderboard"])


@router.get(
    "/{context_type}/{context_id}",
    response_model=LeaderboardRead,
    summary="Ranked students for a context and period",
    responses={
        200: {
            "description": "Leaderboard page ordered by rank",
            "content": {
                "application/json": {
                    "example": {
                        "context_type": "class",
                        "context_id": "C-7A",
                        "partition": None,
                        "period": "weekly",
                        "bucket_start": "2025-11-10T00:00:00",
                        "bucket_end": "2025-11-17T00:00:00",
                        "computed_at": "2025-11-12T10:16:02",
                        "total_students": 2,
                        "visible_columns": ["rank", "student", "points", "rank_change"],
                        "stale": False,
                        "degraded": False,
                        "entries": [
                            {
                                "student_id": "S1001",
                                "rank": 1,
                                "previous_rank": 2,
                                "rank_change": 1,
                                "points": 80,
                                "level": 1,
                                "achievements_count": 0,
                                "previous_points": 40,
                                "improvement": 100.0,
                                "improvement_rank": 1,
                                "computed_at": "2025-11-12T10:16:02",
                            }
                        ],
                    }
                }
            },
        },
        404: {"description": "Unknown context"},
        422: {"description": "Period not enabled or partition missing"},
    },
)
def get_leaderboard(
    context_type: ContextType,
    context_id: str,
    period: Optional[Period] = Query(None, description="Defaults to the context's default period"),
    limit: int = Query(50, ge=1, le=500, description="Number of entries to return"),
    offset: int = Query(0, ge=0, description="Entries to skip for pagination"),
    partition: Optional[str] = Query(None, description="Partition label when the leaderboard is partitioned"),
    db: Session = Depends(get_db),
    runtime: LeaderboardRuntime = Depends(get_runtime),
) -> LeaderboardRead:
    """Return ranked students; ``stale`` is set when the result is a fallback."""

    try:
        page = leaderboard_service.get_leaderboard(
            db,
            runtime,
            context_type,
            context_id,
            period,
            limit=limit,
            offset=offset,
            partition=partition,
        )
    except LeaderboardError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    return LeaderboardRead(
        context_type=page.context_type,
        context_id=page.context_id,
        partition=page.partition_key or None,
        period=page.period,
        bucket_start=page.bucket_start,
        bucket_end=page.bucket_end,
        computed_at=page.computed_at,
        total_students=page.total_students,
        visible_columns=page.visible_columns,
        stale=page.stale,
        degraded=page.degraded,
        entries=[
            LeaderboardEntryRead(
                student_id=entry.student_id,
                rank=entry.rank,
                previous_rank=entry.previous_rank,
                rank_change=entry.rank_delta,
                points=entry.points,
                level=entry.level,
                achievements_count=entry.achievements_count,
                previous_points=entry.previous_points,
                improvement=entry.improvement,
                improvement_rank=entry.improvement_rank,
                computed_at=entry.computed_at,
            )
            for entry in page.entries
        ],
    )


@router.get(
    "/{context_type}/{context_id}/students/{student_id}",
    response_model=StudentRankRead,
    summary="A single student's rank",
    responses={404: {"description": "Unknown context or student not ranked"}},
)
def get_student_rank(
    context_type: ContextType,
    context_id: str,
    student_id: str,
    period: Optional[Period] = Query(None),
    partition: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    runtime: LeaderboardRuntime = Depends(get_runtime),
) -> StudentRankRead:
    try:
        rank = leaderboard_service.get_student_rank(
            db,
            runtime,
            student_id,
            context_type,
            context_id,
            period,
            partition=partition,
        )
    except LeaderboardError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    return StudentRankRead(
        student_id=rank.student_id,
        period=rank.period,
        rank=rank.rank,
        total_students=rank.total_students,
        points=rank.points,
        previous_rank=rank.previous_rank,
        rank_change=rank.rank_delta,
        percentile=rank.percentile,
        level=rank.level,
        achievements_count=rank.achievements_count,
        previous_points=rank.previous_points,
        improvement=rank.improvement,
        improvement_rank=rank.improvement_rank,
        stale=rank.stale,
    )
