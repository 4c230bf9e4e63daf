"""Point ledger endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...core.errors import LeaderboardError
from ...models import ContextType
from ...runtime import LeaderboardRuntime, get_runtime
from ...schemas import PointAwardCreate, PointAwardResult, PointTotal, PointTransactionRead, ReversalCreate
from ...services import ledger_service
from ...services.ledger_service import RecordResult

router = APIRouter(prefix="/points", tags=["points"])


def _to_response(result: RecordResult) -> PointAwardResult:
    return PointAwardResult(
        transaction=PointTransactionRead.model_validate(result.transaction),
        duplicate=result.duplicate,
        totals={period.value: total for period, total in result.totals.items()},
        milestones_reached=result.milestones_crossed,
    )


@router.post(
    "",
    response_model=PointAwardResult,
    status_code=status.HTTP_201_CREATED,
    summary="Record a point award",
    responses={
        200: {"description": "Duplicate source_event_id; the existing record is returned"},
        201: {
            "description": "Award recorded",
            "content": {
                "application/json": {
                    "example": {
                        "transaction": {
                            "transaction_id": "5f0e2a8c-1d4b-4c8e-9d7a-3b6f1e2c4a90",
                            "student_id": "S1001",
                            "context_type": "class",
                            "context_id": "C-7A",
                            "amount": 50,
                            "category": "quiz",
                            "source_event_id": "grade-8841",
                            "awarded_at": "2025-11-12T10:15:30",
                            "reverses_transaction_id": None,
                            "recorded_at": "2025-11-12T10:15:31",
                        },
                        "duplicate": False,
                        "totals": {"daily": 50, "weekly": 50, "monthly": 120, "term": 340, "all_time": 910},
                        "milestones_reached": [],
                    }
                }
            },
        },
        422: {"description": "Invalid award"},
        503: {"description": "Concurrent updates kept conflicting; retry"},
    },
)
def record_points(
    payload: PointAwardCreate,
    response: Response,
    db: Session = Depends(get_db),
    runtime: LeaderboardRuntime = Depends(get_runtime),
) -> PointAwardResult:
    """Append a point award to the ledger and update running totals.

    Re-submitting a ``source_event_id`` already seen for the context is a
    no-op that returns the original record.
    """

    try:
        result = ledger_service.record_points(
            db,
            runtime,
            student_id=payload.student_id,
            context_type=payload.context_type,
            context_id=payload.context_id,
            amount=payload.amount,
            category=payload.category,
            source_event_id=payload.source_event_id,
            timestamp=payload.timestamp,
        )
        db.commit()
    except LeaderboardError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    runtime.after_commit(result)
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return _to_response(result)


@router.post(
    "/{transaction_id}/reversal",
    response_model=PointAwardResult,
    status_code=status.HTTP_201_CREATED,
    summary="Reverse a recorded award",
    responses={404: {"description": "Transaction not found"}, 422: {"description": "Not reversible"}},
)
def reverse_points(
    transaction_id: str,
    payload: ReversalCreate,
    response: Response,
    db: Session = Depends(get_db),
    runtime: LeaderboardRuntime = Depends(get_runtime),
) -> PointAwardResult:
    """Record a negative transaction cancelling ``transaction_id``."""

    try:
        result = ledger_service.reverse_points(
            db,
            runtime,
            transaction_id,
            source_event_id=payload.source_event_id,
        )
        db.commit()
    except LeaderboardError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    runtime.after_commit(result)
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return _to_response(result)


@router.get(
    "/total",
    response_model=PointTotal,
    summary="Sum a student's points over a range",
    responses={404: {"description": "Unknown context"}},
)
def get_total(
    *,
    student_id: str = Query(..., min_length=1),
    context_type: ContextType = Query(...),
    context_id: str = Query(..., min_length=1),
    start: Optional[datetime] = Query(None, description="Inclusive lower bound"),
    end: Optional[datetime] = Query(None, description="Exclusive upper bound"),
    db: Session = Depends(get_db),
) -> PointTotal:
    try:
        total = ledger_service.get_total(
            db,
            student_id=student_id,
            context_type=context_type,
            context_id=context_id,
            start=start,
            end=end,
        )
    except LeaderboardError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    return PointTotal(
        student_id=student_id,
        context_type=context_type,
        context_id=context_id,
        start=start,
        end=end,
        total=total,
    )
