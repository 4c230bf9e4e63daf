"""Primary API router definition."""

from fastapi import APIRouter

from . import contexts, leaderboard, points, snapshots

api_router = APIRouter()

api_router.include_router(points.router)
api_router.include_router(leaderboard.router)
api_router.include_router(snapshots.router)
api_router.include_router(contexts.router)


@api_router.get("/health", tags=["health"])
async def healthcheck() -> dict[str, str]:
    """Basic liveness check."""
    return {"status": "ok"}
