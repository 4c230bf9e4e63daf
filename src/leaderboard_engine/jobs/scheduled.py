"""Background scheduler for recompute audits, snapshots and retention."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from sqlalchemy.orm import Session

from ..core.errors import LeaderboardError
from ..runtime import LeaderboardRuntime, get_runtime
from ..services import config_service, leaderboard_service, ledger_service, snapshot_service
from ..services.invalidation_bus import LeaderboardTarget
from ..utils.datetime import to_utc_naive

logger = logging.getLogger(__name__)

_scheduler = AsyncIOScheduler(timezone="UTC")


def run_recompute_audit(session: Session, runtime: LeaderboardRuntime) -> Dict[str, int]:
    """Rebuild every known context; returns totals for logging."""

    summary = {"contexts": 0, "transactions": 0, "aggregates": 0, "drifted": 0}
    targets: List[LeaderboardTarget] = []
    contexts = set(ledger_service.known_contexts(session)) | set(config_service.configured_contexts(session))
    for context_type, context_id in sorted(contexts, key=lambda item: (item[0].value, item[1])):
        try:
            context_summary, context_targets = leaderboard_service.rebuild_context(
                session, runtime, context_type, context_id
            )
        except LeaderboardError as exc:
            logger.warning("skipping recompute of %s/%s: %s", context_type.value, context_id, exc.detail)
            continue
        summary["contexts"] += 1
        for key in ("transactions", "aggregates", "drifted"):
            summary[key] += context_summary[key]
        targets.extend(context_targets)
    session.commit()
    runtime.bus.invalidate(targets)
    return summary


def run_snapshot_cycle(
    session: Session,
    runtime: LeaderboardRuntime,
    current_time: Optional[datetime] = None,
) -> Dict[str, int]:
    results = snapshot_service.snapshot_closed_periods(session, runtime, to_utc_naive(current_time))
    session.commit()
    for result in results:
        runtime.notifier.emit(result.events)
    return {
        "created": sum(1 for result in results if result.created),
        "existing": sum(1 for result in results if not result.created),
    }


def run_retention(
    session: Session,
    runtime: LeaderboardRuntime,
    current_time: Optional[datetime] = None,
) -> Dict[str, int]:
    """Archive snapshots past retention; nothing is deleted."""

    archived = snapshot_service.archive_snapshots(
        session,
        runtime.settings.snapshot_retention_days,
        to_utc_naive(current_time),
    )
    session.commit()
    return archived


def _execute(name: str, job: Callable[[Session, LeaderboardRuntime], Dict[str, int]]) -> None:
    runtime = get_runtime()
    session = runtime.session_factory()
    try:
        summary = job(session, runtime)
        logger.info("%s completed: %s", name, summary)
    except Exception:  # pragma: no cover - safeguard for background job
        session.rollback()
        logger.exception("%s job failed", name)
        raise
    finally:
        session.close()


@_scheduler.scheduled_job("cron", hour=0, minute=5, id="snapshot_cycle", misfire_grace_time=3600)
async def _snapshot_job() -> None:
    _execute("snapshot cycle", run_snapshot_cycle)


@_scheduler.scheduled_job("cron", hour=2, minute=30, id="recompute_audit", misfire_grace_time=3600)
async def _audit_job() -> None:
    _execute("recompute audit", run_recompute_audit)


@_scheduler.scheduled_job("cron", hour=3, minute=15, id="snapshot_retention", misfire_grace_time=3600)
async def _retention_job() -> None:
    _execute("snapshot retention", run_retention)


def register_scheduler(app: FastAPI) -> None:
    """Attach APScheduler lifecycle hooks to the FastAPI app."""

    @app.on_event("startup")
    async def start_scheduler() -> None:
        if not _scheduler.running:
            _scheduler.start()
            logger.info("leaderboard scheduler started")

    @app.on_event("shutdown")
    async def shutdown_scheduler() -> None:
        if _scheduler.running:
            _scheduler.shutdown(wait=False)
            logger.info("leaderboard scheduler stopped")
