"""pytest configuration and fixtures."""

import os
import tempfile

# Set required environment variables for testing before any imports.
# A file database gives ranking workers their own connections.
os.environ.setdefault(
    "LEADERBOARD_DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.mkdtemp(prefix="leaderboard-"), "test.db"),
)
os.environ.setdefault("LEADERBOARD_SCHEDULER_ENABLED", "false")
os.environ.setdefault("LEADERBOARD_WARM_CACHE_ON_INVALIDATE", "false")

from datetime import datetime  # noqa: E402
from typing import Generator  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import leaderboard_engine.models  # noqa: F401, E402
from leaderboard_engine.core.cache import NullSharedCache  # noqa: E402
from leaderboard_engine.core.config import Settings  # noqa: E402
from leaderboard_engine.core.database import Base, SessionLocal, engine, get_db  # noqa: E402
from leaderboard_engine.integrations.calendar import StaticAcademicCalendar  # noqa: E402
from leaderboard_engine.integrations.webhooks import WebhookDispatcher  # noqa: E402
from leaderboard_engine.models import ContextType  # noqa: E402
from leaderboard_engine.runtime import LeaderboardRuntime, get_runtime  # noqa: E402
from leaderboard_engine.services import ledger_service  # noqa: E402

TERMS = [{"start": "2025-09-01T00:00:00", "end": "2026-01-31T00:00:00"}]


@pytest.fixture
def db() -> Generator:
    Base.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        invalidation_window_seconds=0,
        warm_cache_on_invalidate=False,
        default_rank_change_threshold=2,
        default_point_milestones=[100, 500],
        academic_terms=TERMS,
        scheduler_enabled=False,
    )


@pytest.fixture
def dispatcher() -> MagicMock:
    return MagicMock(spec=WebhookDispatcher)


@pytest.fixture
def runtime(settings, dispatcher) -> Generator:
    rt = LeaderboardRuntime(
        settings,
        calendar=StaticAcademicCalendar(TERMS),
        shared_cache=NullSharedCache(),
        dispatcher=dispatcher,
    )
    yield rt
    rt.close()


@pytest.fixture
def award(db, runtime):
    """Record, commit and publish one award the way the API does."""

    def _award(
        student_id: str,
        amount: int,
        source_event_id: str,
        timestamp: datetime,
        *,
        context_id: str = "C",
        context_type: ContextType = ContextType.CLASS,
        category: str = "quiz",
    ):
        result = ledger_service.record_points(
            db,
            runtime,
            student_id=student_id,
            context_type=context_type,
            context_id=context_id,
            amount=amount,
            category=category,
            source_event_id=source_event_id,
            timestamp=timestamp,
        )
        db.commit()
        runtime.after_commit(result)
        return result

    return _award


@pytest.fixture
def client(db, runtime) -> Generator:
    from leaderboard_engine.main import app

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_runtime] = lambda: runtime
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
