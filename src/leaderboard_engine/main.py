"""FastAPI application entrypoint for the leaderboard engine."""

import logging

from fastapi import FastAPI

from .api.v1.router import api_router
from .core.config import get_settings
from .jobs import register_scheduler
from .runtime import get_runtime


def create_app() -> FastAPI:
    """Instantiate and configure the FastAPI application."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title="Leaderboard Engine API", version="0.1.0")
    app.include_router(api_router, prefix="/api/v1")
    if settings.scheduler_enabled:
        register_scheduler(app)

    @app.on_event("shutdown")
    async def close_runtime() -> None:
        get_runtime().close()

    return app


app = create_app()
