"""FastAPI application entrypoint.

Exposes the operational sync surface and a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI

from . import models  # noqa: F401  (metadata for Alembic)
from . import schemas
from .routers import sync as sync_router
from .telemetry import init_sentry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="adsync API",
        description="""
        Operational surface of the ad-metrics ingestion core.

        - Enqueue sync jobs and inspect queue statistics
        - Read per-connection backfill progress
        - Trigger historical backfills and cancel jobs

        Authentication is handled by the gateway in front of this service.
        """,
        version="1.0.0",
    )

    app.include_router(sync_router.router)

    @app.get("/health", response_model=schemas.HealthResponse, tags=["Health"], summary="Health check")
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
