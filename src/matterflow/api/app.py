"""HTTP API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that opens the DB pool and rate-limiter sweepers
- Health endpoint at GET /api/health
- Prometheus metrics at GET /metrics
- Cron, matter and practice routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from matterflow.api.deps import AppServices, close_services, create_services
from matterflow.api.middleware import register_error_handlers
from matterflow.api.routers.cron import router as cron_router
from matterflow.api.routers.matters import router as matters_router
from matterflow.api.routers.practices import router as practices_router
from matterflow.config import Settings, load_settings

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    services: AppServices | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    settings:
        Engine settings; loaded from the environment at startup when omitted.
    services:
        Pre-wired services (tests). When set, the lifespan handler neither
        opens nor closes a database pool.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: AppServices | None = None
        if getattr(app.state, "services", None) is None:
            owned = await create_services(settings or load_settings())
            app.state.services = owned
            logger.info("API services initialized for database %s", owned.settings.db_name)
        try:
            yield
        finally:
            if owned is not None:
                await close_services(owned)
                app.state.services = None

    app = FastAPI(
        title="MatterFlow Sync API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.services = services

    register_error_handlers(app)

    app.include_router(cron_router)
    app.include_router(matters_router)
    app.include_router(practices_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app
