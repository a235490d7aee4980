from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from api.config.settings import Settings, load_settings
from api.dashboard import BackendFactory, DashboardSessionStore, router as dashboard_router
from api.metrics import set_build_info

SERVICE_NAME = "evescope"
VERSION = os.getenv("EVS_VERSION", "0.1.0")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

logger = logging.getLogger("evescope")


def build_app(
    settings: Optional[Settings] = None,
    backend_factory: Optional[BackendFactory] = None,
) -> FastAPI:
    """Build and configure the FastAPI application."""
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s",
            SERVICE_NAME,
            VERSION,
            extra={"env": settings.env, "backend": settings.backend_url},
        )
        yield
        await app.state.sessions.close_all()
        logger.info("Shutting down %s", SERVICE_NAME)

    app = FastAPI(
        title="evescope",
        version=VERSION,
        description="evescope - network security event dashboards.",
        openapi_tags=[
            {"name": "health", "description": "Service health endpoints"},
            {"name": "meta", "description": "Service metadata"},
            {"name": "dashboard", "description": "Dashboard sessions, filters and charts"},
        ],
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.sessions = DashboardSessionStore(settings, backend_factory)
    set_build_info(VERSION, settings.env)

    Instrumentator().instrument(app).expose(app)

    app.include_router(dashboard_router)

    @app.get("/health/live", tags=["health"])
    async def health_live() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/", tags=["meta"])
    async def root() -> dict[str, str]:
        return {"service": SERVICE_NAME, "status": "ok", "version": app.version}

    return app

