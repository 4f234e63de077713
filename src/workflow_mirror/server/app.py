"""FastAPI app factory.

Endpoints are thin wrappers over the mirror's services.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from workflow_mirror import __version__
from workflow_mirror.mirror import Mirror
from workflow_mirror.server.config import ServerSettings
from workflow_mirror.server.router import router
from workflow_mirror.server.ticker import start_ticker

logger = logging.getLogger(__name__)


def create_app(mirror: Mirror, *, settings: ServerSettings | None = None) -> FastAPI:
    settings = settings or ServerSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        ticker = None
        if settings.run_ticker:
            ticker = start_ticker(
                mirror, interval_seconds=mirror.config.execution.screenshot_interval_seconds
            )
        try:
            yield
        finally:
            if ticker is not None:
                ticker.stop(timeout=settings.shutdown_timeout_seconds)
            for watch in list(app.state.watches.values()):
                with mirror.lock:
                    mirror.service.release(watch)
            app.state.watches.clear()
            mirror.close()
            logger.info("Mirror closed")

    app = FastAPI(
        title="Workflow Mirror",
        version=__version__,
        description="REST API over the workflow mirror's sessions, runs and run controls.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.mirror = mirror
    app.state.watches = {}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api")
    return app
