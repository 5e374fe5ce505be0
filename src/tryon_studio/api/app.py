"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tryon_studio import __version__
from tryon_studio.api.errors import register_exception_handlers
from tryon_studio.api.routes import health_router, router
from tryon_studio.config import Settings
from tryon_studio.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, *, runtime: Runtime | None = None) -> FastAPI:
    """Build the app; the reconciliation scheduler lives as long as the app does.

    A ``runtime`` passed in is owned by the caller and is not closed on shutdown.
    """

    owns_runtime = runtime is None
    if runtime is None:
        resolved = settings or Settings.from_env()
        resolved.validate()
        runtime = build_runtime(resolved)
    active = runtime

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if active.settings.polling.enabled:
            active.scheduler.start()
        else:
            logger.info("Background polling disabled (TRYON_POLLING_ENABLED=0)")
        try:
            yield
        finally:
            if owns_runtime:
                active.close()
            else:
                active.scheduler.stop()

    app = FastAPI(
        title="tryon-studio",
        version=__version__,
        description="Virtual try-on task orchestrator",
        lifespan=lifespan,
    )
    app.state.runtime = active
    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(health_router)
    return app
