"""FastAPI application entrypoint for the AutoDJ relay."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI

from autodj.api import router as api_router
from autodj.core.config import settings
from autodj.core.logging_config import configure_logging
from autodj.services.engine import RelayEngine

logger = logging.getLogger(__name__)


def create_app(engine: Optional[RelayEngine] = None, *, manage_engine: bool = True) -> FastAPI:
    """Build the status application around a relay engine.

    With ``manage_engine`` the engine is started and stopped with the app;
    a failure to start (for example no usable sources) aborts startup.
    """

    configure_logging()

    app = FastAPI(title="AutoDJ Relay", version="0.1.0", debug=settings.debug)
    app.state.engine = engine or RelayEngine(settings)
    app.include_router(api_router)

    @app.on_event("startup")
    async def startup() -> None:
        """Bring the relay up."""

        if manage_engine:
            await app.state.engine.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        """Stop the relay in order: loop, encoder, periodic tasks."""

        if manage_engine:
            await app.state.engine.stop()

    logger.info("AutoDJ application initialised", extra={"env": settings.app_env, "station": settings.station_name})
    return app
