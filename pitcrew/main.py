"""Pitcrew application entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from pitcrew import __version__
from pitcrew.api.dependencies import close_backends
from pitcrew.api.proxy import router as proxy_router
from pitcrew.api.v1 import router as v1_router
from pitcrew.config import get_settings
from pitcrew.db.session import close_db, init_db
from pitcrew.errors import PitcrewError
from pitcrew.services.lifecycle import (
    init_background_services,
    shutdown_background_services,
)
from pitcrew.utils.logging import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_logging(settings.server.log_level, json_logs=settings.server.json_logs)

    logger.info("pitcrew.starting", version=__version__)
    await init_db()
    await init_background_services()
    logger.info("pitcrew.started")

    try:
        yield
    finally:
        logger.info("pitcrew.stopping")
        await shutdown_background_services()
        await close_backends()
        await close_db()
        logger.info("pitcrew.stopped")


async def pitcrew_error_handler(request: Request, exc: PitcrewError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "api.error",
            path=request.url.path,
            code=exc.code,
            error=exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(*, with_lifespan: bool = True) -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title="Pitcrew",
        version=__version__,
        lifespan=lifespan if with_lifespan else None,
    )
    app.add_exception_handler(PitcrewError, pitcrew_error_handler)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    app.include_router(v1_router, prefix="/v1")
    app.include_router(proxy_router)
    return app


app = create_app()


def run() -> None:
    """Console script entrypoint."""
    settings = get_settings()
    uvicorn.run(
        "pitcrew.main:app",
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level,
    )
