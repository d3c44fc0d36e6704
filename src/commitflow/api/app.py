"""FastAPI app entrypoint for the orchestration host."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from commitflow.api.deps import configure_registry, current_registry, get_session_registry
from commitflow.api.routes.runs import router as runs_router
from commitflow.api.routes.sessions import router as sessions_router
from commitflow.config import LOG_FORMAT, ServerSettings, split_address

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    override = app.dependency_overrides.get(get_session_registry)
    registry = override() if override is not None else current_registry()
    if registry is not None:
        await registry.shutdown()
    logger.info("commitflow host shutdown complete")


def create_app() -> FastAPI:
    app = FastAPI(title="commitflow host", version="0.1.0", lifespan=lifespan)
    app.include_router(sessions_router)
    app.include_router(runs_router)

    @app.get("/api/v1/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()


def run(settings: ServerSettings | None = None) -> None:
    settings = settings or ServerSettings.from_env()
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    host, port = split_address(settings.address)
    configure_registry(settings)
    logger.info("starting commitflow host on %s:%d", host, port)
    uvicorn.run("commitflow.api.app:app", host=host, port=port, reload=False)
