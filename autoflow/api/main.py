"""
FastAPI application for the execution engine.

Usage:
    autoflow-server

Or with uvicorn directly:
    uvicorn --factory autoflow.api.main:create_app --port 3003
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from autoflow.api.routes import router
from autoflow.config import Settings, configure_logging, get_settings
from autoflow.engine.capability import PlaywrightCapability
from autoflow.engine.engine import ExecutionEngine
from autoflow.engine.handlers import HandlerRegistry
from autoflow.recovery.service import RecoveryService

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> ExecutionEngine:
    """One engine per process, driving a Playwright browser it launches per run."""
    registry = HandlerRegistry()
    loaded = registry.load_entry_points()
    if loaded:
        logger.info(f"Loaded {loaded} plugin node handler(s)")
    capability = PlaywrightCapability(
        browser=settings.browser,
        headless=settings.headless,
        video_dir=settings.video_dir,
    )
    return ExecutionEngine(capability, registry=registry, settings=settings)


def create_app(
    engine: ExecutionEngine | None = None,
    settings: Settings | None = None,
    recovery: RecoveryService | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    engine = engine or build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{settings.api_title} {settings.api_version} starting up")
        yield
        engine.stop()
        await engine.wait()
        logger.info(f"{settings.api_title} shutting down")

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="Browser workflow execution with breakpoints and self-healing recovery",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = engine
    app.state.recovery = recovery or RecoveryService(engine, settings=settings)
    app.include_router(router, prefix=settings.api_prefix)
    return app


def run() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        create_app(settings=settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
