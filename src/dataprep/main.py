"""Application factory for the dataprep FastAPI app."""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from dataprep import __version__
from dataprep.core.errors import (
    AppError,
    app_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from dataprep.core.logging import setup_logging
from dataprep.core.redis_client import close_redis_connection
from dataprep.core.settings import get_settings
from dataprep.db.base import dispose_engine, init_models
from dataprep.middleware.request_id import RequestIdMiddleware
from dataprep.routers import datasets as datasets_router
from dataprep.routers import health as health_router
from dataprep.routers import projects as projects_router
from dataprep.routers import runs as runs_router
from dataprep.routers import sources as sources_router
from dataprep.services.dispatch import drain_background_tasks
from dataprep.services.runs import reconcile_interrupted_runs

logger = logging.getLogger(__name__)

# Seconds in-process runs get to finish on shutdown before being abandoned
SHUTDOWN_GRACE_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    setup_logging(settings.log_level)
    if settings.auto_create_tables:
        await init_models()
    if settings.reconcile_on_startup:
        await reconcile_interrupted_runs()
    logger.info(f"dataprep started ({settings.environment}, executor={settings.run_executor})")
    yield
    await drain_background_tasks(timeout=SHUTDOWN_GRACE_SECONDS)
    await close_redis_connection()
    await dispose_engine()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="dataprep API",
        version=__version__,
        description="Multi-tenant data preparation: sources, de-identification and datasets",
        lifespan=lifespan,
    )

    app.add_middleware(RequestIdMiddleware)

    # Include routers
    app.include_router(health_router.router, prefix=settings.api_prefix)
    app.include_router(projects_router.router, prefix=settings.api_prefix)
    app.include_router(sources_router.router, prefix=settings.api_prefix)
    app.include_router(runs_router.router, prefix=settings.api_prefix)
    app.include_router(datasets_router.router, prefix=settings.api_prefix)

    # Error handlers
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_error_handler)

    return app


app = create_app()
