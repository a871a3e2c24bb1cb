from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from habitdata.api.routes.backups import router as backups_router
from habitdata.api.routes.exports import router as exports_router
from habitdata.api.routes.health import router as health_router
from habitdata.api.routes.imports import router as imports_router
from habitdata.api.routes.jobs import router as jobs_router
from habitdata.core.config import get_settings
from habitdata.core.logging import configure_logging
from habitdata.db.init_db import initialize_database
from habitdata.db.session import get_session_factory
from habitdata.worker.pipeline import build_runtime

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    runtime = build_runtime(settings, get_session_factory())
    app.state.runtime = runtime

    recovered = runtime.lifecycle.recover_interrupted()
    resumed = runtime.lifecycle.resume_pending()
    logger.info("runtime_started", worker_id=runtime.orchestrator.worker_id, recovered=len(recovered), resumed=resumed)
    try:
        yield
    finally:
        runtime.shutdown(wait=True)
        app.state.runtime = None
        logger.info("runtime_stopped", worker_id=runtime.orchestrator.worker_id)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(exports_router, prefix="/api/v1")
    app.include_router(imports_router, prefix="/api/v1")
    app.include_router(backups_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    return app
