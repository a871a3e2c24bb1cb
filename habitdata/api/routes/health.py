from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from habitdata.api.deps import get_runtime
from habitdata.core.config import get_settings
from habitdata.worker.pipeline import PipelineRuntime

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(runtime: PipelineRuntime = Depends(get_runtime)) -> dict[str, object]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "jobs_in_flight": runtime.pool.in_flight,
        "worker_id": runtime.orchestrator.worker_id,
        "timestamp": datetime.now(tz=timezone.utc),
    }
