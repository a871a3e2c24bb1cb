from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from habitdata.jobs.lifecycle import DataLifecycleService
from habitdata.worker.pipeline import PipelineRuntime


def get_runtime(request: Request) -> PipelineRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job runtime is not started")
    return runtime


def get_lifecycle(request: Request) -> DataLifecycleService:
    return get_runtime(request).lifecycle


def get_owner_id(x_owner_id: str = Header(alias="X-Owner-Id", min_length=1, max_length=128)) -> str:
    return x_owner_id
