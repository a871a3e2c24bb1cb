from __future__ import annotations

from fastapi import APIRouter, Depends

from habitdata.api.deps import get_lifecycle, get_owner_id
from habitdata.api.schemas.jobs import DashboardResponse, JobIdsResponse, JobResponse
from habitdata.jobs.lifecycle import DataLifecycleService
from habitdata.jobs.service import snapshot_to_dict

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/dashboard", response_model=DashboardResponse)
def get_dashboard(
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> DashboardResponse:
    dashboard = lifecycle.dashboard(owner_id)
    return DashboardResponse(
        owner_id=dashboard.owner_id,
        counts=dashboard.counts,
        recent=[JobResponse.model_validate(snapshot_to_dict(item)) for item in dashboard.recent],
        total_downloads=dashboard.total_downloads,
        retry_due=dashboard.retry_due,
    )


@router.post("/retry-due", response_model=JobIdsResponse)
def retry_due_jobs(lifecycle: DataLifecycleService = Depends(get_lifecycle)) -> JobIdsResponse:
    job_ids = lifecycle.retry_due()
    return JobIdsResponse(job_ids=job_ids, count=len(job_ids))


@router.post("/recover-interrupted", response_model=JobIdsResponse)
def recover_interrupted_jobs(lifecycle: DataLifecycleService = Depends(get_lifecycle)) -> JobIdsResponse:
    job_ids = lifecycle.recover_interrupted()
    return JobIdsResponse(job_ids=job_ids, count=len(job_ids))
