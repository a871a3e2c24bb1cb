from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import FileResponse

from habitdata.api.deps import get_lifecycle, get_owner_id
from habitdata.api.errors import SERVICE_ERRORS, to_http_error
from habitdata.api.schemas.jobs import (
    CreateJobRequest,
    JobListResponse,
    JobProgressResponse,
    JobResponse,
    UpdateOptionsRequest,
)
from habitdata.db.models import JobKind, JobStatus
from habitdata.jobs.lifecycle import DataLifecycleService
from habitdata.jobs.service import snapshot_to_dict

router = APIRouter(prefix="/exports", tags=["exports"])


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def create_export(
    request: CreateJobRequest,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.create(JobKind.EXPORT, owner_id, request.options)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("", response_model=JobListResponse)
def list_exports(
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = None,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobListResponse:
    try:
        result = lifecycle.list_jobs(owner_id, kind=JobKind.EXPORT, status=status_filter, limit=limit, cursor=cursor)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobListResponse(
        items=[JobResponse.model_validate(snapshot_to_dict(item)) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.get("/{job_id}", response_model=JobResponse)
def get_export(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.get(job_id, owner_id, JobKind.EXPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("/{job_id}/progress", response_model=JobProgressResponse)
def get_export_progress(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobProgressResponse:
    try:
        job = lifecycle.get(job_id, owner_id, JobKind.EXPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    payload = snapshot_to_dict(job)
    return JobProgressResponse.model_validate({key: payload[key] for key in ("id", "status", "progress")})


@router.patch("/{job_id}", response_model=JobResponse)
def update_export_options(
    job_id: str,
    request: UpdateOptionsRequest,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.update_options(job_id, owner_id, request.options, kind=JobKind.EXPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_export(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.cancel(job_id, owner_id, kind=JobKind.EXPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("/{job_id}/retry", response_model=JobResponse)
def retry_export(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.retry(job_id, owner_id, kind=JobKind.EXPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("/{job_id}/download")
def download_export(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> FileResponse:
    try:
        target = lifecycle.download(job_id, owner_id, kind=JobKind.EXPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return FileResponse(
        path=target.path,
        media_type=target.media_type,
        filename=target.file_name,
        headers={"X-Checksum": target.checksum, "X-Checksum-Algorithm": target.checksum_algorithm},
    )


@router.delete("/{job_id}", response_model=JobResponse)
def delete_export(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.delete(job_id, owner_id, kind=JobKind.EXPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))
