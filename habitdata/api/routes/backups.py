from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import FileResponse

from habitdata.api.deps import get_lifecycle, get_owner_id
from habitdata.api.errors import SERVICE_ERRORS, to_http_error
from habitdata.api.schemas.jobs import (
    CreateJobRequest,
    JobListResponse,
    JobProgressResponse,
    JobResponse,
    RestoreBackupRequest,
    RestoreBackupResponse,
)
from habitdata.db.models import JobKind, JobStatus
from habitdata.jobs.lifecycle import DataLifecycleService
from habitdata.jobs.service import snapshot_to_dict

router = APIRouter(prefix="/backups", tags=["backups"])


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def create_backup(
    request: CreateJobRequest,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.create(JobKind.BACKUP, owner_id, request.options)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("", response_model=JobListResponse)
def list_backups(
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = None,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobListResponse:
    try:
        result = lifecycle.list_jobs(owner_id, kind=JobKind.BACKUP, status=status_filter, limit=limit, cursor=cursor)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobListResponse(
        items=[JobResponse.model_validate(snapshot_to_dict(item)) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.get("/{job_id}", response_model=JobResponse)
def get_backup(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.get(job_id, owner_id, JobKind.BACKUP)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("/{job_id}/progress", response_model=JobProgressResponse)
def get_backup_progress(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobProgressResponse:
    try:
        job = lifecycle.get(job_id, owner_id, JobKind.BACKUP)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    payload = snapshot_to_dict(job)
    return JobProgressResponse.model_validate({key: payload[key] for key in ("id", "status", "progress")})


@router.post("/{job_id}/verify", response_model=JobResponse)
def verify_backup(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.verify_backup(job_id, owner_id)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("/{job_id}/restore", response_model=RestoreBackupResponse)
def restore_backup(
    job_id: str,
    request: RestoreBackupRequest,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> RestoreBackupResponse:
    try:
        outcome = lifecycle.restore_backup(job_id, owner_id, data_types=request.data_types)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return RestoreBackupResponse.model_validate(asdict(outcome))


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_backup(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.cancel(job_id, owner_id, kind=JobKind.BACKUP)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("/{job_id}/retry", response_model=JobResponse)
def retry_backup(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.retry(job_id, owner_id, kind=JobKind.BACKUP)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("/{job_id}/download")
def download_backup(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> FileResponse:
    try:
        target = lifecycle.download(job_id, owner_id, kind=JobKind.BACKUP)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return FileResponse(
        path=target.path,
        media_type=target.media_type,
        filename=target.file_name,
        headers={"X-Checksum": target.checksum, "X-Checksum-Algorithm": target.checksum_algorithm},
    )


@router.delete("/{job_id}", response_model=JobResponse)
def delete_backup(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.delete(job_id, owner_id, kind=JobKind.BACKUP)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))
