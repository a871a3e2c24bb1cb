from __future__ import annotations

import base64
import binascii

from fastapi import APIRouter, Depends, HTTPException, Query, status

from habitdata.api.deps import get_lifecycle, get_owner_id
from habitdata.api.errors import SERVICE_ERRORS, to_http_error
from habitdata.api.schemas.jobs import (
    CreateImportRequest,
    JobListResponse,
    JobProgressResponse,
    JobResponse,
    UpdateOptionsRequest,
)
from habitdata.db.models import JobKind, JobStatus
from habitdata.jobs.lifecycle import DataLifecycleService
from habitdata.jobs.service import snapshot_to_dict

router = APIRouter(prefix="/imports", tags=["imports"])


def _decode_content(request: CreateImportRequest) -> bytes:
    if request.encoding == "base64":
        try:
            return base64.b64decode(request.content, validate=True)
        except binascii.Error as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="content is not valid base64") from exc
    return request.content.encode("utf-8")


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def create_import(
    request: CreateImportRequest,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    content = _decode_content(request)
    try:
        job = lifecycle.create_import(owner_id, request.options, content, file_name=request.file_name)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("", response_model=JobListResponse)
def list_imports(
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1),
    cursor: str | None = None,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobListResponse:
    try:
        result = lifecycle.list_jobs(owner_id, kind=JobKind.IMPORT, status=status_filter, limit=limit, cursor=cursor)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobListResponse(
        items=[JobResponse.model_validate(snapshot_to_dict(item)) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.get("/{job_id}", response_model=JobResponse)
def get_import(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.get(job_id, owner_id, JobKind.IMPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.get("/{job_id}/progress", response_model=JobProgressResponse)
def get_import_progress(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobProgressResponse:
    try:
        job = lifecycle.get(job_id, owner_id, JobKind.IMPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    payload = snapshot_to_dict(job)
    return JobProgressResponse.model_validate({key: payload[key] for key in ("id", "status", "progress")})


@router.patch("/{job_id}", response_model=JobResponse)
def update_import_options(
    job_id: str,
    request: UpdateOptionsRequest,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.update_options(job_id, owner_id, request.options, kind=JobKind.IMPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("/{job_id}/start", response_model=JobResponse)
def start_import(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.start_import(job_id, owner_id)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_import(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.cancel(job_id, owner_id, kind=JobKind.IMPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.post("/{job_id}/retry", response_model=JobResponse)
def retry_import(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.retry(job_id, owner_id, kind=JobKind.IMPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))


@router.delete("/{job_id}", response_model=JobResponse)
def delete_import(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    lifecycle: DataLifecycleService = Depends(get_lifecycle),
) -> JobResponse:
    try:
        job = lifecycle.delete(job_id, owner_id, kind=JobKind.IMPORT)
    except SERVICE_ERRORS as exc:
        raise to_http_error(exc) from exc
    return JobResponse.model_validate(snapshot_to_dict(job))
