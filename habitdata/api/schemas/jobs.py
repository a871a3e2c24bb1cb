from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class CreateJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    options: dict[str, Any] = Field(default_factory=dict)


class CreateImportRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    options: dict[str, Any] = Field(default_factory=dict)
    content: str = Field(min_length=1)
    encoding: Literal["utf-8", "base64"] = "utf-8"
    file_name: str | None = Field(default=None, max_length=255)


class UpdateOptionsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    options: dict[str, Any]


class RestoreBackupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_types: list[str] | None = None


class ProgressResponse(BaseModel):
    step_name: str | None
    step_index: int
    step_count: int
    percentage: float
    units_processed: int
    units_total: int | None
    last_update_at: datetime | None


class ArtifactResponse(BaseModel):
    location: str
    size_bytes: int
    checksum: str
    checksum_algorithm: str
    version: int
    content_type: str
    file_extension: str
    finalized_at: datetime | None


class ErrorInfoResponse(BaseModel):
    message: str
    error_code: str
    retry_count: int
    max_retries: int
    can_retry: bool
    next_retry_at: datetime | None
    stage: str | None
    rollback_attempted: bool
    rollback_succeeded: bool | None
    occurred_at: datetime | None


class VerificationResponse(BaseModel):
    verified: bool
    method: str
    checksum_match: bool
    size_match: bool
    expected_checksum: str
    actual_checksum: str
    expected_size: int
    actual_size: int
    notes: list[str]
    verified_at: datetime | None


class JobResponse(BaseModel):
    id: str
    kind: str
    status: str
    owner_id: str
    name: str
    options: dict[str, Any]
    progress: ProgressResponse
    artifact: ArtifactResponse | None
    error_info: ErrorInfoResponse | None
    verification: VerificationResponse | None
    validation: dict[str, Any] | None
    validation_status: str | None
    backup_info: dict[str, Any] | None
    result: dict[str, Any] | None
    retry_count: int
    max_retries: int
    run_number: int
    download_count: int
    last_downloaded_at: datetime | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    validated_at: datetime | None
    uploaded_at: datetime | None
    verified_at: datetime | None


class JobListResponse(BaseModel):
    items: list[JobResponse]
    next_cursor: str | None


class JobProgressResponse(BaseModel):
    id: str
    status: str
    progress: ProgressResponse


class DashboardResponse(BaseModel):
    owner_id: str
    counts: dict[str, dict[str, int]]
    recent: list[JobResponse]
    total_downloads: int
    retry_due: int


class RestoreBackupResponse(BaseModel):
    job_id: str
    records_restored: int
    data_types: list[str]
    verification: VerificationResponse


class JobIdsResponse(BaseModel):
    job_ids: list[str]
    count: int
