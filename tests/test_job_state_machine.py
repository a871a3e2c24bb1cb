from __future__ import annotations

import os
from pathlib import Path

import pytest

from habitdata.core.config import get_settings
from habitdata.db.init_db import initialize_database
from habitdata.db.models import JobKind, JobStatus
from habitdata.db.session import get_session_factory, reset_engine
from habitdata.jobs.service import (
    InvalidJobStateError,
    JobNotFoundError,
    JobPolicyError,
    JobService,
    enforce_transition,
)
from habitdata.jobs.types import ArtifactInfo, ErrorInfo
from habitdata.pipeline.errors import JobCancelledError


def make_service(tmp_path: Path) -> JobService:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["HABITDATA_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    reset_engine()
    initialize_database()
    return JobService(get_settings(), get_session_factory())


def create(service: JobService, kind: JobKind = JobKind.EXPORT, owner_id: str = "owner-1"):
    return service.create_job(kind, owner_id=owner_id, name=f"{kind.value} job", options={})


@pytest.mark.parametrize(
    ("kind", "from_status", "to_status"),
    [
        (JobKind.EXPORT, JobStatus.COMPLETED, JobStatus.PENDING),
        (JobKind.EXPORT, JobStatus.CANCELLED, JobStatus.IN_PROGRESS),
        (JobKind.BACKUP, JobStatus.PENDING, JobStatus.VALIDATING),
        (JobKind.EXPORT, JobStatus.FAILED, JobStatus.ROLLED_BACK),
        (JobKind.IMPORT, JobStatus.PENDING, JobStatus.IN_PROGRESS),
        (JobKind.IMPORT, JobStatus.VALIDATED, JobStatus.CANCELLED),
        (JobKind.IMPORT, JobStatus.ROLLED_BACK, JobStatus.PENDING),
    ],
)
def test_illegal_transitions_are_rejected(kind: JobKind, from_status: JobStatus, to_status: JobStatus) -> None:
    with pytest.raises(InvalidJobStateError):
        enforce_transition(kind, from_status, to_status)


@pytest.mark.parametrize(
    ("kind", "from_status", "to_status"),
    [
        (JobKind.EXPORT, JobStatus.PENDING, JobStatus.IN_PROGRESS),
        (JobKind.BACKUP, JobStatus.IN_PROGRESS, JobStatus.COMPLETED),
        (JobKind.IMPORT, JobStatus.PENDING, JobStatus.VALIDATING),
        (JobKind.IMPORT, JobStatus.VALIDATING, JobStatus.VALIDATED),
        (JobKind.IMPORT, JobStatus.VALIDATED, JobStatus.IN_PROGRESS),
        (JobKind.IMPORT, JobStatus.FAILED, JobStatus.ROLLED_BACK),
        (JobKind.EXPORT, JobStatus.FAILED, JobStatus.PENDING),
    ],
)
def test_legal_transitions_pass(kind: JobKind, from_status: JobStatus, to_status: JobStatus) -> None:
    enforce_transition(kind, from_status, to_status)


def test_new_jobs_start_pending_with_empty_progress(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = create(service)

    assert job.status == JobStatus.PENDING
    assert job.progress.percentage == 0.0
    assert job.retry_count == 0
    assert job.max_retries == 3
    assert job.validation_status is None

    imported = create(service, JobKind.IMPORT)
    assert imported.validation_status is not None
    assert imported.validation_status.value == "pending"


def test_blank_owner_is_rejected(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    with pytest.raises(JobPolicyError):
        service.create_job(JobKind.EXPORT, owner_id="  ", name="x", options={})


def test_claim_binds_worker_and_only_once(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = create(service)

    claimed = service.claim_for_run(job.id, "worker-a")
    assert claimed is not None
    assert claimed.status == JobStatus.IN_PROGRESS
    assert claimed.worker_id == "worker-a"
    assert claimed.lease_expires_at is not None
    assert claimed.run_number == 1
    assert service.claim_for_run(job.id, "worker-b") is None


def test_import_claim_enters_validating(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = create(service, JobKind.IMPORT)

    claimed = service.claim_for_run(job.id, "worker-a")
    assert claimed is not None
    assert claimed.status == JobStatus.VALIDATING


def test_foreign_owner_sees_not_found(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = create(service, owner_id="owner-1")

    with pytest.raises(JobNotFoundError):
        service.get_job(job.id, "owner-2")
    assert service.get_job(job.id, "owner-1").id == job.id


def test_options_are_immutable_after_pending(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = create(service)

    updated = service.update_options(job.id, owner_id="owner-1", options={"format": "csv"}, name="renamed")
    assert updated.options == {"format": "csv"}
    assert updated.name == "renamed"

    service.claim_for_run(job.id, "worker-a")
    with pytest.raises(InvalidJobStateError):
        service.update_options(job.id, owner_id="owner-1", options={"format": "json"})


def test_in_flight_jobs_cannot_be_deleted(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    running = create(service)
    service.claim_for_run(running.id, "worker-a")

    with pytest.raises(InvalidJobStateError):
        service.delete_job(running.id, owner_id="owner-1")

    pending = create(service)
    deleted = service.delete_job(pending.id, owner_id="owner-1")
    assert deleted.id == pending.id
    with pytest.raises(JobNotFoundError):
        service.get_job(pending.id)


def test_stage_progress_is_monotonic_and_gates_completion(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = create(service)
    service.claim_for_run(job.id, "worker-a")

    service.begin_stage(job.id, "worker-a", step_name="collect", step_index=1, step_count=2)
    first = service.complete_stage(job.id, "worker-a", step_index=1, step_count=2, units_processed=10)
    assert first.progress.percentage == 50.0
    assert first.progress.step_name == "collect"

    with pytest.raises(InvalidJobStateError):
        service.complete_job(job.id, "worker-a", result=None)

    service.begin_stage(job.id, "worker-a", step_name="finalize", step_index=2, step_count=2)
    service.heartbeat(job.id, "worker-a", units_processed=4, units_total=8)
    service.heartbeat(job.id, "worker-a", units_processed=2)
    during = service.get_job(job.id)
    assert during.progress.units_processed == 4
    assert during.progress.percentage == 50.0

    service.complete_stage(job.id, "worker-a", step_index=2, step_count=2)
    completed = service.complete_job(job.id, "worker-a", result=None)
    assert completed.status == JobStatus.COMPLETED
    assert completed.progress.percentage == 100.0
    assert completed.worker_id is None
    assert completed.completed_at is not None


def test_checkpoint_after_cancel_raises(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = create(service)
    service.claim_for_run(job.id, "worker-a")

    cancelled = service.cancel_job(job.id, owner_id="owner-1")
    assert cancelled.status == JobStatus.CANCELLED

    with pytest.raises(JobCancelledError):
        service.heartbeat(job.id, "worker-a")
    with pytest.raises(InvalidJobStateError):
        service.cancel_job(job.id)


def test_artifact_versions_must_increase(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = create(service)
    service.claim_for_run(job.id, "worker-a")

    first = ArtifactInfo(location="exports/a/v1.json", size_bytes=3, checksum="abc", checksum_algorithm="sha256")
    recorded = service.record_artifact(job.id, "worker-a", first)
    assert recorded.artifact is not None
    assert recorded.artifact.finalized_at is not None
    assert recorded.uploaded_at is not None

    with pytest.raises(InvalidJobStateError):
        service.record_artifact(job.id, "worker-a", first)


def test_retry_reset_requires_retryable_failure(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    job = create(service)

    with pytest.raises(InvalidJobStateError):
        service.reset_for_retry(job.id)

    service.claim_for_run(job.id, "worker-a")
    failed = service.fail_job(
        job.id,
        worker_id="worker-a",
        error_info=ErrorInfo(message="boom", error_code="PERMANENT_ERROR", retry_count=1, max_retries=3, can_retry=False),
    )
    assert failed.status == JobStatus.FAILED
    assert failed.retry_count == 1
    with pytest.raises(JobPolicyError):
        service.reset_for_retry(job.id)


def test_list_jobs_paginates_per_owner(tmp_path: Path) -> None:
    service = make_service(tmp_path)
    created = [create(service).id for _ in range(5)]
    create(service, owner_id="owner-2")

    first_page = service.list_jobs(owner_id="owner-1", limit=2)
    assert len(first_page.items) == 2
    assert first_page.next_cursor is not None

    seen = [item.id for item in first_page.items]
    cursor = first_page.next_cursor
    while cursor is not None:
        page = service.list_jobs(owner_id="owner-1", limit=2, cursor=cursor)
        seen.extend(item.id for item in page.items)
        cursor = page.next_cursor

    assert sorted(seen) == sorted(created)
    assert len(set(seen)) == 5

    with pytest.raises(ValueError):
        service.list_jobs(owner_id="owner-1", cursor="missing")
