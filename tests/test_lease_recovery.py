from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from habitdata.core.config import Settings, get_settings
from habitdata.db.init_db import initialize_database
from habitdata.db.models import Job, JobKind, JobStatus, ValidationStatus
from habitdata.db.session import get_session_factory, reset_engine, session_scope
from habitdata.jobs.options import dump_job_options, parse_job_options
from habitdata.jobs.types import JobSnapshot, ValidationInfo
from habitdata.pipeline.collaborators import CollectRequest
from habitdata.worker import PipelineRuntime, build_runtime

OWNER = "owner-1"
DEAD_WORKER = "worker-dead"


def make_runtime(tmp_path: Path) -> PipelineRuntime:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["HABITDATA_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    reset_engine()
    initialize_database()
    return build_runtime(Settings(state_root=state_root), get_session_factory())


def create_job(runtime: PipelineRuntime, kind: JobKind, raw_options: dict[str, Any] | None = None) -> JobSnapshot:
    options = dump_job_options(parse_job_options(kind, raw_options))
    return runtime.store.create_job(kind, owner_id=OWNER, name=f"{kind.value} job", options=options)


def expire_lease(job_id: str) -> None:
    with session_scope(get_session_factory()) as session:
        job = session.get(Job, job_id)
        assert job is not None
        job.lease_expires_at = datetime.now(tz=timezone.utc) - timedelta(seconds=30)


def habit_ids(runtime: PipelineRuntime) -> set[str]:
    dataset = runtime.records.collect(CollectRequest(owner_id=OWNER, data_types=["habits"], include_archived=True))
    return {record["id"] for record in dataset["habits"]}


def start_import_apply(runtime: PipelineRuntime, *, snapshot_run_number: int | None = None) -> JobSnapshot:
    """Drive an import to IN_PROGRESS under a worker that then disappears."""
    job = create_job(runtime, JobKind.IMPORT)
    claimed = runtime.store.claim_for_run(job.id, DEAD_WORKER)
    assert claimed is not None and claimed.status == JobStatus.VALIDATING
    runtime.store.record_validation(job.id, DEAD_WORKER, ValidationInfo(status=ValidationStatus.PASSED))
    runtime.store.mark_validated(job.id, DEAD_WORKER, release=False)
    running = runtime.store.claim_for_run(job.id, DEAD_WORKER)
    assert running is not None and running.status == JobStatus.IN_PROGRESS

    backup_info = runtime.rollback.take_snapshot(
        job_id=job.id,
        owner_id=OWNER,
        data_types=["habits"],
        run_number=running.run_number if snapshot_run_number is None else snapshot_run_number,
    )
    return runtime.store.record_backup_info(job.id, DEAD_WORKER, backup_info)


def test_expired_export_lease_is_failed_as_retryable(tmp_path: Path) -> None:
    runtime = make_runtime(tmp_path)
    try:
        stale = create_job(runtime, JobKind.EXPORT)
        live = create_job(runtime, JobKind.EXPORT)
        assert runtime.store.claim_for_run(stale.id, DEAD_WORKER) is not None
        assert runtime.store.claim_for_run(live.id, "worker-alive") is not None
        expire_lease(stale.id)

        assert runtime.lifecycle.recover_interrupted() == [stale.id]

        failed = runtime.lifecycle.get(stale.id, OWNER)
        assert failed.status == JobStatus.FAILED
        assert failed.worker_id is None
        assert failed.lease_expires_at is None
        assert failed.error_info is not None
        assert failed.error_info.error_code == "LEASE_EXPIRED"
        assert failed.error_info.can_retry is True
        assert failed.error_info.rollback_attempted is False
        assert failed.retry_count == 1

        assert runtime.lifecycle.get(live.id, OWNER).status == JobStatus.IN_PROGRESS
        assert runtime.lifecycle.recover_interrupted() == []
    finally:
        runtime.shutdown()


def test_recovered_job_can_be_retried_by_a_live_worker(tmp_path: Path) -> None:
    runtime = make_runtime(tmp_path)
    try:
        job = create_job(runtime, JobKind.BACKUP)
        assert runtime.store.claim_for_run(job.id, DEAD_WORKER) is not None
        assert runtime.orchestrator.run(job.id) is None

        expire_lease(job.id)
        runtime.lifecycle.recover_interrupted()
        runtime.lifecycle.retry(job.id, OWNER)
        assert runtime.pool.wait_idle(timeout=15)

        done = runtime.lifecycle.get(job.id, OWNER)
        assert done.status == JobStatus.COMPLETED
        assert done.run_number == 2
        assert done.retry_count == 1
    finally:
        runtime.shutdown()


def test_interrupted_import_is_rolled_back_on_recovery(tmp_path: Path) -> None:
    runtime = make_runtime(tmp_path)
    try:
        runtime.records.replace_records(OWNER, {"habits": [{"id": "h1", "name": "Read"}, {"id": "h2", "name": "Run"}]})
        job = start_import_apply(runtime)
        # Half of the import landed before the worker died.
        runtime.records.replace_records(OWNER, {"habits": [{"id": "h9", "name": "Partial"}]})
        expire_lease(job.id)

        assert runtime.lifecycle.recover_interrupted() == [job.id]

        recovered = runtime.lifecycle.get(job.id, OWNER)
        assert recovered.status == JobStatus.ROLLED_BACK
        assert recovered.error_info is not None
        assert recovered.error_info.error_code == "LEASE_EXPIRED"
        assert recovered.error_info.rollback_succeeded is True
        assert habit_ids(runtime) == {"h1", "h2"}
    finally:
        runtime.shutdown()


def test_snapshot_from_an_earlier_run_is_not_restored(tmp_path: Path) -> None:
    runtime = make_runtime(tmp_path)
    try:
        runtime.records.replace_records(OWNER, {"habits": [{"id": "h1", "name": "Read"}]})
        job = start_import_apply(runtime, snapshot_run_number=0)
        runtime.records.replace_records(OWNER, {"habits": [{"id": "h9", "name": "Partial"}]})
        expire_lease(job.id)

        runtime.lifecycle.recover_interrupted()

        failed = runtime.lifecycle.get(job.id, OWNER)
        assert failed.status == JobStatus.FAILED
        assert failed.error_info is not None
        assert failed.error_info.rollback_attempted is False
        assert habit_ids(runtime) == {"h9"}
    finally:
        runtime.shutdown()
