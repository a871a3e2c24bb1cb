from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any, Callable

import pytest

from habitdata.core.config import Settings, get_settings
from habitdata.db.init_db import initialize_database
from habitdata.db.models import JobKind, JobStatus, ValidationStatus
from habitdata.db.session import get_session_factory, reset_engine
from habitdata.jobs.service import InvalidJobStateError, JobPolicyError
from habitdata.jobs.types import ImportResult
from habitdata.pipeline.collaborators import ApplyPolicy, CollectRequest, Dataset
from habitdata.strategies import SqlRecordStore
from habitdata.worker import PipelineRuntime, build_runtime

OWNER = "owner-1"


class FailingApplier:
    """Applies the import for real, then fails; restores go straight through."""

    def __init__(self, records: SqlRecordStore, *, fail_restore: bool = False):
        self._records = records
        self._fail_restore = fail_restore

    def apply(
        self,
        owner_id: str,
        dataset: Dataset,
        policy: ApplyPolicy,
        checkpoint: Callable[[int, int], None],
    ) -> ImportResult:
        self._records.apply(owner_id, dataset, policy, checkpoint)
        raise RuntimeError("record store went away mid-import")

    def replace_records(self, owner_id: str, dataset: Dataset) -> int:
        if self._fail_restore:
            raise RuntimeError("record store is read-only")
        return self._records.replace_records(owner_id, dataset)


class SlowApplier:
    """Sleeps past the stage deadline before applying through the real store."""

    def __init__(self, records: SqlRecordStore, *, delay: float):
        self._records = records
        self._delay = delay

    def apply(
        self,
        owner_id: str,
        dataset: Dataset,
        policy: ApplyPolicy,
        checkpoint: Callable[[int, int], None],
    ) -> ImportResult:
        time.sleep(self._delay)
        return self._records.apply(owner_id, dataset, policy, checkpoint)

    def replace_records(self, owner_id: str, dataset: Dataset) -> int:
        return self._records.replace_records(owner_id, dataset)


def make_runtime(tmp_path: Path, settings_overrides: dict[str, Any] | None = None, **kwargs: Any) -> PipelineRuntime:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["HABITDATA_STATE_ROOT"] = state_root.as_posix()

    get_settings.cache_clear()
    reset_engine()
    initialize_database()
    settings = Settings(state_root=state_root, **(settings_overrides or {}))
    return build_runtime(settings, get_session_factory(), **kwargs)


def seed(records: SqlRecordStore) -> None:
    records.replace_records(
        OWNER,
        {
            "habits": [
                {"id": "h1", "name": "Read", "target_count": 1},
                {"id": "h2", "name": "Meditate"},
            ]
        },
    )


def habits(records: SqlRecordStore) -> dict[str, dict[str, Any]]:
    dataset = records.collect(CollectRequest(owner_id=OWNER, data_types=["habits"], include_archived=True))
    return {record["id"]: record for record in dataset["habits"]}


def upload(habit_records: list[dict[str, Any]]) -> bytes:
    return json.dumps({"data": {"habits": habit_records}}).encode("utf-8")


def run_to_rest(runtime: PipelineRuntime) -> None:
    assert runtime.pool.wait_idle(timeout=15)


def test_json_import_validates_snapshots_and_merges(tmp_path: Path) -> None:
    runtime = make_runtime(tmp_path)
    try:
        seed(runtime.records)
        content = upload([{"id": "h1", "name": "Read more", "target_count": 2}, {"id": "h3", "name": "Walk"}])
        job = runtime.lifecycle.create_import(OWNER, {}, content, file_name="habits.json")
        assert job.artifact is not None
        assert job.artifact.location == f"imports/{job.id}/upload.json"
        assert job.name == "habits.json"
        run_to_rest(runtime)

        done = runtime.lifecycle.get(job.id, OWNER, JobKind.IMPORT)
        assert done.status == JobStatus.COMPLETED
        assert done.validation_status == ValidationStatus.PASSED
        assert done.validated_at is not None
        assert done.validation is not None
        assert done.validation.total_records == 2
        assert done.validation.valid_records == 2
        assert done.progress.step_count == 6
        assert done.progress.percentage == 100.0

        assert done.backup_info is not None
        assert done.backup_info.run_number == 1
        assert done.backup_info.data_types == ["habits"]
        assert done.backup_info.record_count == 2
        assert runtime.storage.exists(done.backup_info.location)

        assert isinstance(done.result, ImportResult)
        assert (done.result.created, done.result.updated, done.result.skipped) == (1, 1, 0)
        assert done.result.processed == 2

        current = habits(runtime.records)
        assert current["h1"]["name"] == "Read more"
        assert current["h1"]["target_count"] == 2
        assert set(current) == {"h1", "h2", "h3"}
    finally:
        runtime.shutdown()


def test_type_mismatch_fails_validation_without_touching_records(tmp_path: Path) -> None:
    runtime = make_runtime(tmp_path)
    try:
        seed(runtime.records)
        content = upload([{"id": "h1", "name": "Read", "target_count": "many"}])
        job = runtime.lifecycle.create_import(OWNER, {"format": "JSON"}, content)
        run_to_rest(runtime)

        failed = runtime.lifecycle.get(job.id, OWNER)
        assert failed.status == JobStatus.FAILED
        assert failed.validation_status == ValidationStatus.FAILED
        assert failed.error_info is not None
        assert failed.error_info.error_code == "VALIDATION_FAILED"
        assert failed.error_info.stage == "validate_schema"
        assert failed.error_info.can_retry is False
        assert failed.backup_info is None
        assert failed.validation is not None
        mismatch = failed.validation.schema_findings.type_mismatches[0]
        assert (mismatch.record_key, mismatch.field) == ("h1", "target_count")

        assert habits(runtime.records)["h1"]["target_count"] == 1
        with pytest.raises(JobPolicyError):
            runtime.lifecycle.retry(job.id, OWNER)
    finally:
        runtime.shutdown()


def test_unreadable_file_fails_format_validation(tmp_path: Path) -> None:
    runtime = make_runtime(tmp_path)
    try:
        job = runtime.lifecycle.create_import(OWNER, {}, b"{not json")
        run_to_rest(runtime)

        failed = runtime.lifecycle.get(job.id, OWNER)
        assert failed.status == JobStatus.FAILED
        assert failed.validation is not None
        assert failed.validation.format_valid is False
        assert failed.error_info is not None
        assert failed.error_info.stage == "validate_format"
    finally:
        runtime.shutdown()


def test_import_without_auto_start_waits_in_validated(tmp_path: Path) -> None:
    runtime = make_runtime(tmp_path)
    try:
        seed(runtime.records)
        job = runtime.lifecycle.create_import(OWNER, {"auto_start": False}, upload([{"id": "h4", "name": "Swim"}]))
        run_to_rest(runtime)

        validated = runtime.lifecycle.get(job.id, OWNER)
        assert validated.status == JobStatus.VALIDATED
        assert validated.worker_id is None
        assert validated.progress.step_index == 3
        assert "h4" not in habits(runtime.records)

        with pytest.raises(InvalidJobStateError):
            runtime.lifecycle.cancel(job.id, OWNER)
        with pytest.raises(InvalidJobStateError):
            runtime.lifecycle.update_options(job.id, OWNER, {"auto_start": True})

        runtime.lifecycle.start_import(job.id, OWNER)
        run_to_rest(runtime)

        done = runtime.lifecycle.get(job.id, OWNER)
        assert done.status == JobStatus.COMPLETED
        assert done.run_number == 1
        assert "h4" in habits(runtime.records)
        with pytest.raises(InvalidJobStateError):
            runtime.lifecycle.start_import(job.id, OWNER)
    finally:
        runtime.shutdown()


def test_csv_import_coerces_cells(tmp_path: Path) -> None:
    runtime = make_runtime(tmp_path)
    try:
        content = b"data_type,id,name,target_count,archived\nhabits,h5,Stretch,3,false\n"
        job = runtime.lifecycle.create_import(OWNER, {"format": "csv", "conflict_resolution": "OVERWRITE"}, content)
        run_to_rest(runtime)

        done = runtime.lifecycle.get(job.id, OWNER)
        assert done.status == JobStatus.COMPLETED
        assert done.artifact is not None
        assert done.artifact.location.endswith("upload.csv")
        assert habits(runtime.records)["h5"] == {"id": "h5", "name": "Stretch", "target_count": 3}
    finally:
        runtime.shutdown()


def test_dry_run_reports_without_writing(tmp_path: Path) -> None:
    runtime = make_runtime(tmp_path)
    try:
        seed(runtime.records)
        job = runtime.lifecycle.create_import(OWNER, {"dry_run": True}, upload([{"id": "h7", "name": "Journal"}]))
        run_to_rest(runtime)

        done = runtime.lifecycle.get(job.id, OWNER)
        assert done.status == JobStatus.COMPLETED
        assert isinstance(done.result, ImportResult)
        assert done.result.dry_run is True
        assert done.result.created == 1
        assert "h7" not in habits(runtime.records)
    finally:
        runtime.shutdown()


def test_failed_apply_rolls_back_to_snapshot(tmp_path: Path) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["HABITDATA_STATE_ROOT"] = state_root.as_posix()
    get_settings.cache_clear()
    reset_engine()
    initialize_database()
    records = SqlRecordStore(get_session_factory())
    runtime = build_runtime(Settings(state_root=state_root), get_session_factory(), applier=FailingApplier(records))
    try:
        seed(records)
        content = upload([{"id": "h1", "name": "Overwritten"}, {"id": "h8", "name": "New"}])
        job = runtime.lifecycle.create_import(OWNER, {}, content)
        run_to_rest(runtime)

        rolled_back = runtime.lifecycle.get(job.id, OWNER)
        assert rolled_back.status == JobStatus.ROLLED_BACK
        assert rolled_back.error_info is not None
        assert rolled_back.error_info.stage == "apply"
        assert rolled_back.error_info.rollback_attempted is True
        assert rolled_back.error_info.rollback_succeeded is True
        assert rolled_back.completed_at is not None

        current = habits(records)
        assert set(current) == {"h1", "h2"}
        assert current["h1"]["name"] == "Read"

        with pytest.raises(InvalidJobStateError):
            runtime.lifecycle.retry(job.id, OWNER)
    finally:
        runtime.shutdown()


def test_failed_rollback_leaves_job_failed_and_not_retryable(tmp_path: Path) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["HABITDATA_STATE_ROOT"] = state_root.as_posix()
    get_settings.cache_clear()
    reset_engine()
    initialize_database()
    records = SqlRecordStore(get_session_factory())
    runtime = build_runtime(
        Settings(state_root=state_root),
        get_session_factory(),
        applier=FailingApplier(records, fail_restore=True),
    )
    try:
        seed(records)
        job = runtime.lifecycle.create_import(OWNER, {}, upload([{"id": "h8", "name": "New"}]))
        run_to_rest(runtime)

        failed = runtime.lifecycle.get(job.id, OWNER)
        assert failed.status == JobStatus.FAILED
        assert failed.error_info is not None
        assert failed.error_info.error_code == "ROLLBACK_FAILED"
        assert failed.error_info.rollback_attempted is True
        assert failed.error_info.rollback_succeeded is False
        assert failed.error_info.can_retry is False
        assert "rollback failed" in failed.error_info.message
    finally:
        runtime.shutdown()


def test_upload_size_policy(tmp_path: Path) -> None:
    runtime = make_runtime(tmp_path, {"import_max_bytes": 64})
    try:
        with pytest.raises(JobPolicyError):
            runtime.lifecycle.create_import(OWNER, {}, b"")
        with pytest.raises(JobPolicyError):
            runtime.lifecycle.create_import(OWNER, {}, upload([{"id": f"h{n}", "name": "x"} for n in range(10)]))
        with pytest.raises(JobPolicyError):
            runtime.lifecycle.create_import(OWNER, {"conflict_resolution": "newest"}, b"{}")
        assert runtime.lifecycle.list_jobs(OWNER, kind=JobKind.IMPORT).items == []
    finally:
        runtime.shutdown()


def build_with_applier(
    tmp_path: Path, applier_factory: Callable[[SqlRecordStore], Any], **overrides: Any
) -> tuple[PipelineRuntime, SqlRecordStore]:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["HABITDATA_STATE_ROOT"] = state_root.as_posix()
    get_settings.cache_clear()
    reset_engine()
    initialize_database()
    records = SqlRecordStore(get_session_factory())
    runtime = build_runtime(
        Settings(state_root=state_root, **overrides),
        get_session_factory(),
        applier=applier_factory(records),
    )
    return runtime, records


def test_timed_out_apply_is_rolled_back_after_the_handler_stops(tmp_path: Path) -> None:
    runtime, records = build_with_applier(
        tmp_path,
        lambda store: SlowApplier(store, delay=1.5),
        job_stage_timeout_seconds=1,
        job_lease_ttl_seconds=5,
    )
    try:
        records.replace_records(OWNER, {"habits": [{"id": "h1", "name": "Read"}]})
        job = runtime.lifecycle.create_import(OWNER, {}, upload([{"id": "h8", "name": "New"}]))
        run_to_rest(runtime)

        rolled_back = runtime.lifecycle.get(job.id, OWNER)
        assert rolled_back.status == JobStatus.ROLLED_BACK
        assert rolled_back.error_info is not None
        assert rolled_back.error_info.error_code == "STAGE_TIMEOUT"
        assert rolled_back.error_info.stage == "apply"
        assert rolled_back.error_info.rollback_succeeded is True
    finally:
        runtime.shutdown()

    assert sorted(habits(records)) == ["h1"]


def test_handler_outliving_its_grace_skips_restore_and_writes_nothing(tmp_path: Path) -> None:
    runtime, records = build_with_applier(
        tmp_path,
        lambda store: SlowApplier(store, delay=4),
        job_stage_timeout_seconds=1,
        job_lease_ttl_seconds=3,
    )
    try:
        records.replace_records(OWNER, {"habits": [{"id": "h1", "name": "Read"}]})
        job = runtime.lifecycle.create_import(OWNER, {}, upload([{"id": "h8", "name": "New"}]))
        run_to_rest(runtime)

        failed = runtime.lifecycle.get(job.id, OWNER)
        assert failed.status == JobStatus.FAILED
        assert failed.error_info is not None
        assert failed.error_info.error_code == "ROLLBACK_FAILED"
        assert failed.error_info.rollback_succeeded is False
        assert failed.error_info.can_retry is False
    finally:
        # Waits for the abandoned handler to reach its checkpoint.
        runtime.shutdown()

    assert sorted(habits(records)) == ["h1"]
