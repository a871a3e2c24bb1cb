from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from habitdata.core.config import Settings
from habitdata.db.models import Job, JobKind, JobStatus, ValidationStatus
from habitdata.jobs.types import (
    ArtifactInfo,
    BackupInfo,
    DashboardSnapshot,
    ErrorInfo,
    JobListResult,
    JobProgress,
    JobResult,
    JobSnapshot,
    ValidationInfo,
    VerificationInfo,
    result_from_dict,
    to_json_dict,
)
from habitdata.pipeline.errors import JobCancelledError


class JobConflictError(RuntimeError):
    pass


class JobNotFoundError(RuntimeError):
    pass


class InvalidJobStateError(RuntimeError):
    pass


class JobPolicyError(RuntimeError):
    pass


ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.VALIDATING, JobStatus.IN_PROGRESS, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.VALIDATING: {JobStatus.VALIDATED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.VALIDATED: {JobStatus.IN_PROGRESS},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.FAILED: {JobStatus.PENDING, JobStatus.ROLLED_BACK},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
    JobStatus.ROLLED_BACK: set(),
}

IMPORT_ONLY_STATUSES = {JobStatus.VALIDATING, JobStatus.VALIDATED, JobStatus.ROLLED_BACK}
IN_FLIGHT_STATUSES = {JobStatus.VALIDATING, JobStatus.IN_PROGRESS}
TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.ROLLED_BACK}


def enforce_transition(kind: JobKind, from_status: JobStatus, to_status: JobStatus) -> None:
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidJobStateError(f"Illegal transition: {from_status.value} -> {to_status.value}")
    if kind != JobKind.IMPORT and to_status in IMPORT_ONLY_STATUSES:
        raise InvalidJobStateError(f"{kind.value} jobs cannot enter {to_status.value}")
    if kind == JobKind.IMPORT and from_status == JobStatus.PENDING and to_status == JobStatus.IN_PROGRESS:
        raise InvalidJobStateError("Import jobs must be validated before they run")


class JobService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _lease_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.job_lease_ttl_seconds)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _load(self, session: Session, job_id: str, owner_id: str | None = None) -> Job:
        job = session.get(Job, job_id)
        # Foreign jobs are reported as missing so ids cannot be probed.
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def _load_for_worker(self, session: Session, job_id: str, worker_id: str) -> Job:
        job = self._load(session, job_id)
        if job.status == JobStatus.CANCELLED:
            raise JobCancelledError(f"Job {job_id} was cancelled")
        if job.status not in IN_FLIGHT_STATUSES:
            raise InvalidJobStateError(f"Job {job_id} is not running ({job.status.value})")
        if job.worker_id != worker_id:
            raise JobConflictError("Job is bound to a different worker")
        return job

    def _transition(self, job: Job, to_status: JobStatus) -> None:
        enforce_transition(job.kind, job.status, to_status)
        job.status = to_status
        job.updated_at = self._now()

    def _release_lease(self, job: Job) -> None:
        job.worker_id = None
        job.lease_expires_at = None

    def create_job(
        self,
        kind: JobKind,
        *,
        owner_id: str,
        name: str,
        options: dict[str, Any],
        max_retries: int | None = None,
        artifact: ArtifactInfo | None = None,
        job_id: str | None = None,
    ) -> JobSnapshot:
        normalized_owner = owner_id.strip()
        if not normalized_owner:
            raise JobPolicyError("owner_id cannot be blank")

        now = self._now()
        job = Job(
            id=job_id or str(uuid4()),
            kind=kind,
            status=JobStatus.PENDING,
            owner_id=normalized_owner,
            name=name,
            options=options,
            progress=to_json_dict(JobProgress()),
            artifact=to_json_dict(artifact) if artifact is not None else None,
            validation_status=ValidationStatus.PENDING if kind == JobKind.IMPORT else None,
            retry_count=0,
            max_retries=max_retries or self._settings.job_max_retries,
            run_number=0,
            download_count=0,
            uploaded_at=now if artifact is not None else None,
        )
        with self._session_factory() as session:
            session.add(job)
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def get_job(self, job_id: str, owner_id: str | None = None) -> JobSnapshot:
        with self._session_factory() as session:
            return self._to_snapshot(self._load(session, job_id, owner_id))

    def list_jobs(
        self,
        *,
        owner_id: str | None = None,
        kind: JobKind | None = None,
        status: JobStatus | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> JobListResult:
        requested = limit or self._settings.default_page_size
        bounded_limit = max(1, min(requested, self._settings.max_page_size))
        with self._session_factory() as session:
            stmt = select(Job).order_by(Job.created_at.desc(), Job.id.desc()).limit(bounded_limit + 1)
            if owner_id is not None:
                stmt = stmt.where(Job.owner_id == owner_id)
            if kind is not None:
                stmt = stmt.where(Job.kind == kind)
            if status is not None:
                stmt = stmt.where(Job.status == status)
            if cursor:
                anchor_exists = session.scalar(select(Job.id).where(Job.id == cursor))
                if anchor_exists is None:
                    raise ValueError(f"Invalid pagination cursor: {cursor}")
                anchor_created_at = select(Job.created_at).where(Job.id == cursor).scalar_subquery()
                stmt = stmt.where(
                    or_(
                        Job.created_at < anchor_created_at,
                        and_(Job.created_at == anchor_created_at, Job.id < cursor),
                    )
                )
            rows = list(session.scalars(stmt).all())
            items = rows[:bounded_limit]
            next_cursor = items[-1].id if len(rows) > bounded_limit and items else None
            return JobListResult(items=[self._to_snapshot(row) for row in items], next_cursor=next_cursor)

    def update_options(
        self,
        job_id: str,
        *,
        owner_id: str,
        options: dict[str, Any],
        name: str | None = None,
        max_retries: int | None = None,
    ) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load(session, job_id, owner_id)
            if job.status != JobStatus.PENDING:
                raise InvalidJobStateError(f"Options are immutable once a job leaves pending ({job.status.value})")
            job.options = dict(options)
            if name is not None:
                job.name = name
            if max_retries is not None:
                job.max_retries = max_retries
            job.updated_at = self._now()
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def delete_job(self, job_id: str, *, owner_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load(session, job_id, owner_id)
            if job.status in IN_FLIGHT_STATUSES:
                raise InvalidJobStateError("Cancel the job before deleting it")
            snapshot = self._to_snapshot(job)
            session.delete(job)
            session.commit()
            return snapshot

    def claim_for_run(self, job_id: str, worker_id: str) -> JobSnapshot | None:
        """Bind a startable job to ``worker_id``; None when there is nothing to start."""
        normalized_worker_id = worker_id.strip()
        if not normalized_worker_id:
            raise ValueError("worker_id cannot be blank")

        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                return None

            if job.status == JobStatus.PENDING:
                target = JobStatus.VALIDATING if job.kind == JobKind.IMPORT else JobStatus.IN_PROGRESS
            elif job.status == JobStatus.VALIDATED and job.kind == JobKind.IMPORT:
                target = JobStatus.IN_PROGRESS
            else:
                return None

            if job.worker_id is not None and job.worker_id != normalized_worker_id:
                lease_expires_at = self._coerce_utc(job.lease_expires_at)
                if lease_expires_at is not None and lease_expires_at > self._now():
                    return None

            now = self._now()
            if job.status == JobStatus.PENDING:
                job.run_number += 1
                job.progress = to_json_dict(JobProgress(last_update_at=now))
                job.started_at = now
                job.completed_at = None
                if job.kind == JobKind.IMPORT:
                    job.validation = None
                    job.validation_status = ValidationStatus.PENDING
                    job.validated_at = None
            self._transition(job, target)
            job.worker_id = normalized_worker_id
            job.lease_expires_at = now + self._lease_delta()
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def heartbeat(
        self,
        job_id: str,
        worker_id: str,
        *,
        units_processed: int | None = None,
        units_total: int | None = None,
    ) -> JobSnapshot:
        """Checkpoint for a running job: refreshes the lease and raises once cancelled."""
        with self._session_factory() as session:
            job = self._load_for_worker(session, job_id, worker_id)
            now = self._now()
            if units_processed is not None or units_total is not None:
                progress = JobProgress.from_dict(job.progress)
                if units_processed is not None:
                    if units_processed < 0:
                        raise ValueError("units_processed must be >= 0")
                    progress.units_processed = max(progress.units_processed, units_processed)
                if units_total is not None:
                    progress.units_total = units_total
                progress.last_update_at = now
                job.progress = to_json_dict(progress)
            job.lease_expires_at = now + self._lease_delta()
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def begin_stage(self, job_id: str, worker_id: str, *, step_name: str, step_index: int, step_count: int) -> JobSnapshot:
        if step_index < 1 or step_index > step_count:
            raise ValueError("step_index must be within 1..step_count")

        with self._session_factory() as session:
            job = self._load_for_worker(session, job_id, worker_id)
            now = self._now()
            progress = JobProgress.from_dict(job.progress)
            progress.step_name = step_name
            progress.step_index = step_index
            progress.step_count = step_count
            progress.units_processed = 0
            progress.units_total = None
            progress.last_update_at = now
            job.progress = to_json_dict(progress)
            job.lease_expires_at = now + self._lease_delta()
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def complete_stage(
        self,
        job_id: str,
        worker_id: str,
        *,
        step_index: int,
        step_count: int,
        units_processed: int | None = None,
        units_total: int | None = None,
    ) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load_for_worker(session, job_id, worker_id)
            now = self._now()
            progress = JobProgress.from_dict(job.progress)
            stage_percentage = round(100.0 * step_index / step_count, 2)
            progress.percentage = max(progress.percentage, stage_percentage)
            if units_processed is not None:
                progress.units_processed = max(progress.units_processed, units_processed)
            if units_total is not None:
                progress.units_total = units_total
            progress.last_update_at = now
            job.progress = to_json_dict(progress)
            job.lease_expires_at = now + self._lease_delta()
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def record_artifact(self, job_id: str, worker_id: str, artifact: ArtifactInfo) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load_for_worker(session, job_id, worker_id)
            current = ArtifactInfo.from_dict(job.artifact)
            if current is not None and artifact.version <= current.version:
                raise InvalidJobStateError(
                    f"Artifact version {artifact.version} does not supersede version {current.version}"
                )
            now = self._now()
            if artifact.finalized_at is None:
                artifact.finalized_at = now
            job.artifact = to_json_dict(artifact)
            job.uploaded_at = now
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def record_validation(self, job_id: str, worker_id: str, validation: ValidationInfo) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load_for_worker(session, job_id, worker_id)
            job.validation = to_json_dict(validation)
            job.validation_status = validation.status
            job.updated_at = self._now()
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def mark_validated(self, job_id: str, worker_id: str, *, release: bool) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load_for_worker(session, job_id, worker_id)
            if job.validation_status != ValidationStatus.PASSED:
                raise InvalidJobStateError("Validation has not passed")
            self._transition(job, JobStatus.VALIDATED)
            job.validated_at = self._now()
            if release:
                self._release_lease(job)
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def record_backup_info(self, job_id: str, worker_id: str, backup_info: BackupInfo) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load_for_worker(session, job_id, worker_id)
            job.backup_info = to_json_dict(backup_info)
            job.updated_at = self._now()
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def record_verification(
        self,
        job_id: str,
        verification: VerificationInfo,
        *,
        worker_id: str | None = None,
    ) -> JobSnapshot:
        with self._session_factory() as session:
            if worker_id is not None:
                job = self._load_for_worker(session, job_id, worker_id)
            else:
                job = self._load(session, job_id)
                if job.status != JobStatus.COMPLETED:
                    raise InvalidJobStateError("Only completed jobs can be re-verified")
            now = self._now()
            if verification.verified_at is None:
                verification.verified_at = now
            job.verification = to_json_dict(verification)
            job.verified_at = verification.verified_at
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def complete_job(self, job_id: str, worker_id: str, *, result: JobResult | None) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load_for_worker(session, job_id, worker_id)
            progress = JobProgress.from_dict(job.progress)
            if progress.percentage < 100.0:
                raise InvalidJobStateError(f"Job {job_id} has not finished its final stage")
            self._transition(job, JobStatus.COMPLETED)
            job.result = to_json_dict(result) if result is not None else None
            job.completed_at = self._now()
            self._release_lease(job)
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def fail_job(
        self,
        job_id: str,
        *,
        worker_id: str,
        error_info: ErrorInfo,
        validation: ValidationInfo | None = None,
    ) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load_for_worker(session, job_id, worker_id)
            if error_info.retry_count > error_info.max_retries:
                raise ValueError("retry_count cannot exceed max_retries")
            self._transition(job, JobStatus.FAILED)
            job.error_info = to_json_dict(error_info)
            job.retry_count = error_info.retry_count
            if validation is not None:
                job.validation = to_json_dict(validation)
                job.validation_status = validation.status
            self._release_lease(job)
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def record_rollback_outcome(self, job_id: str, *, succeeded: bool, message: str | None = None) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load(session, job_id)
            error_info = ErrorInfo.from_dict(job.error_info)
            if job.status != JobStatus.FAILED or error_info is None or not error_info.rollback_attempted:
                raise InvalidJobStateError("Rollback outcome can only be recorded for a failed import")
            error_info.rollback_succeeded = succeeded
            if succeeded:
                self._transition(job, JobStatus.ROLLED_BACK)
                job.completed_at = self._now()
            else:
                error_info.error_code = "ROLLBACK_FAILED"
                error_info.can_retry = False
                error_info.next_retry_at = None
                if message:
                    error_info.message = f"{error_info.message}; rollback failed: {message}"
                job.updated_at = self._now()
            job.error_info = to_json_dict(error_info)
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def cancel_job(self, job_id: str, *, owner_id: str | None = None) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load(session, job_id, owner_id)
            self._transition(job, JobStatus.CANCELLED)
            job.completed_at = self._now()
            job.lease_expires_at = None
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def reset_for_retry(self, job_id: str, *, owner_id: str | None = None) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load(session, job_id, owner_id)
            if job.status != JobStatus.FAILED:
                raise InvalidJobStateError(f"Only failed jobs can be retried ({job.status.value})")
            error_info = ErrorInfo.from_dict(job.error_info)
            if error_info is not None and not error_info.can_retry:
                raise JobPolicyError(f"Job {job_id} is not retryable ({error_info.error_code})")
            self._transition(job, JobStatus.PENDING)
            # retry_count lives on its own column and survives the reset.
            job.error_info = None
            self._release_lease(job)
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def record_download(self, job_id: str) -> JobSnapshot:
        with self._session_factory() as session:
            job = self._load(session, job_id)
            now = self._now()
            job.download_count += 1
            job.last_downloaded_at = now
            job.updated_at = now
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def find_retry_due(self, *, now: datetime | None = None, limit: int = 100) -> list[JobSnapshot]:
        current = now or self._now()
        with self._session_factory() as session:
            failed = session.scalars(
                select(Job).where(Job.status == JobStatus.FAILED).order_by(Job.updated_at.asc(), Job.id.asc())
            ).all()
            due: list[JobSnapshot] = []
            for job in failed:
                error_info = ErrorInfo.from_dict(job.error_info)
                if error_info is None or not error_info.can_retry or error_info.next_retry_at is None:
                    continue
                if self._coerce_utc(error_info.next_retry_at) <= current:  # type: ignore[operator]
                    due.append(self._to_snapshot(job))
                if len(due) >= limit:
                    break
            return due

    def find_expired_leases(self, *, now: datetime | None = None) -> list[JobSnapshot]:
        current = now or self._now()
        with self._session_factory() as session:
            rows = session.scalars(
                select(Job).where(
                    Job.status.in_(list(IN_FLIGHT_STATUSES)),
                    or_(Job.lease_expires_at.is_(None), Job.lease_expires_at <= current),
                )
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def expire_lease(self, job_id: str, *, error_info: ErrorInfo, now: datetime | None = None) -> JobSnapshot | None:
        """Fail an in-flight job whose worker stopped renewing its lease."""
        current = now or self._now()
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None or job.status not in IN_FLIGHT_STATUSES:
                return None
            lease_expires_at = self._coerce_utc(job.lease_expires_at)
            if lease_expires_at is not None and lease_expires_at > current:
                return None
            self._transition(job, JobStatus.FAILED)
            job.error_info = to_json_dict(error_info)
            job.retry_count = error_info.retry_count
            self._release_lease(job)
            session.commit()
            session.refresh(job)
            return self._to_snapshot(job)

    def list_pending_ids(self) -> list[str]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(Job.id).where(Job.status == JobStatus.PENDING).order_by(Job.created_at.asc(), Job.id.asc())
            ).all()
            return list(rows)

    def get_dashboard(self, owner_id: str, *, recent_limit: int = 10) -> DashboardSnapshot:
        with self._session_factory() as session:
            counts: dict[str, dict[str, int]] = {kind.value: {} for kind in JobKind}
            grouped = session.execute(
                select(Job.kind, Job.status, func.count(Job.id))
                .where(Job.owner_id == owner_id)
                .group_by(Job.kind, Job.status)
            ).all()
            for kind, status, count in grouped:
                counts[kind.value][status.value] = int(count)

            recent = session.scalars(
                select(Job)
                .where(Job.owner_id == owner_id)
                .order_by(Job.updated_at.desc(), Job.id.desc())
                .limit(recent_limit)
            ).all()
            total_downloads = session.scalar(
                select(func.coalesce(func.sum(Job.download_count), 0)).where(Job.owner_id == owner_id)
            )
        retry_due = sum(1 for job in self.find_retry_due() if job.owner_id == owner_id)
        return DashboardSnapshot(
            owner_id=owner_id,
            counts=counts,
            recent=[self._to_snapshot(job) for job in recent],
            total_downloads=int(total_downloads or 0),
            retry_due=retry_due,
        )

    def _to_snapshot(self, job: Job) -> JobSnapshot:
        return JobSnapshot(
            id=job.id,
            kind=job.kind,
            status=job.status,
            owner_id=job.owner_id,
            name=job.name,
            options=dict(job.options or {}),
            progress=JobProgress.from_dict(job.progress),
            artifact=ArtifactInfo.from_dict(job.artifact),
            error_info=ErrorInfo.from_dict(job.error_info),
            verification=VerificationInfo.from_dict(job.verification),
            validation=ValidationInfo.from_dict(job.validation),
            validation_status=job.validation_status,
            backup_info=BackupInfo.from_dict(job.backup_info),
            result=result_from_dict(job.result),
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            run_number=job.run_number,
            worker_id=job.worker_id,
            lease_expires_at=self._coerce_utc(job.lease_expires_at),
            download_count=job.download_count,
            last_downloaded_at=self._coerce_utc(job.last_downloaded_at),
            created_at=self._coerce_utc(job.created_at),  # type: ignore[arg-type]
            updated_at=self._coerce_utc(job.updated_at),  # type: ignore[arg-type]
            started_at=self._coerce_utc(job.started_at),
            completed_at=self._coerce_utc(job.completed_at),
            validated_at=self._coerce_utc(job.validated_at),
            uploaded_at=self._coerce_utc(job.uploaded_at),
            verified_at=self._coerce_utc(job.verified_at),
        )


def snapshot_to_dict(snapshot: JobSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "kind": snapshot.kind.value,
        "status": snapshot.status.value,
        "owner_id": snapshot.owner_id,
        "name": snapshot.name,
        "options": snapshot.options,
        "progress": to_json_dict(snapshot.progress),
        "artifact": to_json_dict(snapshot.artifact) if snapshot.artifact else None,
        "error_info": to_json_dict(snapshot.error_info) if snapshot.error_info else None,
        "verification": to_json_dict(snapshot.verification) if snapshot.verification else None,
        "validation": to_json_dict(snapshot.validation) if snapshot.validation else None,
        "validation_status": snapshot.validation_status.value if snapshot.validation_status else None,
        "backup_info": to_json_dict(snapshot.backup_info) if snapshot.backup_info else None,
        "result": to_json_dict(snapshot.result) if snapshot.result else None,
        "retry_count": snapshot.retry_count,
        "max_retries": snapshot.max_retries,
        "run_number": snapshot.run_number,
        "download_count": snapshot.download_count,
        "last_downloaded_at": snapshot.last_downloaded_at,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
        "started_at": snapshot.started_at,
        "completed_at": snapshot.completed_at,
        "validated_at": snapshot.validated_at,
        "uploaded_at": snapshot.uploaded_at,
        "verified_at": snapshot.verified_at,
    }
