from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

import structlog

from habitdata.core.config import Settings
from habitdata.db.models import JobKind, JobStatus
from habitdata.jobs.options import (
    BackupOptions,
    DataFormat,
    ExportOptions,
    ImportOptions,
    JobOptions,
    OptionsError,
    dump_job_options,
    parse_job_options,
)
from habitdata.jobs.service import InvalidJobStateError, JobNotFoundError, JobPolicyError, JobService
from habitdata.jobs.types import DashboardSnapshot, JobListResult, JobSnapshot, VerificationInfo
from habitdata.pipeline.collaborators import (
    Compressor,
    DataApplier,
    Encryptor,
    Formatter,
    JobEvent,
    Notifier,
    StorageClient,
)
from habitdata.pipeline.integrity import IntegrityVerifier
from habitdata.pipeline.orchestrator import PipelineOrchestrator
from habitdata.pipeline.pool import JobWorkerPool, WorkerQueueFullError

logger = structlog.get_logger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class ArtifactMissingError(RuntimeError):
    pass


@dataclass(frozen=True)
class DownloadTarget:
    path: str
    file_name: str
    media_type: str
    checksum: str
    checksum_algorithm: str
    size_bytes: int


@dataclass(frozen=True)
class RestoreOutcome:
    job_id: str
    records_restored: int
    data_types: list[str]
    verification: VerificationInfo


def _slug(value: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", value.strip()).strip("._")
    return cleaned[:80] or "habitdata"


def _default_name(kind: JobKind, options: JobOptions) -> str:
    if isinstance(options, ExportOptions):
        return f"{options.export_type.value} export"
    if isinstance(options, BackupOptions):
        return f"{options.backup_type.value} backup"
    return f"{kind.value}"


class DataLifecycleService:
    """Owner-facing operations for export, import and backup jobs."""

    def __init__(
        self,
        *,
        settings: Settings,
        store: JobService,
        orchestrator: PipelineOrchestrator,
        pool: JobWorkerPool,
        storage: StorageClient,
        verifier: IntegrityVerifier,
        formatter: Formatter,
        compressor: Compressor,
        applier: DataApplier,
        notifier: Notifier,
        encryptor: Encryptor | None = None,
    ):
        self._settings = settings
        self._store = store
        self._orchestrator = orchestrator
        self._pool = pool
        self._storage = storage
        self._verifier = verifier
        self._formatter = formatter
        self._compressor = compressor
        self._applier = applier
        self._notifier = notifier
        self._encryptor = encryptor

    def _parse_options(self, kind: JobKind, raw: dict[str, Any] | None) -> JobOptions:
        try:
            options = parse_job_options(kind, raw)
        except OptionsError as exc:
            raise JobPolicyError(str(exc)) from exc
        if isinstance(options, BackupOptions) and options.encryption_enabled and self._encryptor is None:
            raise JobPolicyError("Backup encryption is not available: no encryptor is configured")
        return options

    def _submit(self, job: JobSnapshot) -> JobSnapshot:
        self._pool.submit(job.id)
        logger.info("job_submitted", job_id=job.id, kind=job.kind.value, owner_id=job.owner_id)
        return job

    def create(self, kind: JobKind, owner_id: str, raw_options: dict[str, Any] | None) -> JobSnapshot:
        if kind == JobKind.IMPORT:
            raise JobPolicyError("Imports are created with create_import")
        options = self._parse_options(kind, raw_options)
        self._pool.ensure_capacity()
        job = self._store.create_job(
            kind,
            owner_id=owner_id,
            name=options.name or _default_name(kind, options),
            options=dump_job_options(options),
            max_retries=options.max_retries,
        )
        return self._submit(job)

    def create_import(
        self,
        owner_id: str,
        raw_options: dict[str, Any] | None,
        content: bytes,
        *,
        file_name: str | None = None,
    ) -> JobSnapshot:
        options = self._parse_options(JobKind.IMPORT, raw_options)
        assert isinstance(options, ImportOptions)
        if not content:
            raise JobPolicyError("Import file is empty")
        if len(content) > self._settings.import_max_bytes:
            raise JobPolicyError(f"Import file exceeds {self._settings.import_max_bytes} bytes")
        self._pool.ensure_capacity()

        job_id = str(uuid4())
        extension = options.format.extension
        location = self._storage.put(f"imports/{job_id}/upload.{extension}", content)
        artifact = self._verifier.describe(
            content,
            location=location,
            version=1,
            content_type="text/csv" if options.format == DataFormat.CSV else "application/json",
            file_extension=extension,
        )
        job = self._store.create_job(
            JobKind.IMPORT,
            owner_id=owner_id,
            name=options.name or file_name or "import",
            options=dump_job_options(options),
            max_retries=options.max_retries,
            artifact=artifact,
            job_id=job_id,
        )
        return self._submit(job)

    def get(self, job_id: str, owner_id: str, kind: JobKind | None = None) -> JobSnapshot:
        job = self._store.get_job(job_id, owner_id)
        if kind is not None and job.kind != kind:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def list_jobs(
        self,
        owner_id: str,
        *,
        kind: JobKind | None = None,
        status: JobStatus | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> JobListResult:
        return self._store.list_jobs(owner_id=owner_id, kind=kind, status=status, limit=limit, cursor=cursor)

    def update_options(
        self,
        job_id: str,
        owner_id: str,
        raw_options: dict[str, Any],
        *,
        kind: JobKind | None = None,
    ) -> JobSnapshot:
        job = self.get(job_id, owner_id, kind)
        options = self._parse_options(job.kind, raw_options)
        return self._store.update_options(
            job_id,
            owner_id=owner_id,
            options=dump_job_options(options),
            name=options.name,
            max_retries=options.max_retries,
        )

    def cancel(self, job_id: str, owner_id: str, *, kind: JobKind | None = None) -> JobSnapshot:
        self.get(job_id, owner_id, kind)
        job = self._store.cancel_job(job_id, owner_id=owner_id)
        logger.info("job_cancelled", job_id=job.id, kind=job.kind.value)
        self._notify(job, "cancelled")
        return job

    def retry(self, job_id: str, owner_id: str, *, kind: JobKind | None = None) -> JobSnapshot:
        self.get(job_id, owner_id, kind)
        job = self._store.reset_for_retry(job_id, owner_id=owner_id)
        logger.info("job_retry_requested", job_id=job.id, kind=job.kind.value, retry_count=job.retry_count)
        return self._submit(job)

    def start_import(self, job_id: str, owner_id: str) -> JobSnapshot:
        job = self.get(job_id, owner_id, JobKind.IMPORT)
        if job.status != JobStatus.VALIDATED:
            raise InvalidJobStateError(f"Only validated imports can be started ({job.status.value})")
        return self._submit(job)

    def download(self, job_id: str, owner_id: str, *, kind: JobKind | None = None) -> DownloadTarget:
        job = self.get(job_id, owner_id, kind)
        if job.kind == JobKind.IMPORT:
            raise JobPolicyError("Import jobs have no downloadable artifact")
        if job.status != JobStatus.COMPLETED:
            raise InvalidJobStateError(f"Only completed jobs can be downloaded ({job.status.value})")
        artifact = job.artifact
        if artifact is None or not self._storage.exists(artifact.location):
            raise ArtifactMissingError(f"Artifact for job {job_id} is missing")

        label = job.options.get("format", "json") if job.kind == JobKind.EXPORT else "backup"
        finished = job.completed_at or job.updated_at
        file_name = f"{_slug(job.name)}_{label}_{finished:%Y-%m-%d}.{artifact.file_extension}"
        self._store.record_download(job_id)
        return DownloadTarget(
            path=self._storage.local_path(artifact.location),
            file_name=file_name,
            media_type=artifact.content_type,
            checksum=artifact.checksum,
            checksum_algorithm=artifact.checksum_algorithm,
            size_bytes=artifact.size_bytes,
        )

    def delete(self, job_id: str, owner_id: str, *, kind: JobKind | None = None) -> JobSnapshot:
        self.get(job_id, owner_id, kind)
        job = self._store.delete_job(job_id, owner_id=owner_id)
        if job.artifact is not None:
            self._storage.delete(job.artifact.location)
        if job.backup_info is not None:
            self._storage.delete(job.backup_info.location)
        logger.info("job_deleted", job_id=job.id, kind=job.kind.value)
        return job

    def verify_backup(self, job_id: str, owner_id: str) -> JobSnapshot:
        job = self.get(job_id, owner_id, JobKind.BACKUP)
        if job.status != JobStatus.COMPLETED:
            raise InvalidJobStateError(f"Only completed backups can be verified ({job.status.value})")
        artifact = job.artifact
        if artifact is None:
            raise ArtifactMissingError(f"Backup {job_id} has no artifact")

        try:
            stored = self._storage.get(artifact.location)
        except FileNotFoundError:
            verification = VerificationInfo(
                verified=False,
                method="reread",
                checksum_match=False,
                size_match=False,
                expected_checksum=artifact.checksum,
                actual_checksum="",
                expected_size=artifact.size_bytes,
                actual_size=0,
                notes=["artifact is missing from storage"],
            )
        else:
            verification = self._verifier.verify_artifact(artifact, stored, method="reread")

        logger.info("backup_verified", job_id=job_id, verified=verification.verified)
        return self._store.record_verification(job_id, verification)

    def restore_backup(self, job_id: str, owner_id: str, *, data_types: list[str] | None = None) -> RestoreOutcome:
        verified = self.verify_backup(job_id, owner_id)
        assert verified.verification is not None and verified.artifact is not None
        if not verified.verification.verified:
            raise JobPolicyError("Backup failed verification and cannot be restored")

        options = parse_job_options(JobKind.BACKUP, verified.options)
        assert isinstance(options, BackupOptions)
        payload = self._storage.get(verified.artifact.location)
        if options.encryption_enabled:
            if self._encryptor is None:
                raise JobPolicyError("Backup is encrypted and no encryptor is configured")
            payload = self._encryptor.decrypt(payload)
        if options.compression_enabled:
            payload = self._compressor.decompress(payload)

        dataset = self._formatter.decode(payload, DataFormat.JSON.value)
        if data_types:
            dataset = {data_type: records for data_type, records in dataset.items() if data_type in data_types}
        restored = self._applier.replace_records(verified.owner_id, dataset)
        logger.info("backup_restored", job_id=job_id, records_restored=restored)
        self._notify(verified, "restored")
        return RestoreOutcome(
            job_id=job_id,
            records_restored=restored,
            data_types=sorted(dataset),
            verification=verified.verification,
        )

    def dashboard(self, owner_id: str) -> DashboardSnapshot:
        return self._store.get_dashboard(owner_id)

    def retry_due(self, owner_id: str | None = None) -> list[str]:
        resubmitted: list[str] = []
        for job in self._store.find_retry_due():
            if owner_id is not None and job.owner_id != owner_id:
                continue
            try:
                self._store.reset_for_retry(job.id)
            except (InvalidJobStateError, JobPolicyError) as exc:
                logger.info("job_retry_skipped", job_id=job.id, reason=str(exc))
                continue
            self._pool.submit(job.id)
            resubmitted.append(job.id)
        if resubmitted:
            logger.info("jobs_retry_due_submitted", count=len(resubmitted))
        return resubmitted

    def recover_interrupted(self) -> list[str]:
        return self._orchestrator.recover_interrupted()

    def resume_pending(self) -> int:
        submitted = 0
        for job_id in self._store.list_pending_ids():
            try:
                if self._pool.submit(job_id):
                    submitted += 1
            except WorkerQueueFullError:
                logger.warning("job_resume_deferred", job_id=job_id)
                break
        return submitted

    def _notify(self, job: JobSnapshot, event: str) -> None:
        try:
            self._notifier.notify(
                job.owner_id,
                JobEvent(job_id=job.id, kind=job.kind.value, event=event, status=job.status.value),
            )
        except Exception:
            logger.exception("job_notification_failed", job_id=job.id, job_event=event)
