from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from habitdata.db.models import JobKind
from habitdata.jobs.options import BackupOptions, DataFormat, ExportOptions, ImportOptions, JobOptions
from habitdata.jobs.service import JobService
from habitdata.jobs.types import (
    ArtifactInfo,
    BackupResult,
    DataFindings,
    ExportResult,
    ImportResult,
    JobResult,
    SchemaFindings,
    ValidationIssue,
)
from habitdata.pipeline.collaborators import (
    ApplyPolicy,
    CollectRequest,
    Compressor,
    DataApplier,
    DataCollector,
    Dataset,
    Encryptor,
    Formatter,
    StorageClient,
)
from habitdata.pipeline.errors import (
    IntegrityError,
    PermanentStageError,
    TransientStageError,
    ValidationFailedError,
)
from habitdata.pipeline.integrity import IntegrityVerifier
from habitdata.pipeline.rollback import RollbackCoordinator
from habitdata.pipeline.stages import Stage, StageContext
from habitdata.pipeline.validation import ValidationPipeline, coerce_dataset

EXPORT_VERSION = "1.0"

CONTENT_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
}


class JobPlan(Protocol):
    kind: JobKind

    def stages(self, options: JobOptions) -> list[Stage]: ...

    def first_stage(self, resumed: bool) -> int: ...

    def validation_boundary(self) -> int | None: ...

    def build_result(self, ctx: StageContext) -> JobResult | None: ...


@dataclass
class PlanDependencies:
    store: JobService
    collector: DataCollector
    applier: DataApplier
    formatter: Formatter
    compressor: Compressor
    storage: StorageClient
    verifier: IntegrityVerifier
    validation: ValidationPipeline
    rollback: RollbackCoordinator
    encryptor: Encryptor | None = None


def _record_counts(dataset: Dataset) -> dict[str, int]:
    return {data_type: len(records) for data_type, records in sorted(dataset.items())}


def _next_version(ctx: StageContext) -> tuple[int, ArtifactInfo | None]:
    current = ctx.refresh().artifact
    return (current.version + 1 if current is not None else 1), current


def _write_and_check(
    deps: PlanDependencies,
    ctx: StageContext,
    *,
    key: str,
    payload: bytes,
    version: int,
    content_type: str,
    file_extension: str,
) -> ArtifactInfo:
    try:
        location = deps.storage.put(key, payload)
        stored = deps.storage.get(location)
    except OSError as exc:
        raise TransientStageError(f"Storage write failed: {exc}") from exc

    artifact = deps.verifier.describe(
        payload,
        location=location,
        version=version,
        content_type=content_type,
        file_extension=file_extension,
    )
    comparison = deps.verifier.compare(
        expected_checksum=artifact.checksum,
        expected_size=artifact.size_bytes,
        data=stored,
    )
    if not comparison.ok:
        raise IntegrityError(f"Stored bytes at {location} differ from what was written")
    deps.store.record_artifact(ctx.job_id, ctx.worker_id, artifact)
    return artifact


class ExportPlan:
    kind = JobKind.EXPORT

    def __init__(self, deps: PlanDependencies):
        self._deps = deps

    def stages(self, options: JobOptions) -> list[Stage]:
        return [
            Stage("collect", self._collect),
            Stage("format", self._format),
            Stage("write_artifact", self._write_artifact),
            Stage("finalize", self._finalize),
        ]

    def first_stage(self, resumed: bool) -> int:
        return 0

    def validation_boundary(self) -> int | None:
        return None

    def _options(self, ctx: StageContext) -> ExportOptions:
        assert isinstance(ctx.options, ExportOptions)
        return ctx.options

    def _collect(self, ctx: StageContext) -> None:
        options = self._options(ctx)
        date_range = options.date_range
        dataset = self._deps.collector.collect(
            CollectRequest(
                owner_id=ctx.owner_id,
                data_types=options.resolved_data_types(),
                include_archived=options.include_archived,
                created_after=date_range.start if date_range else None,
                created_before=date_range.end if date_range else None,
            )
        )
        ctx.scratch["dataset"] = dataset
        total = sum(len(records) for records in dataset.values())
        ctx.report_units(total, total)

    def _format(self, ctx: StageContext) -> None:
        options = self._options(ctx)
        dataset: Dataset = ctx.scratch["dataset"]
        metadata = {
            "export_version": EXPORT_VERSION,
            "export_type": options.export_type.value,
            "record_counts": _record_counts(dataset),
            "job_id": ctx.job_id,
        }
        payload = self._deps.formatter.encode(dataset, options.format.value, metadata=metadata)
        ctx.scratch["payload"] = payload
        ctx.report_units(len(payload), len(payload))

    def _write_artifact(self, ctx: StageContext) -> None:
        options = self._options(ctx)
        payload: bytes = ctx.scratch["payload"]
        version, previous = _next_version(ctx)
        extension = options.format.extension
        artifact = _write_and_check(
            self._deps,
            ctx,
            key=f"exports/{ctx.job_id}/v{version}.{extension}",
            payload=payload,
            version=version,
            content_type=CONTENT_TYPES[options.format.value],
            file_extension=extension,
        )
        if previous is not None and previous.location != artifact.location:
            self._deps.storage.delete(previous.location)
        ctx.report_units(artifact.size_bytes, artifact.size_bytes)

    def _finalize(self, ctx: StageContext) -> None:
        options = self._options(ctx)
        artifact = ctx.refresh().artifact
        if artifact is None or not self._deps.storage.exists(artifact.location):
            raise TransientStageError("Export artifact disappeared before finalize")
        dataset: Dataset = ctx.scratch["dataset"]
        ctx.scratch["result"] = ExportResult(
            total_records=sum(len(records) for records in dataset.values()),
            record_counts=_record_counts(dataset),
            format=options.format.value,
            export_type=options.export_type.value,
            export_version=EXPORT_VERSION,
            record_schema={
                data_type: sorted({name for record in records for name in record})
                for data_type, records in sorted(dataset.items())
            },
        )

    def build_result(self, ctx: StageContext) -> JobResult | None:
        return ctx.scratch.get("result")


class BackupPlan:
    kind = JobKind.BACKUP

    def __init__(self, deps: PlanDependencies):
        self._deps = deps

    def stages(self, options: JobOptions) -> list[Stage]:
        assert isinstance(options, BackupOptions)
        stages = [Stage("collect", self._collect), Stage("compress", self._compress)]
        if options.encryption_enabled:
            stages.append(Stage("encrypt", self._encrypt))
        stages.extend([Stage("upload", self._upload), Stage("finalize", self._finalize)])
        return stages

    def first_stage(self, resumed: bool) -> int:
        return 0

    def validation_boundary(self) -> int | None:
        return None

    def _options(self, ctx: StageContext) -> BackupOptions:
        assert isinstance(ctx.options, BackupOptions)
        return ctx.options

    def _collect(self, ctx: StageContext) -> None:
        options = self._options(ctx)
        dataset = self._deps.collector.collect(
            CollectRequest(
                owner_id=ctx.owner_id,
                data_types=options.resolved_data_types(),
                include_archived=options.include_archived,
            )
        )
        metadata = {
            "backup_type": options.backup_type.value,
            "record_counts": _record_counts(dataset),
            "job_id": ctx.job_id,
        }
        raw = self._deps.formatter.encode(dataset, DataFormat.JSON.value, metadata=metadata)
        ctx.scratch["record_counts"] = _record_counts(dataset)
        ctx.scratch["raw_size"] = len(raw)
        ctx.scratch["payload"] = raw
        total = sum(len(records) for records in dataset.values())
        ctx.report_units(total, total)

    def _compress(self, ctx: StageContext) -> None:
        if self._options(ctx).compression_enabled:
            ctx.scratch["payload"] = self._deps.compressor.compress(ctx.scratch["payload"])
        ctx.report_units(len(ctx.scratch["payload"]), ctx.scratch["raw_size"])

    def _encrypt(self, ctx: StageContext) -> None:
        if self._deps.encryptor is None:
            raise PermanentStageError(
                "Encryption requested but no encryptor is configured", error_code="ENCRYPTION_UNAVAILABLE"
            )
        ctx.scratch["payload"] = self._deps.encryptor.encrypt(ctx.scratch["payload"])
        ctx.report_units(len(ctx.scratch["payload"]))

    def _extension(self, options: BackupOptions) -> str:
        parts = ["json"]
        if options.compression_enabled:
            parts.append(self._deps.compressor.extension)
        if options.encryption_enabled:
            parts.append("enc")
        return ".".join(parts)

    def _upload(self, ctx: StageContext) -> None:
        options = self._options(ctx)
        payload: bytes = ctx.scratch["payload"]
        version, previous = _next_version(ctx)
        extension = self._extension(options)
        artifact = _write_and_check(
            self._deps,
            ctx,
            key=f"backups/{ctx.job_id}/v{version}.{extension}",
            payload=payload,
            version=version,
            content_type="application/octet-stream",
            file_extension=extension,
        )
        if previous is not None and previous.location != artifact.location:
            self._deps.storage.delete(previous.location)
        ctx.report_units(artifact.size_bytes, artifact.size_bytes)

    def _finalize(self, ctx: StageContext) -> None:
        artifact = ctx.refresh().artifact
        if artifact is None:
            raise TransientStageError("Backup artifact was not recorded")
        try:
            stored = self._deps.storage.get(artifact.location)
        except FileNotFoundError as exc:
            raise TransientStageError("Backup artifact disappeared before verification") from exc

        verification = self._deps.verifier.verify_artifact(artifact, stored, method="reread")
        self._deps.store.record_verification(ctx.job_id, verification, worker_id=ctx.worker_id)
        if not verification.verified:
            raise IntegrityError("; ".join(verification.notes) or "Backup verification failed")

        options = self._options(ctx)
        raw_size: int = ctx.scratch["raw_size"]
        ctx.scratch["result"] = BackupResult(
            record_counts=ctx.scratch["record_counts"],
            uncompressed_size=raw_size,
            stored_size=artifact.size_bytes,
            compression_ratio=round(artifact.size_bytes / raw_size, 4) if raw_size else 1.0,
            compressed=options.compression_enabled,
            encrypted=options.encryption_enabled,
        )

    def build_result(self, ctx: StageContext) -> JobResult | None:
        return ctx.scratch.get("result")


class ImportPlan:
    kind = JobKind.IMPORT
    VALIDATION_STAGES = 3

    def __init__(self, deps: PlanDependencies):
        self._deps = deps

    def stages(self, options: JobOptions) -> list[Stage]:
        assert isinstance(options, ImportOptions)
        stages = [
            Stage("validate_format", self._validate_format),
            Stage("validate_schema", self._validate_schema),
            Stage("validate_data", self._validate_data),
        ]
        if options.takes_snapshot:
            stages.append(Stage("snapshot", self._snapshot))
        stages.extend([Stage("apply", self._apply), Stage("finalize", self._finalize)])
        return stages

    def first_stage(self, resumed: bool) -> int:
        # A run claimed from VALIDATED continues after the validation stages.
        return self.VALIDATION_STAGES if resumed else 0

    def validation_boundary(self) -> int | None:
        return self.VALIDATION_STAGES - 1

    def _options(self, ctx: StageContext) -> ImportOptions:
        assert isinstance(ctx.options, ImportOptions)
        return ctx.options

    def _read_upload(self, ctx: StageContext) -> tuple[bytes, ArtifactInfo]:
        artifact = ctx.refresh().artifact
        if artifact is None:
            raise PermanentStageError("Import has no uploaded file", error_code="ARTIFACT_MISSING")
        try:
            return self._deps.storage.get(artifact.location), artifact
        except FileNotFoundError as exc:
            raise TransientStageError(f"Uploaded file {artifact.location} is missing") from exc

    def _filter(self, ctx: StageContext, dataset: Dataset) -> Dataset:
        wanted = self._options(ctx).data_types
        if not wanted:
            return dataset
        return {data_type: records for data_type, records in dataset.items() if data_type in wanted}

    def _dataset(self, ctx: StageContext) -> Dataset:
        dataset = ctx.scratch.get("dataset")
        if dataset is None:
            options = self._options(ctx)
            data, _ = self._read_upload(ctx)
            dataset = self._filter(ctx, self._deps.formatter.decode(data, options.format.value))
            if options.format == DataFormat.CSV:
                dataset = coerce_dataset(dataset)
            ctx.scratch["dataset"] = dataset
        return dataset

    def _record(
        self,
        ctx: StageContext,
        *,
        format_issues: list[ValidationIssue],
        schema: SchemaFindings | None,
        data: DataFindings | None,
    ) -> None:
        validation = self._deps.validation.summarize(
            total_records=ctx.scratch.get("total_records", 0),
            format_issues=format_issues,
            schema=schema,
            data=data,
        )
        self._deps.store.record_validation(ctx.job_id, ctx.worker_id, validation)
        if validation.errors:
            first = validation.errors[0]
            raise ValidationFailedError(
                f"{first.check} check failed: {first.message} ({len(validation.errors)} issue(s))"
            )

    def _validate_format(self, ctx: StageContext) -> None:
        options = self._options(ctx)
        data, artifact = self._read_upload(ctx)
        outcome = self._deps.validation.check_format(data, options.format.value, artifact)
        dataset = self._filter(ctx, outcome.dataset)
        ctx.scratch["dataset"] = dataset
        ctx.scratch["total_records"] = sum(len(records) for records in dataset.values())
        ctx.report_units(len(data), artifact.size_bytes)
        self._record(ctx, format_issues=outcome.issues, schema=None, data=None)

    def _validate_schema(self, ctx: StageContext) -> None:
        options = self._options(ctx)
        findings = self._deps.validation.check_schema(
            ctx.scratch["dataset"],
            lenient=options.format == DataFormat.CSV,
            max_errors=options.max_errors,
        )
        ctx.scratch["schema_findings"] = findings
        ctx.report_units(ctx.scratch["total_records"], ctx.scratch["total_records"])
        self._record(ctx, format_issues=[], schema=findings, data=None)

    def _validate_data(self, ctx: StageContext) -> None:
        options = self._options(ctx)
        findings = self._deps.validation.check_data(ctx.scratch["dataset"], max_errors=options.max_errors)
        ctx.report_units(ctx.scratch["total_records"], ctx.scratch["total_records"])
        self._record(ctx, format_issues=[], schema=ctx.scratch["schema_findings"], data=findings)
        if options.format == DataFormat.CSV:
            ctx.scratch["dataset"] = coerce_dataset(ctx.scratch["dataset"])

    def _snapshot(self, ctx: StageContext) -> None:
        dataset = self._dataset(ctx)
        backup_info = self._deps.rollback.take_snapshot(
            job_id=ctx.job_id,
            owner_id=ctx.owner_id,
            data_types=sorted(dataset),
            run_number=ctx.run_number,
        )
        self._deps.store.record_backup_info(ctx.job_id, ctx.worker_id, backup_info)
        ctx.report_units(backup_info.record_count, backup_info.record_count)

    def _apply(self, ctx: StageContext) -> None:
        options = self._options(ctx)
        dataset = self._dataset(ctx)
        policy = ApplyPolicy(
            conflict_resolution=options.conflict_resolution.value,
            create_missing=options.create_missing,
            update_existing=options.update_existing,
            dry_run=options.dry_run,
        )
        ctx.scratch["result"] = self._deps.applier.apply(
            ctx.owner_id,
            dataset,
            policy,
            lambda processed, total: ctx.report_units(processed, total),
        )

    def _finalize(self, ctx: StageContext) -> None:
        result: ImportResult = ctx.scratch["result"]
        ctx.report_units(result.processed, result.processed)

    def build_result(self, ctx: StageContext) -> JobResult | None:
        return ctx.scratch.get("result")
