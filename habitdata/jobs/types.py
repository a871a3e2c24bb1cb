from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Union

from habitdata.db.models import JobKind, JobStatus, ValidationStatus


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def to_json_dict(value: Any) -> dict[str, Any]:
    """Convert a dataclass to a JSON-column friendly dict (datetimes become ISO strings)."""

    def _convert(item: Any) -> Any:
        if isinstance(item, datetime):
            return item.isoformat()
        if isinstance(item, Enum):
            return item.value
        if isinstance(item, dict):
            return {key: _convert(val) for key, val in item.items()}
        if isinstance(item, list):
            return [_convert(val) for val in item]
        return item

    return _convert(asdict(value))


@dataclass(slots=True)
class JobProgress:
    step_name: str | None = None
    step_index: int = 0
    step_count: int = 0
    percentage: float = 0.0
    units_processed: int = 0
    units_total: int | None = None
    last_update_at: datetime | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "JobProgress":
        if not raw:
            return cls()
        return cls(
            step_name=raw.get("step_name"),
            step_index=int(raw.get("step_index", 0)),
            step_count=int(raw.get("step_count", 0)),
            percentage=float(raw.get("percentage", 0.0)),
            units_processed=int(raw.get("units_processed", 0)),
            units_total=raw.get("units_total"),
            last_update_at=_parse_datetime(raw.get("last_update_at")),
        )


@dataclass(slots=True)
class ArtifactInfo:
    location: str
    size_bytes: int
    checksum: str
    checksum_algorithm: str
    version: int = 1
    content_type: str = "application/octet-stream"
    file_extension: str = "bin"
    finalized_at: datetime | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "ArtifactInfo | None":
        if not raw:
            return None
        return cls(
            location=raw["location"],
            size_bytes=int(raw["size_bytes"]),
            checksum=raw["checksum"],
            checksum_algorithm=raw["checksum_algorithm"],
            version=int(raw.get("version", 1)),
            content_type=raw.get("content_type", "application/octet-stream"),
            file_extension=raw.get("file_extension", "bin"),
            finalized_at=_parse_datetime(raw.get("finalized_at")),
        )


@dataclass(slots=True)
class ErrorInfo:
    message: str
    error_code: str
    retry_count: int
    max_retries: int
    can_retry: bool
    next_retry_at: datetime | None = None
    stage: str | None = None
    rollback_attempted: bool = False
    rollback_succeeded: bool | None = None
    occurred_at: datetime | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "ErrorInfo | None":
        if not raw:
            return None
        return cls(
            message=raw["message"],
            error_code=raw["error_code"],
            retry_count=int(raw["retry_count"]),
            max_retries=int(raw["max_retries"]),
            can_retry=bool(raw["can_retry"]),
            next_retry_at=_parse_datetime(raw.get("next_retry_at")),
            stage=raw.get("stage"),
            rollback_attempted=bool(raw.get("rollback_attempted", False)),
            rollback_succeeded=raw.get("rollback_succeeded"),
            occurred_at=_parse_datetime(raw.get("occurred_at")),
        )


@dataclass(slots=True)
class VerificationInfo:
    verified: bool
    method: str
    checksum_match: bool
    size_match: bool
    expected_checksum: str
    actual_checksum: str
    expected_size: int
    actual_size: int
    notes: list[str] = field(default_factory=list)
    verified_at: datetime | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "VerificationInfo | None":
        if not raw:
            return None
        return cls(
            verified=bool(raw["verified"]),
            method=raw["method"],
            checksum_match=bool(raw["checksum_match"]),
            size_match=bool(raw["size_match"]),
            expected_checksum=raw["expected_checksum"],
            actual_checksum=raw["actual_checksum"],
            expected_size=int(raw["expected_size"]),
            actual_size=int(raw["actual_size"]),
            notes=list(raw.get("notes", [])),
            verified_at=_parse_datetime(raw.get("verified_at")),
        )


@dataclass(slots=True)
class ValidationIssue:
    check: Literal["format", "schema", "data"]
    message: str
    data_type: str | None = None
    record_key: str | None = None
    field: str | None = None


@dataclass(slots=True)
class SchemaFindings:
    missing_fields: list[ValidationIssue] = field(default_factory=list)
    extra_fields: list[ValidationIssue] = field(default_factory=list)
    type_mismatches: list[ValidationIssue] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.missing_fields and not self.type_mismatches


@dataclass(slots=True)
class DataFindings:
    constraint_violations: list[ValidationIssue] = field(default_factory=list)
    duplicate_keys: list[ValidationIssue] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.constraint_violations and not self.duplicate_keys


@dataclass(slots=True)
class ValidationInfo:
    status: ValidationStatus = ValidationStatus.PENDING
    format_valid: bool | None = None
    total_records: int = 0
    valid_records: int = 0
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    schema_findings: SchemaFindings = field(default_factory=SchemaFindings)
    data_findings: DataFindings = field(default_factory=DataFindings)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "ValidationInfo | None":
        if not raw:
            return None

        def _issues(items: list[dict[str, Any]] | None) -> list[ValidationIssue]:
            return [ValidationIssue(**item) for item in items or []]

        schema_raw = raw.get("schema_findings") or {}
        data_raw = raw.get("data_findings") or {}
        return cls(
            status=ValidationStatus(raw.get("status", ValidationStatus.PENDING.value)),
            format_valid=raw.get("format_valid"),
            total_records=int(raw.get("total_records", 0)),
            valid_records=int(raw.get("valid_records", 0)),
            errors=_issues(raw.get("errors")),
            warnings=_issues(raw.get("warnings")),
            schema_findings=SchemaFindings(
                missing_fields=_issues(schema_raw.get("missing_fields")),
                extra_fields=_issues(schema_raw.get("extra_fields")),
                type_mismatches=_issues(schema_raw.get("type_mismatches")),
            ),
            data_findings=DataFindings(
                constraint_violations=_issues(data_raw.get("constraint_violations")),
                duplicate_keys=_issues(data_raw.get("duplicate_keys")),
            ),
        )


@dataclass(slots=True)
class BackupInfo:
    """Reference to the pre-import snapshot an import can be rolled back to."""

    snapshot_id: str
    location: str
    checksum: str
    checksum_algorithm: str
    size_bytes: int
    record_count: int
    data_types: list[str]
    run_number: int
    taken_at: datetime | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "BackupInfo | None":
        if not raw:
            return None
        return cls(
            snapshot_id=raw["snapshot_id"],
            location=raw["location"],
            checksum=raw["checksum"],
            checksum_algorithm=raw["checksum_algorithm"],
            size_bytes=int(raw["size_bytes"]),
            record_count=int(raw["record_count"]),
            data_types=list(raw.get("data_types", [])),
            run_number=int(raw.get("run_number", 0)),
            taken_at=_parse_datetime(raw.get("taken_at")),
        )


@dataclass(slots=True)
class ExportResult:
    total_records: int
    record_counts: dict[str, int]
    format: str
    export_type: str
    export_version: str
    record_schema: dict[str, list[str]] = field(default_factory=dict)
    kind: Literal["export"] = "export"


@dataclass(slots=True)
class ImportResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: list[dict[str, str]] = field(default_factory=list)
    dry_run: bool = False
    kind: Literal["import"] = "import"

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped + self.failed


@dataclass(slots=True)
class BackupResult:
    record_counts: dict[str, int]
    uncompressed_size: int
    stored_size: int
    compression_ratio: float
    compressed: bool
    encrypted: bool
    kind: Literal["backup"] = "backup"


JobResult = Union[ExportResult, ImportResult, BackupResult]


def result_from_dict(raw: dict[str, Any] | None) -> JobResult | None:
    if not raw:
        return None
    payload = dict(raw)
    kind = payload.pop("kind", None)
    if kind == "export":
        return ExportResult(**payload)
    if kind == "import":
        return ImportResult(**payload)
    if kind == "backup":
        return BackupResult(**payload)
    raise ValueError(f"Unknown result kind: {kind}")


@dataclass(slots=True)
class JobSnapshot:
    id: str
    kind: JobKind
    status: JobStatus
    owner_id: str
    name: str
    options: dict[str, Any]
    progress: JobProgress
    artifact: ArtifactInfo | None
    error_info: ErrorInfo | None
    verification: VerificationInfo | None
    validation: ValidationInfo | None
    validation_status: ValidationStatus | None
    backup_info: BackupInfo | None
    result: JobResult | None
    retry_count: int
    max_retries: int
    run_number: int
    worker_id: str | None
    lease_expires_at: datetime | None
    download_count: int
    last_downloaded_at: datetime | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    validated_at: datetime | None
    uploaded_at: datetime | None
    verified_at: datetime | None


@dataclass(frozen=True)
class JobListResult:
    items: list[JobSnapshot]
    next_cursor: str | None


@dataclass(slots=True)
class DashboardSnapshot:
    owner_id: str
    counts: dict[str, dict[str, int]]
    recent: list[JobSnapshot]
    total_downloads: int
    retry_due: int
