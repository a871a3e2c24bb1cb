from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from habitdata.db.models import JobKind

KNOWN_DATA_TYPES: tuple[str, ...] = ("habits", "habit_logs", "garden", "analytics", "social")


class DataFormat(str, Enum):
    JSON = "json"
    CSV = "csv"

    @property
    def extension(self) -> str:
        return self.value


class ExportType(str, Enum):
    FULL_DATA = "full_data"
    HABITS_ONLY = "habits_only"
    GARDEN_ONLY = "garden_only"
    ANALYTICS_ONLY = "analytics_only"
    SOCIAL_ONLY = "social_only"
    CUSTOM = "custom"


EXPORT_TYPE_DATA_TYPES: dict[ExportType, tuple[str, ...]] = {
    ExportType.FULL_DATA: KNOWN_DATA_TYPES,
    ExportType.HABITS_ONLY: ("habits", "habit_logs"),
    ExportType.GARDEN_ONLY: ("garden",),
    ExportType.ANALYTICS_ONLY: ("analytics",),
    ExportType.SOCIAL_ONLY: ("social",),
}


class BackupType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


class ConflictResolution(str, Enum):
    SKIP = "skip"
    OVERWRITE = "overwrite"
    MERGE = "merge"


class OptionsError(ValueError):
    pass


def _normalize_data_types(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    normalized: list[str] = []
    for item in value:
        data_type = item.strip().lower()
        if data_type not in KNOWN_DATA_TYPES:
            raise ValueError(f"Unknown data type: {item}")
        if data_type not in normalized:
            normalized.append(data_type)
    if not normalized:
        raise ValueError("data_types must not be empty")
    return normalized


class DateRange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: datetime | None = None
    end: datetime | None = None

    @model_validator(mode="after")
    def _validate_order(self) -> "DateRange":
        if self.start is not None and self.end is not None and self.end < self.start:
            raise ValueError("date_range.end must not be before date_range.start")
        return self


class _JobOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=False)

    name: str | None = Field(default=None, max_length=200)
    max_retries: int | None = Field(default=None, ge=1, le=10)

    @model_validator(mode="before")
    @classmethod
    def _lowercase_enum_values(cls, data: Any) -> Any:
        # Clients send FULL_DATA / JSON style constants.
        if not isinstance(data, dict):
            return data
        normalized = dict(data)
        for key in ("format", "export_type", "backup_type", "conflict_resolution"):
            value = normalized.get(key)
            if isinstance(value, str):
                normalized[key] = value.strip().lower()
        return normalized


class ExportOptions(_JobOptions):
    format: DataFormat = DataFormat.JSON
    export_type: ExportType = ExportType.FULL_DATA
    data_types: list[str] | None = None
    date_range: DateRange | None = None
    include_archived: bool = False

    @field_validator("data_types")
    @classmethod
    def _validate_data_types(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_data_types(value)

    @model_validator(mode="after")
    def _require_custom_data_types(self) -> "ExportOptions":
        if self.export_type == ExportType.CUSTOM and not self.data_types:
            raise ValueError("data_types is required for custom exports")
        return self

    def resolved_data_types(self) -> list[str]:
        if self.export_type == ExportType.CUSTOM:
            return list(self.data_types or [])
        return list(EXPORT_TYPE_DATA_TYPES[self.export_type])


class ImportOptions(_JobOptions):
    format: DataFormat = DataFormat.JSON
    conflict_resolution: ConflictResolution = ConflictResolution.MERGE
    create_missing: bool = True
    update_existing: bool = True
    backup_before_import: bool = True
    rollback_on_error: bool = True
    max_errors: int | None = Field(default=None, ge=1)
    dry_run: bool = False
    auto_start: bool = True
    data_types: list[str] | None = None

    @field_validator("data_types")
    @classmethod
    def _validate_data_types(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_data_types(value)

    @property
    def takes_snapshot(self) -> bool:
        return self.backup_before_import or self.rollback_on_error


class BackupOptions(_JobOptions):
    backup_type: BackupType = BackupType.FULL
    data_types: list[str] | None = None
    include_archived: bool = True
    compression_enabled: bool = True
    encryption_enabled: bool = False

    @field_validator("data_types")
    @classmethod
    def _validate_data_types(cls, value: list[str] | None) -> list[str] | None:
        return _normalize_data_types(value)

    @model_validator(mode="after")
    def _require_partial_data_types(self) -> "BackupOptions":
        if self.backup_type == BackupType.PARTIAL and not self.data_types:
            raise ValueError("data_types is required for partial backups")
        return self

    def resolved_data_types(self) -> list[str]:
        if self.backup_type == BackupType.FULL:
            return list(KNOWN_DATA_TYPES)
        return list(self.data_types or [])


JobOptions = ExportOptions | ImportOptions | BackupOptions

OPTIONS_BY_KIND: dict[JobKind, type[_JobOptions]] = {
    JobKind.EXPORT: ExportOptions,
    JobKind.IMPORT: ImportOptions,
    JobKind.BACKUP: BackupOptions,
}


def parse_job_options(kind: JobKind, raw: dict[str, Any] | None) -> JobOptions:
    model = OPTIONS_BY_KIND[kind]
    try:
        return model.model_validate(raw or {})  # type: ignore[return-value]
    except ValidationError as exc:
        raise OptionsError(f"Invalid {kind.value} options: {exc.errors(include_url=False)}") from exc


def dump_job_options(options: JobOptions) -> dict[str, Any]:
    return options.model_dump(mode="json")
