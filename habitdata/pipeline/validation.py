from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from habitdata.db.models import ValidationStatus
from habitdata.jobs.options import KNOWN_DATA_TYPES
from habitdata.jobs.types import (
    ArtifactInfo,
    DataFindings,
    SchemaFindings,
    ValidationInfo,
    ValidationIssue,
)
from habitdata.pipeline.collaborators import Dataset, FormatError, Formatter
from habitdata.pipeline.errors import IntegrityError
from habitdata.pipeline.integrity import IntegrityVerifier


@dataclass(frozen=True)
class RecordSchema:
    required: dict[str, str]
    optional: dict[str, str] = field(default_factory=dict)
    non_negative: tuple[str, ...] = ()
    non_blank: tuple[str, ...] = ("id",)

    def field_type(self, name: str) -> str | None:
        return self.required.get(name) or self.optional.get(name)


RECORD_SCHEMAS: dict[str, RecordSchema] = {
    "habits": RecordSchema(
        required={"id": "string", "name": "string"},
        optional={
            "description": "string",
            "frequency": "string",
            "target_count": "integer",
            "archived": "boolean",
            "created_at": "datetime",
        },
        non_negative=("target_count",),
        non_blank=("id", "name"),
    ),
    "habit_logs": RecordSchema(
        required={"id": "string", "habit_id": "string", "logged_at": "datetime"},
        optional={"count": "integer", "note": "string", "archived": "boolean"},
        non_negative=("count",),
        non_blank=("id", "habit_id"),
    ),
    "garden": RecordSchema(
        required={"id": "string", "name": "string"},
        optional={
            "plant_type": "string",
            "growth_stage": "integer",
            "planted_at": "datetime",
            "archived": "boolean",
        },
        non_negative=("growth_stage",),
        non_blank=("id", "name"),
    ),
    "analytics": RecordSchema(
        required={"id": "string", "metric": "string", "value": "number"},
        optional={"recorded_at": "datetime", "period": "string"},
        non_blank=("id", "metric"),
    ),
    "social": RecordSchema(
        required={"id": "string", "kind": "string"},
        optional={"content": "string", "created_at": "datetime", "archived": "boolean"},
    ),
}


def _parse_iso(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _matches_type(value: Any, expected: str, *, lenient: bool) -> bool:
    if value is None:
        return True
    if lenient and isinstance(value, str):
        # CSV cells arrive as text; accept anything that parses as the target type.
        return _text_matches_type(value, expected)
    if expected == "string":
        return isinstance(value, str)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "datetime":
        return isinstance(value, str) and _parse_iso(value) is not None
    return True


def _text_matches_type(value: str, expected: str) -> bool:
    text = value.strip()
    if expected == "string" or text == "":
        return True
    if expected == "integer":
        return text.lstrip("-").isdigit()
    if expected == "number":
        try:
            float(text)
        except ValueError:
            return False
        return True
    if expected == "boolean":
        return text.lower() in {"true", "false", "1", "0"}
    if expected == "datetime":
        return _parse_iso(text) is not None
    return True


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


class _IssueBudget:
    def __init__(self, max_errors: int):
        self.max_errors = max_errors
        self.count = 0

    @property
    def exhausted(self) -> bool:
        return self.count >= self.max_errors

    def add(self, target: list[ValidationIssue], issue: ValidationIssue) -> None:
        if self.exhausted:
            return
        target.append(issue)
        self.count += 1


@dataclass(slots=True)
class FormatOutcome:
    passed: bool
    issues: list[ValidationIssue]
    dataset: Dataset
    total_records: int


class ValidationPipeline:
    """Format, schema and data-integrity checks for an uploaded import file."""

    def __init__(self, formatter: Formatter, verifier: IntegrityVerifier, *, max_errors: int, max_bytes: int):
        self._formatter = formatter
        self._verifier = verifier
        self._max_errors = max_errors
        self._max_bytes = max_bytes

    def check_format(self, data: bytes, fmt: str, artifact: ArtifactInfo) -> FormatOutcome:
        comparison = self._verifier.compare(
            expected_checksum=artifact.checksum,
            expected_size=artifact.size_bytes,
            data=data,
            algorithm=artifact.checksum_algorithm,
        )
        if not comparison.ok:
            raise IntegrityError("Uploaded import file does not match its recorded checksum", stage="validate_format")

        issues: list[ValidationIssue] = []
        if len(data) > self._max_bytes:
            issues.append(ValidationIssue(check="format", message=f"File exceeds {self._max_bytes} bytes"))
            return FormatOutcome(passed=False, issues=issues, dataset={}, total_records=0)

        try:
            dataset = self._formatter.decode(data, fmt)
        except FormatError as exc:
            issues.append(ValidationIssue(check="format", message=f"Not a valid {fmt} file: {exc}"))
            return FormatOutcome(passed=False, issues=issues, dataset={}, total_records=0)

        for data_type in dataset:
            if data_type not in KNOWN_DATA_TYPES:
                issues.append(ValidationIssue(check="format", message="Unknown data type", data_type=data_type))

        total = sum(len(records) for records in dataset.values())
        if total == 0 and not issues:
            issues.append(ValidationIssue(check="format", message="File contains no records"))
        return FormatOutcome(passed=not issues, issues=issues, dataset=dataset, total_records=total)

    def check_schema(self, dataset: Dataset, *, lenient: bool = False, max_errors: int | None = None) -> SchemaFindings:
        findings = SchemaFindings()
        budget = _IssueBudget(max_errors or self._max_errors)
        for data_type, records in dataset.items():
            schema = RECORD_SCHEMAS[data_type]
            for position, record in enumerate(records):
                if budget.exhausted:
                    return findings
                record_key = str(record.get("id") or f"#{position}")
                for name in schema.required:
                    if name not in record or record[name] is None:
                        budget.add(
                            findings.missing_fields,
                            ValidationIssue(
                                check="schema",
                                message=f"Missing required field {name}",
                                data_type=data_type,
                                record_key=record_key,
                                field=name,
                            ),
                        )
                for name, value in record.items():
                    expected = schema.field_type(name)
                    if expected is None:
                        findings.extra_fields.append(
                            ValidationIssue(
                                check="schema",
                                message=f"Unexpected field {name}",
                                data_type=data_type,
                                record_key=record_key,
                                field=name,
                            )
                        )
                        continue
                    if not _matches_type(value, expected, lenient=lenient):
                        budget.add(
                            findings.type_mismatches,
                            ValidationIssue(
                                check="schema",
                                message=f"Expected {expected} for {name}, got {type(value).__name__}",
                                data_type=data_type,
                                record_key=record_key,
                                field=name,
                            ),
                        )
        return findings

    def check_data(self, dataset: Dataset, *, max_errors: int | None = None) -> DataFindings:
        findings = DataFindings()
        budget = _IssueBudget(max_errors or self._max_errors)
        for data_type, records in dataset.items():
            schema = RECORD_SCHEMAS[data_type]
            seen: set[str] = set()
            for position, record in enumerate(records):
                if budget.exhausted:
                    return findings
                record_key = str(record.get("id") or f"#{position}")
                for name in schema.non_blank:
                    value = record.get(name)
                    if value is None or (isinstance(value, str) and not value.strip()):
                        budget.add(
                            findings.constraint_violations,
                            ValidationIssue(
                                check="data",
                                message=f"{name} must not be blank",
                                data_type=data_type,
                                record_key=record_key,
                                field=name,
                            ),
                        )
                for name in schema.non_negative:
                    number = _as_number(record.get(name))
                    if number is not None and number < 0:
                        budget.add(
                            findings.constraint_violations,
                            ValidationIssue(
                                check="data",
                                message=f"{name} must not be negative",
                                data_type=data_type,
                                record_key=record_key,
                                field=name,
                            ),
                        )
                if record_key in seen:
                    budget.add(
                        findings.duplicate_keys,
                        ValidationIssue(
                            check="data",
                            message="Duplicate record id",
                            data_type=data_type,
                            record_key=record_key,
                            field="id",
                        ),
                    )
                seen.add(record_key)
        return findings

    def summarize(
        self,
        *,
        total_records: int,
        format_issues: list[ValidationIssue],
        schema: SchemaFindings | None,
        data: DataFindings | None,
    ) -> ValidationInfo:
        errors = list(format_issues)
        warnings: list[ValidationIssue] = []
        invalid_keys: set[tuple[str | None, str | None]] = set()
        if schema is not None:
            errors.extend(schema.missing_fields)
            errors.extend(schema.type_mismatches)
            warnings.extend(schema.extra_fields)
        if data is not None:
            errors.extend(data.constraint_violations)
            errors.extend(data.duplicate_keys)
        for issue in errors:
            if issue.record_key is not None:
                invalid_keys.add((issue.data_type, issue.record_key))

        format_valid = not format_issues
        passed = format_valid and schema is not None and schema.passed and data is not None and data.passed
        failed = bool(errors)
        if passed:
            status = ValidationStatus.PASSED
        elif failed:
            status = ValidationStatus.FAILED
        else:
            status = ValidationStatus.PENDING
        return ValidationInfo(
            status=status,
            format_valid=format_valid,
            total_records=total_records,
            valid_records=0 if not format_valid else max(total_records - len(invalid_keys), 0),
            errors=errors,
            warnings=warnings,
            schema_findings=schema or SchemaFindings(),
            data_findings=data or DataFindings(),
        )


def _coerce_text(value: str, expected: str) -> Any:
    text = value.strip()
    if text == "":
        return None
    if expected == "integer":
        return int(text)
    if expected == "number":
        number = float(text)
        return int(number) if number.is_integer() and "." not in text else number
    if expected == "boolean":
        return text.lower() in {"true", "1"}
    return value


def coerce_dataset(dataset: Dataset) -> Dataset:
    """Turn text cells from a validated CSV import into typed values."""
    coerced: Dataset = {}
    for data_type, records in dataset.items():
        schema = RECORD_SCHEMAS[data_type]
        typed_records = []
        for record in records:
            typed: dict[str, Any] = {}
            for name, value in record.items():
                expected = schema.field_type(name)
                if isinstance(value, str) and expected is not None:
                    typed[name] = _coerce_text(value, expected)
                else:
                    typed[name] = value
            typed_records.append({key: val for key, val in typed.items() if val is not None})
        coerced[data_type] = typed_records
    return coerced
