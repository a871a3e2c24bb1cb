from __future__ import annotations

import csv
import io
import json
from typing import Any

from habitdata.pipeline.collaborators import Dataset, FormatError

CSV_TYPE_COLUMN = "data_type"


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return str(value)


class RecordFormatter:
    """JSON and CSV encoding of a per-data-type record set."""

    def encode(self, dataset: Dataset, fmt: str, *, metadata: dict[str, Any] | None = None) -> bytes:
        if fmt == "json":
            document = {"metadata": metadata or {}, "data": dataset}
            return json.dumps(document, sort_keys=True, indent=2, ensure_ascii=False, default=str).encode("utf-8")
        if fmt == "csv":
            return self._encode_csv(dataset)
        raise FormatError(f"Unsupported format: {fmt}")

    def decode(self, data: bytes, fmt: str) -> Dataset:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise FormatError("File is not UTF-8 encoded") from exc

        if fmt == "json":
            return self._decode_json(text)
        if fmt == "csv":
            return self._decode_csv(text)
        raise FormatError(f"Unsupported format: {fmt}")

    def _encode_csv(self, dataset: Dataset) -> bytes:
        columns = sorted({name for records in dataset.values() for record in records for name in record})
        if "id" in columns:
            columns.remove("id")
            columns.insert(0, "id")
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow([CSV_TYPE_COLUMN, *columns])
        for data_type in sorted(dataset):
            for record in dataset[data_type]:
                writer.writerow([data_type, *(_cell(record.get(name)) for name in columns)])
        return buffer.getvalue().encode("utf-8")

    def _decode_json(self, text: str) -> Dataset:
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise FormatError(f"Invalid JSON at line {exc.lineno}: {exc.msg}") from exc

        if not isinstance(document, dict):
            raise FormatError("Top-level JSON value must be an object")
        data = document["data"] if "data" in document else document
        if not isinstance(data, dict):
            raise FormatError("'data' must be an object keyed by data type")

        dataset: Dataset = {}
        for data_type, records in data.items():
            if not isinstance(records, list):
                raise FormatError(f"Records for {data_type} must be a list")
            for record in records:
                if not isinstance(record, dict):
                    raise FormatError(f"Every {data_type} record must be an object")
            dataset[str(data_type)] = records
        return dataset

    def _decode_csv(self, text: str) -> Dataset:
        reader = csv.DictReader(io.StringIO(text))
        if reader.fieldnames is None or CSV_TYPE_COLUMN not in reader.fieldnames:
            raise FormatError(f"CSV header must include a {CSV_TYPE_COLUMN} column")

        dataset: Dataset = {}
        try:
            for row in reader:
                if None in row:
                    raise FormatError(f"Row {reader.line_num} has more cells than the header")
                data_type = (row.pop(CSV_TYPE_COLUMN) or "").strip()
                if not data_type:
                    raise FormatError(f"Row {reader.line_num} has no {CSV_TYPE_COLUMN}")
                record = {name: value for name, value in row.items() if value not in ("", None)}
                dataset.setdefault(data_type, []).append(record)
        except csv.Error as exc:
            raise FormatError(f"Malformed CSV: {exc}") from exc
        return dataset
