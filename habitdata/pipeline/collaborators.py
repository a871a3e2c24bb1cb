"""Strategy interfaces the pipeline orchestrates but does not implement."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Protocol

from habitdata.jobs.types import ImportResult

Record = dict[str, Any]
Dataset = dict[str, list[Record]]


@dataclass(frozen=True)
class CollectRequest:
    owner_id: str
    data_types: list[str]
    include_archived: bool = False
    created_after: datetime | None = None
    created_before: datetime | None = None


@dataclass(frozen=True)
class ApplyPolicy:
    conflict_resolution: str = "merge"
    create_missing: bool = True
    update_existing: bool = True
    dry_run: bool = False


@dataclass(slots=True)
class JobEvent:
    job_id: str
    kind: str
    event: str
    status: str
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class DataCollector(Protocol):
    def collect(self, request: CollectRequest) -> Dataset: ...


class DataApplier(Protocol):
    def apply(
        self,
        owner_id: str,
        dataset: Dataset,
        policy: ApplyPolicy,
        checkpoint: Callable[[int, int], None],
    ) -> ImportResult: ...

    def replace_records(self, owner_id: str, dataset: Dataset) -> int: ...


class Formatter(Protocol):
    def encode(self, dataset: Dataset, fmt: str, *, metadata: dict[str, Any] | None = None) -> bytes: ...

    def decode(self, data: bytes, fmt: str) -> Dataset: ...


class Compressor(Protocol):
    extension: str

    def compress(self, data: bytes) -> bytes: ...

    def decompress(self, data: bytes) -> bytes: ...


class Encryptor(Protocol):
    def encrypt(self, data: bytes) -> bytes: ...

    def decrypt(self, data: bytes) -> bytes: ...


class StorageClient(Protocol):
    def put(self, key: str, data: bytes) -> str: ...

    def get(self, location: str) -> bytes: ...

    def delete(self, location: str) -> None: ...

    def exists(self, location: str) -> bool: ...

    def local_path(self, location: str) -> str: ...


class Notifier(Protocol):
    def notify(self, owner_id: str, event: JobEvent) -> None: ...


class FormatError(ValueError):
    """Raised by a formatter when bytes do not match the declared format."""
