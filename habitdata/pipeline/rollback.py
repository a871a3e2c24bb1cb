from __future__ import annotations

import json
from datetime import datetime, timezone
from uuid import uuid4

from habitdata.jobs.types import BackupInfo
from habitdata.pipeline.collaborators import CollectRequest, DataApplier, DataCollector, Dataset, StorageClient
from habitdata.pipeline.errors import RollbackError
from habitdata.pipeline.integrity import IntegrityVerifier


def canonical_json(dataset: Dataset) -> bytes:
    return json.dumps(dataset, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


class RollbackCoordinator:
    """Takes pre-import snapshots and restores them when an import fails."""

    def __init__(
        self,
        *,
        collector: DataCollector,
        applier: DataApplier,
        storage: StorageClient,
        verifier: IntegrityVerifier,
    ):
        self._collector = collector
        self._applier = applier
        self._storage = storage
        self._verifier = verifier

    def take_snapshot(self, *, job_id: str, owner_id: str, data_types: list[str], run_number: int) -> BackupInfo:
        dataset = self._collector.collect(CollectRequest(owner_id=owner_id, data_types=data_types, include_archived=True))
        # Every requested type is present, so restore also clears rows the import added.
        for data_type in data_types:
            dataset.setdefault(data_type, [])
        payload = canonical_json(dataset)
        snapshot_id = uuid4().hex
        location = self._storage.put(f"snapshots/{job_id}/{snapshot_id}.json", payload)
        return BackupInfo(
            snapshot_id=snapshot_id,
            location=location,
            checksum=self._verifier.compute_checksum(payload),
            checksum_algorithm=self._verifier.algorithm,
            size_bytes=len(payload),
            record_count=sum(len(records) for records in dataset.values()),
            data_types=sorted(dataset),
            run_number=run_number,
            taken_at=datetime.now(tz=timezone.utc),
        )

    def rollback(self, owner_id: str, backup_info: BackupInfo) -> int:
        try:
            payload = self._storage.get(backup_info.location)
        except FileNotFoundError as exc:
            raise RollbackError(f"Snapshot {backup_info.snapshot_id} is missing from storage") from exc

        comparison = self._verifier.compare(
            expected_checksum=backup_info.checksum,
            expected_size=backup_info.size_bytes,
            data=payload,
            algorithm=backup_info.checksum_algorithm,
        )
        if not comparison.ok:
            raise RollbackError(f"Snapshot {backup_info.snapshot_id} failed its checksum")

        dataset: Dataset = json.loads(payload.decode("utf-8"))
        try:
            return self._applier.replace_records(owner_id, dataset)
        except Exception as exc:
            raise RollbackError(f"Restoring snapshot {backup_info.snapshot_id} failed: {exc}") from exc
