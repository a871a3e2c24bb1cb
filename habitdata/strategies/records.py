from __future__ import annotations

from typing import Any, Callable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from habitdata.db.models import OwnerRecord
from habitdata.db.session import session_scope
from habitdata.jobs.types import ImportResult
from habitdata.pipeline.collaborators import ApplyPolicy, CollectRequest, Dataset, Record


def _to_record(row: OwnerRecord) -> Record:
    record: Record = {**row.payload, "id": row.record_key}
    if row.archived:
        record["archived"] = True
    return record


def _split_record(record: Record) -> tuple[str, dict[str, Any], bool]:
    payload = {key: value for key, value in record.items() if key not in {"id", "archived"}}
    return str(record["id"]), payload, bool(record.get("archived", False))


class SqlRecordStore:
    """Owner data kept in the ``owner_records`` table.

    Serves as the data collector for exports and backups and as the apply
    target for imports and restores.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def collect(self, request: CollectRequest) -> Dataset:
        stmt = (
            select(OwnerRecord)
            .where(OwnerRecord.owner_id == request.owner_id, OwnerRecord.data_type.in_(request.data_types))
            .order_by(OwnerRecord.data_type.asc(), OwnerRecord.record_key.asc())
        )
        if not request.include_archived:
            stmt = stmt.where(OwnerRecord.archived.is_(False))
        if request.created_after is not None:
            stmt = stmt.where(OwnerRecord.created_at >= request.created_after)
        if request.created_before is not None:
            stmt = stmt.where(OwnerRecord.created_at <= request.created_before)

        dataset: Dataset = {data_type: [] for data_type in request.data_types}
        with self._session_factory() as session:
            for row in session.scalars(stmt):
                dataset[row.data_type].append(_to_record(row))
        return dataset

    def apply(
        self,
        owner_id: str,
        dataset: Dataset,
        policy: ApplyPolicy,
        checkpoint: Callable[[int, int], None],
    ) -> ImportResult:
        result = ImportResult(dry_run=policy.dry_run)
        total = sum(len(records) for records in dataset.values())
        for data_type, records in dataset.items():
            session = self._session_factory()
            try:
                existing = {
                    row.record_key: row
                    for row in session.scalars(
                        select(OwnerRecord).where(OwnerRecord.owner_id == owner_id, OwnerRecord.data_type == data_type)
                    )
                }
                for record in records:
                    self._apply_record(session, owner_id, data_type, record, existing, policy, result)
                # Each data type commits on its own, and only while the job still wants it.
                checkpoint(result.processed, total)
                if policy.dry_run:
                    session.rollback()
                else:
                    session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
        return result

    def _apply_record(
        self,
        session: Session,
        owner_id: str,
        data_type: str,
        record: Record,
        existing: dict[str, OwnerRecord],
        policy: ApplyPolicy,
        result: ImportResult,
    ) -> None:
        record_key, payload, archived = _split_record(record)
        row = existing.get(record_key)
        if row is None:
            if not policy.create_missing:
                result.skipped += 1
                return
            row = OwnerRecord(
                owner_id=owner_id,
                data_type=data_type,
                record_key=record_key,
                payload=payload,
                archived=archived,
            )
            session.add(row)
            existing[record_key] = row
            result.created += 1
            return

        if not policy.update_existing or policy.conflict_resolution == "skip":
            result.skipped += 1
            result.conflicts.append({"data_type": data_type, "record_key": record_key, "resolution": "skip"})
            return

        if policy.conflict_resolution == "overwrite":
            row.payload = payload
        else:
            row.payload = {**row.payload, **payload}
        row.archived = archived
        result.updated += 1
        result.conflicts.append(
            {"data_type": data_type, "record_key": record_key, "resolution": policy.conflict_resolution}
        )

    def replace_records(self, owner_id: str, dataset: Dataset) -> int:
        restored = 0
        with session_scope(self._session_factory) as session:
            for data_type, records in dataset.items():
                session.execute(
                    delete(OwnerRecord).where(OwnerRecord.owner_id == owner_id, OwnerRecord.data_type == data_type)
                )
                for record in records:
                    record_key, payload, archived = _split_record(record)
                    session.add(
                        OwnerRecord(
                            owner_id=owner_id,
                            data_type=data_type,
                            record_key=record_key,
                            payload=payload,
                            archived=archived,
                        )
                    )
                    restored += 1
        return restored
