from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text

from habitdata.db.init_db import initialize_database
from habitdata.db.migrations import MIGRATIONS, apply_migrations


def _column_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _index_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _migration_versions(conn) -> list[int]:
    return [
        int(row[0])
        for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
    ]


def test_apply_migrations_upgrades_legacy_jobs_table(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}")

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE jobs (
                    id VARCHAR(36) PRIMARY KEY,
                    kind VARCHAR(16) NOT NULL,
                    status VARCHAR(16) NOT NULL,
                    owner_id VARCHAR(128) NOT NULL,
                    name VARCHAR(200) NOT NULL,
                    options JSON NOT NULL,
                    progress JSON NOT NULL,
                    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
        )
        conn.execute(
            text(
                "INSERT INTO jobs(id, kind, status, owner_id, name, options, progress) VALUES "
                "('job-a', 'BACKUP', 'PROCESSING', 'owner-1', 'nightly', '{}', '{}'), "
                "('job-b', 'EXPORT', 'COMPLETED', 'owner-1', 'full', '{}', '{}')"
            )
        )

    apply_migrations(engine)
    apply_migrations(engine)

    with engine.begin() as conn:
        columns = _column_names(conn, "jobs")
        indexes = _index_names(conn, "jobs")
        rows = conn.execute(text("SELECT id, kind, status FROM jobs ORDER BY id ASC")).all()
        versions = _migration_versions(conn)

    assert {"download_count", "last_downloaded_at", "worker_id", "lease_expires_at", "run_number"}.issubset(columns)
    assert {"ix_jobs_running_lease", "ix_jobs_owner_kind_created"}.issubset(indexes)
    assert tuple(rows[0]) == ("job-a", "backup", "in_progress")
    assert tuple(rows[1]) == ("job-b", "export", "completed")
    assert versions == [step.version for step in MIGRATIONS]


def test_apply_migrations_on_empty_database_only_records_versions(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite:///{(tmp_path / 'empty.sqlite3').as_posix()}")

    apply_migrations(engine)

    with engine.begin() as conn:
        versions = _migration_versions(conn)
        jobs_exists = conn.execute(
            text("SELECT COUNT(1) FROM sqlite_master WHERE type = 'table' AND name = 'jobs'")
        ).scalar_one()

    assert versions == [step.version for step in MIGRATIONS]
    assert jobs_exists == 0


def test_initialize_database_creates_current_schema(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite:///{(tmp_path / 'fresh.sqlite3').as_posix()}")

    initialize_database(engine)

    with engine.begin() as conn:
        job_indexes = _index_names(conn, "jobs")
        record_indexes = _index_names(conn, "owner_records")
        versions = _migration_versions(conn)

    assert {"ix_jobs_kind_status", "ix_jobs_owner_kind_created", "ix_jobs_running_lease", "ix_jobs_created_id"}.issubset(
        job_indexes
    )
    assert "ix_owner_records_owner_type" in record_indexes
    assert versions == [step.version for step in MIGRATIONS]
