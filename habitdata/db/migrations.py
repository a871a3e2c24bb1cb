from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(200) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    return inspect(conn).has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    return any(col["name"] == column_name for col in inspect(conn).get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    return any(index.get("name") == index_name for index in inspect(conn).get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _migration_0002_download_bookkeeping(conn: Connection) -> None:
    if not _table_exists(conn, "jobs"):
        return

    if not _column_exists(conn, "jobs", "download_count"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN download_count INTEGER NOT NULL DEFAULT 0"))

    if not _column_exists(conn, "jobs", "last_downloaded_at"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN last_downloaded_at DATETIME"))


def _migration_0003_jobs_lease_protocol(conn: Connection) -> None:
    if not _table_exists(conn, "jobs"):
        return

    if not _column_exists(conn, "jobs", "worker_id"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN worker_id VARCHAR(128)"))

    if not _column_exists(conn, "jobs", "lease_expires_at"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN lease_expires_at DATETIME"))

    if not _column_exists(conn, "jobs", "run_number"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN run_number INTEGER NOT NULL DEFAULT 0"))

    if not _index_exists(conn, "jobs", "ix_jobs_running_lease"):
        conn.execute(text("CREATE INDEX ix_jobs_running_lease ON jobs (status, lease_expires_at)"))


def _migration_0004_normalize_job_status_values(conn: Connection) -> None:
    if not _table_exists(conn, "jobs"):
        return

    # Backups used to report "processing" where exports reported "in_progress".
    conn.execute(
        text(
            """
            UPDATE jobs
            SET kind = lower(kind),
                status = lower(status)
            WHERE kind != lower(kind) OR status != lower(status)
            """
        )
    )
    conn.execute(text("UPDATE jobs SET status = 'in_progress' WHERE status = 'processing'"))


def _migration_0005_owner_indexes(conn: Connection) -> None:
    if _table_exists(conn, "jobs") and not _index_exists(conn, "jobs", "ix_jobs_owner_kind_created"):
        conn.execute(text("CREATE INDEX ix_jobs_owner_kind_created ON jobs (owner_id, kind, created_at)"))

    if _table_exists(conn, "owner_records") and not _index_exists(
        conn, "owner_records", "ix_owner_records_owner_type"
    ):
        conn.execute(text("CREATE INDEX ix_owner_records_owner_type ON owner_records (owner_id, data_type)"))


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="jobs_download_bookkeeping", apply=_migration_0002_download_bookkeeping),
    MigrationStep(version=3, name="jobs_lease_protocol", apply=_migration_0003_jobs_lease_protocol),
    MigrationStep(version=4, name="normalize_job_status_values", apply=_migration_0004_normalize_job_status_values),
    MigrationStep(version=5, name="owner_indexes", apply=_migration_0005_owner_indexes),
)


def apply_migrations(engine: Engine) -> None:
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
