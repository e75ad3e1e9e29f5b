"""
SQLite job metadata store.
Default backend: persistent, single host, safe across worker threads.
"""

import logging
import os
import sqlite3
from typing import Any

from job_store import JobExistsError, JobStore

logger = logging.getLogger(__name__)

# Job fields stored in same-named columns
SCALAR_FIELDS = (
    "owner_id",
    "status",
    "file_name",
    "processed_count",
    "total_emails",
    "download_url",
    "error_detail",
    "created_at",
    "completed_at",
    "last_heartbeat",
)

STATS_COLUMNS = {"valid": "stats_valid", "invalid": "stats_invalid", "risky": "stats_risky"}


class SQLiteJobStore(JobStore):
    """Job store backed by one SQLite file. A connection is opened per operation."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row access by column name."""
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables and indexes if needed."""
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        conn = self.get_connection()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    file_name TEXT,
                    processed_count INTEGER NOT NULL DEFAULT 0,
                    total_emails INTEGER NOT NULL DEFAULT 0,
                    stats_valid INTEGER NOT NULL DEFAULT 0,
                    stats_invalid INTEGER NOT NULL DEFAULT 0,
                    stats_risky INTEGER NOT NULL DEFAULT 0,
                    download_url TEXT,
                    error_detail TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    last_heartbeat TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_owner_created
                    ON jobs(owner_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
            """
            )
            conn.commit()
        finally:
            conn.close()

    def create(self, job: dict[str, Any]) -> None:
        stats = job.get("stats") or {}
        columns = ["id", *SCALAR_FIELDS, *STATS_COLUMNS.values()]
        values = [job["id"]]
        values += [job.get(field) for field in SCALAR_FIELDS]
        values += [stats.get(key, 0) for key in STATS_COLUMNS]

        conn = self.get_connection()
        try:
            conn.execute(
                f"INSERT INTO jobs ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                values,
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise JobExistsError(job["id"]) from e
        finally:
            conn.close()

    def update(
        self,
        job_id: str,
        fields: dict[str, Any],
        require_status: str | None = None,
    ) -> bool:
        update_fields = []
        update_values: list[Any] = []

        for field in SCALAR_FIELDS:
            if field in fields:
                update_fields.append(f"{field} = ?")
                update_values.append(fields[field])

        if "stats" in fields:
            for key, column in STATS_COLUMNS.items():
                update_fields.append(f"{column} = ?")
                update_values.append(fields["stats"].get(key, 0))

        if not update_fields:
            return self.get(job_id) is not None

        sql = f"UPDATE jobs SET {', '.join(update_fields)} WHERE id = ?"
        update_values.append(job_id)
        if require_status is not None:
            sql += " AND status = ?"
            update_values.append(require_status)

        conn = self.get_connection()
        try:
            cursor = conn.execute(sql, update_values)
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def get(self, job_id: str) -> dict[str, Any] | None:
        conn = self.get_connection()
        try:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            return _row_to_job(row) if row else None
        finally:
            conn.close()

    def list_recent(self, owner_id: str, limit: int) -> list[dict[str, Any]]:
        conn = self.get_connection()
        try:
            cursor = conn.execute(
                "SELECT * FROM jobs WHERE owner_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (owner_id, limit),
            )
            return [_row_to_job(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def find_stalled(self, cutoff_iso: str) -> list[dict[str, Any]]:
        conn = self.get_connection()
        try:
            cursor = conn.execute(
                """
                SELECT * FROM jobs
                WHERE status = 'processing'
                AND (
                    (last_heartbeat IS NOT NULL AND last_heartbeat < ?)
                    OR (last_heartbeat IS NULL AND created_at < ?)
                )
                """,
                (cutoff_iso, cutoff_iso),
            )
            return [_row_to_job(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def count_processing(self) -> int:
        conn = self.get_connection()
        try:
            cursor = conn.execute("SELECT COUNT(*) FROM jobs WHERE status = 'processing'")
            return cursor.fetchone()[0]
        finally:
            conn.close()

    def clear(self) -> None:
        conn = self.get_connection()
        try:
            conn.execute("DELETE FROM jobs")
            conn.commit()
        finally:
            conn.close()


def _row_to_job(row: sqlite3.Row) -> dict[str, Any]:
    data = dict(row)
    job = {"id": data["id"]}
    for field in SCALAR_FIELDS:
        job[field] = data.get(field)
    job["stats"] = {key: data[column] for key, column in STATS_COLUMNS.items()}
    return job
