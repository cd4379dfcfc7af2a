"""
SQLite database for persistent report storage.

This module provides the record store consumed by the processing pipeline:
``create``, ``find_by_id`` and ``save`` (full-record upsert). Writes are
last-writer-wins; there is no optimistic versioning.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import ReportRecord, ReportStatus


# Default database path
DEFAULT_DB_PATH = Path("data/medreport.db")


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


@contextmanager
def connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a connection with WAL enabled; commit on success, roll back on error."""
    conn = sqlite3.connect(str(db_path), timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    except Exception:  # noqa: BLE001
        conn.rollback()
        raise
    finally:
        conn.close()


class ReportDatabase:
    """
    SQLite database for report persistence.

    Thread-safe: every operation opens its own connection and SQLite handles
    concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reports (
                    id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    source_path TEXT NOT NULL,
                    status TEXT NOT NULL,
                    result TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_reports_created_at
                ON reports(created_at DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_reports_owner_status
                ON reports(owner, status)
            """)

    def create(self, record: ReportRecord) -> None:
        """
        Insert a new report record.

        Raises:
            sqlite3.IntegrityError: If a record with the same id already exists
        """
        with connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO reports (
                    id, owner, filename, source_path, status,
                    result, error, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, self._record_to_row(record))

    def save(self, record: ReportRecord) -> None:
        """
        Save the full record, inserting it if it does not exist yet.

        ``updated_at`` is refreshed before writing.
        """
        record.updated_at = datetime.utcnow()
        with connect(self.db_path) as conn:
            conn.execute("""
                INSERT OR REPLACE INTO reports (
                    id, owner, filename, source_path, status,
                    result, error, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, self._record_to_row(record))

    def find_by_id(self, report_id: str) -> Optional[ReportRecord]:
        """
        Retrieve a report by ID.

        Returns:
            The report record or None if not found
        """
        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM reports WHERE id = ?", (report_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_record(row)

    def list_for_owner(self, owner: str, include_deleted: bool = False) -> List[ReportRecord]:
        """
        List an owner's reports ordered by creation time (newest first).
        """
        query = "SELECT * FROM reports WHERE owner = ?"
        params: List[Any] = [owner]
        if not include_deleted:
            query += " AND status != ?"
            params.append(ReportStatus.DELETED.value)
        query += " ORDER BY created_at DESC"

        with connect(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_record(row) for row in rows]

    def delete(self, report_id: str) -> bool:
        """
        Hard-delete a report record.

        Only used to roll back an admission that was rejected; user-facing
        deletion is a status change to DELETED.

        Returns:
            True if deleted, False if not found
        """
        with connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM reports WHERE id = ?", (report_id,))
            return cursor.rowcount > 0

    @staticmethod
    def _record_to_row(record: ReportRecord) -> tuple:
        return (
            record.id,
            record.owner,
            record.filename,
            str(record.source_path),
            record.status.value,
            json.dumps(record.result) if record.result is not None else None,
            record.error,
            serialize_datetime(record.created_at),
            serialize_datetime(record.updated_at),
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ReportRecord:
        """Convert a database row to a report record."""
        result: Optional[Dict[str, Any]] = json.loads(row["result"]) if row["result"] else None
        return ReportRecord(
            id=row["id"],
            owner=row["owner"],
            filename=row["filename"],
            source_path=Path(row["source_path"]),
            status=ReportStatus(row["status"]),
            result=result,
            error=row["error"],
            created_at=deserialize_datetime(row["created_at"]),
            updated_at=deserialize_datetime(row["updated_at"]),
        )
