"""SQLite implementation of JobStore.

This module provides the crash-safe job store using:
- sqlite-utils for table access
- WAL mode for better concurrent performance
- One shared connection serialized by a lock (workers and request handlers
  write from different threads)
- A state transition table as an audit trail

Each job row keeps the fields the store queries on (state, priority,
sequence, timestamps) as columns and the full job model as a JSON document,
so the model can grow without schema changes.
"""

import functools
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from sqlite_utils import Database

from ..errors import StoreUnavailable
from .backends import JobStore
from .models import Job, JobState

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    priority INTEGER NOT NULL,
    sequence INTEGER NOT NULL,
    attempts INTEGER DEFAULT 0,
    progress INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_state ON jobs(state);
CREATE INDEX IF NOT EXISTS idx_jobs_priority_seq ON jobs(priority ASC, sequence ASC);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at);

CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    reason TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""


def _translate_errors(fn):
    """Surface SQLite failures as StoreUnavailable."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Job store error: {e}") from e

    return wrapper


class SQLiteJobStore(JobStore):
    """SQLite-based job store with ACID guarantees.

    Features:
    - WAL mode for concurrent reads during writes
    - Indexed lookups by state and priority
    - Atomic upserts
    - Transition audit log
    """

    def __init__(self, db_path: str):
        """Open (and create if needed) the job database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10)
        self.db = Database(conn)

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        with self._lock:
            self.db.executescript(SCHEMA_SQL)

    @staticmethod
    def _row_to_job(row) -> Job:
        return Job.model_validate_json(row["data"])

    @_translate_errors
    def save(self, job: Job) -> None:
        row = {
            "job_id": job.job_id,
            "state": job.state.value,
            "priority": job.priority,
            "sequence": job.sequence,
            "attempts": job.attempts,
            "progress": job.progress,
            "created_at": job.created_at.isoformat(),
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "data": job.model_dump_json(),
        }
        with self._lock:
            self.db["jobs"].insert(row, pk="job_id", replace=True)

    @_translate_errors
    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            rows = list(self.db["jobs"].rows_where("job_id = ?", [job_id]))
        return self._row_to_job(rows[0]) if rows else None

    @_translate_errors
    def load_all(self) -> List[Job]:
        with self._lock:
            rows = list(self.db["jobs"].rows_where(order_by="priority, sequence"))
        return [self._row_to_job(row) for row in rows]

    @_translate_errors
    def list_jobs(self, state: Optional[JobState] = None, limit: int = 10) -> List[Job]:
        with self._lock:
            if state is not None:
                rows = self.db["jobs"].rows_where(
                    "state = ?",
                    [state.value],
                    order_by="created_at DESC, sequence DESC",
                    limit=limit,
                )
            else:
                rows = self.db["jobs"].rows_where(
                    order_by="created_at DESC, sequence DESC", limit=limit
                )
            rows = list(rows)
        return [self._row_to_job(row) for row in rows]

    @_translate_errors
    def delete(self, job_ids: Iterable[str]) -> int:
        ids = list(job_ids)
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            with self.db.conn:
                cursor = self.db.execute(
                    f"DELETE FROM jobs WHERE job_id IN ({placeholders})", ids
                )
                self.db.execute(
                    f"DELETE FROM state_transitions WHERE job_id IN ({placeholders})", ids
                )
        return cursor.rowcount

    @_translate_errors
    def record_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        with self._lock:
            self.db["state_transitions"].insert({
                "job_id": job_id,
                "from_state": from_state,
                "to_state": to_state,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "worker_id": worker_id,
                "reason": reason[:200] if reason else None,
            })

    @_translate_errors
    def transitions(self, job_id: str) -> List[dict]:
        with self._lock:
            return list(
                self.db["state_transitions"].rows_where(
                    "job_id = ?", [job_id], order_by="id"
                )
            )

    def ping(self) -> bool:
        try:
            with self._lock:
                self.db.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def close(self) -> None:
        with self._lock:
            self.db.conn.close()
