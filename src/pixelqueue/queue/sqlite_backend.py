"""SQLite implementation of JobStore.

This module provides the local-first, crash-safe job store using:
- sqlite-utils for schema management and simple reads
- WAL mode so readers never block the claiming writer
- BEGIN IMMEDIATE transactions for atomic claim and status updates
- A short lock wait on claim: a worker that loses the race for the write
  lock gets no rows this poll instead of queueing behind the winner

SQLite has no row-level locks, so "skip locked" is approximated at the
database level: at most one claim transaction runs at a time, and a claim
that cannot start promptly returns an empty batch.
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

try:
    from sqlite_utils import Database
    from sqlite_utils.db import NotFoundError
except ImportError:
    raise ImportError(
        "sqlite-utils is required for the SQLite job store. "
        "Install it with: pip install sqlite-utils"
    )

from ..errors import ClaimConflict
from .backends import (
    JobStore,
    coerce_payload,
    file_to_row,
    format_ts,
    merge_file_variants,
    row_to_file,
    row_to_job,
    row_to_transition,
    to_timedelta,
    truncate_error,
)
from .models import (
    ACTIVE_JOB_STATUSES,
    FileRecord,
    Job,
    JobPayload,
    JobStatus,
    StateTransition,
    utcnow,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
-- Uploaded originals and the variants written for them
CREATE TABLE IF NOT EXISTS files (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    namespace TEXT NOT NULL,
    storage_key TEXT UNIQUE NOT NULL,
    filename TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    size INTEGER NOT NULL,
    width INTEGER,
    height INTEGER,
    status TEXT NOT NULL,
    variants TEXT NOT NULL DEFAULT '{}',
    planned_variants TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_files_project ON files(project_id);

-- Variant jobs
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    file_id TEXT NOT NULL REFERENCES files(id) ON DELETE CASCADE,
    status TEXT NOT NULL,
    payload TEXT NOT NULL,
    variant_set TEXT NOT NULL DEFAULT '',
    attempts INTEGER NOT NULL DEFAULT 0,
    claim_token TEXT,
    worker_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    claimed_at TEXT,
    completed_at TEXT,
    error TEXT,
    result TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_file_variant_set ON jobs(file_id, variant_set);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS job_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    note TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON job_transitions(job_id, id);
"""

Clock = Callable[[], datetime]


def _fetch_dicts(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    columns = [d[0] for d in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "database is locked" in message or "database is busy" in message


class SQLiteJobStore(JobStore):
    """SQLite-backed job store shared by every worker on one host.

    Each thread gets its own connection (sqlite3 connections must not be
    used concurrently). Connections run in autocommit mode; every write
    that spans statements opens its own BEGIN IMMEDIATE transaction.

    Concurrency safety:
    - claim_batch selects and updates in one UPDATE...RETURNING statement
      under the write lock, so two callers can never claim the same row
    - complete/fail check status and claim_token inside the same
      transaction that writes the new state
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        busy_timeout_ms: int = 5000,
        claim_timeout_ms: int = 50,
        clock: Clock = utcnow,
    ):
        """Open (and create if needed) the job database.

        Args:
            db_path: Path to the SQLite database file
            busy_timeout_ms: Lock wait for status updates
            claim_timeout_ms: Lock wait for claims before returning no rows
            clock: Source of "now", injectable for tests
        """
        if str(db_path) == ":memory:":
            raise ValueError("SQLiteJobStore needs a database file shared by its connections")

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_ms = busy_timeout_ms
        self.claim_timeout_ms = claim_timeout_ms
        self.clock = clock

        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        # journal_mode is persistent, so setting it once per file is enough
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.executescript(SCHEMA_SQL)

    @property
    def db(self) -> Database:
        """sqlite-utils Database bound to this thread's connection."""
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            db = Database(conn)
            self._local.db = db
            with self._connections_lock:
                self._connections.append(conn)
        return db

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    def _now(self) -> str:
        return format_ts(self.clock())

    @contextmanager
    def _write_transaction(self, timeout_ms: Optional[int] = None) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolling back on any error.

        Args:
            timeout_ms: Lock wait for this BEGIN only (defaults to busy_timeout_ms)

        Raises:
            sqlite3.OperationalError: If the write lock is not acquired in time
        """
        conn = self.db.conn
        if timeout_ms is not None:
            conn.execute(f"PRAGMA busy_timeout = {int(timeout_ms)}")
        try:
            conn.execute("BEGIN IMMEDIATE")
        finally:
            if timeout_ms is not None:
                conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")

        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        now: str,
        worker_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO job_transitions (job_id, from_state, to_state, timestamp, worker_id, note)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, now, worker_id, note[:200] if note else None),
        )

    # --- Files ---

    def create_file(self, record: FileRecord) -> FileRecord:
        self.db["files"].insert(file_to_row(record), pk="id")
        logger.debug("Created file %s (%s)", record.id, record.storage_key)
        return record

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        try:
            return row_to_file(self.db["files"].get(file_id))
        except NotFoundError:
            return None

    # --- Jobs ---

    def enqueue(self, file_id: str, payload: Union[JobPayload, Dict[str, Any]]) -> Job:
        payload = coerce_payload(payload)
        variant_set = payload.variant_set()
        payload_json = payload.model_dump_json()
        now = self._now()

        with self._write_transaction() as conn:
            existing = _fetch_dicts(conn.execute(
                f"""
                SELECT * FROM jobs
                WHERE file_id = ? AND variant_set = ?
                  AND status IN ({", ".join("?" for _ in ACTIVE_JOB_STATUSES)})
                ORDER BY created_at ASC
                LIMIT 1
                """,
                (file_id, variant_set, *ACTIVE_JOB_STATUSES),
            ))
            if existing:
                logger.debug(
                    "File %s already has active job %s for [%s]",
                    file_id, existing[0]["id"], variant_set,
                )
                return row_to_job(existing[0])

            if conn.execute("SELECT 1 FROM files WHERE id = ?", (file_id,)).fetchone() is None:
                raise ValueError(f"Unknown file: {file_id}")

            job_id = str(uuid.uuid4())
            cursor = conn.execute(
                """
                INSERT INTO jobs (id, file_id, status, payload, variant_set, attempts,
                                  created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                RETURNING *
                """,
                (job_id, file_id, JobStatus.PENDING.value, payload_json, variant_set, now, now),
            )
            row = _fetch_dicts(cursor)[0]
            self._log_transition(conn, job_id, None, JobStatus.PENDING.value, now, note="enqueued")

        logger.info("Enqueued job %s for file %s [%s]", job_id, file_id, variant_set)
        return row_to_job(row)

    def claim_batch(self, max_n: int, worker_id: Optional[str] = None) -> List[Job]:
        """Atomically claim up to max_n oldest pending jobs.

        Atomicity: BEGIN IMMEDIATE + UPDATE...RETURNING. A caller that cannot
        take the write lock within claim_timeout_ms gets an empty list.
        """
        if max_n <= 0:
            return []

        now = self._now()
        claim_token = uuid.uuid4().hex

        try:
            with self._write_transaction(timeout_ms=self.claim_timeout_ms) as conn:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?,
                        claimed_at = ?,
                        updated_at = ?,
                        attempts = attempts + 1,
                        claim_token = ?,
                        worker_id = ?
                    WHERE id IN (
                        SELECT id FROM jobs
                        WHERE status = ?
                        ORDER BY created_at ASC, rowid ASC
                        LIMIT ?
                    )
                    RETURNING *
                    """,
                    (
                        JobStatus.PROCESSING.value,
                        now,
                        now,
                        claim_token,
                        worker_id,
                        JobStatus.PENDING.value,
                        max_n,
                    ),
                )
                rows = _fetch_dicts(cursor)
                for row in rows:
                    self._log_transition(
                        conn, row["id"], JobStatus.PENDING.value, JobStatus.PROCESSING.value,
                        now, worker_id=worker_id,
                    )
        except sqlite3.OperationalError as e:
            if _is_lock_error(e):
                logger.debug("Claim skipped: write lock held by another claimer")
                return []
            raise

        jobs = sorted((row_to_job(row) for row in rows), key=lambda j: (j.created_at, j.id))
        if jobs:
            logger.debug("Claimed %d job(s) for %s", len(jobs), worker_id or "anonymous worker")
        return jobs

    def complete(
        self,
        job_id: str,
        claim_token: str,
        variants: Optional[Dict[str, str]] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> Job:
        return self._finish(job_id, claim_token, JobStatus.COMPLETED, None, variants, result)

    def fail(
        self,
        job_id: str,
        claim_token: str,
        reason: str,
        variants: Optional[Dict[str, str]] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> Job:
        return self._finish(job_id, claim_token, JobStatus.FAILED, reason, variants, result)

    def _finish(
        self,
        job_id: str,
        claim_token: str,
        status: JobStatus,
        reason: Optional[str],
        variants: Optional[Dict[str, str]],
        result: Optional[Dict[str, Any]],
    ) -> Job:
        """Terminal transition plus file merge, in one transaction."""
        produced = dict(variants or {})
        error = truncate_error(reason)
        now = self._now()

        with self._write_transaction() as conn:
            current = _fetch_dicts(conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)))
            if not current:
                raise ClaimConflict(job_id, "job does not exist")
            job_row = current[0]
            if job_row["status"] != JobStatus.PROCESSING.value:
                raise ClaimConflict(job_id, f"job is {job_row['status']}, not processing")
            if job_row["claim_token"] != claim_token:
                raise ClaimConflict(job_id, "claim was reset and taken over")

            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?, updated_at = ?, completed_at = ?, error = ?, result = ?
                WHERE id = ? AND claim_token = ?
                RETURNING *
                """,
                (
                    status.value,
                    now,
                    now,
                    error,
                    json.dumps(result or {}),
                    job_id,
                    claim_token,
                ),
            )
            updated = _fetch_dicts(cursor)[0]

            payload = JobPayload(**json.loads(job_row["payload"]))
            file_rows = _fetch_dicts(conn.execute(
                "SELECT variants, planned_variants FROM files WHERE id = ?", (job_row["file_id"],)
            ))
            if file_rows:
                merged, planned, file_status = merge_file_variants(
                    file_rows[0], payload.planned_keys(), produced, status == JobStatus.FAILED
                )
                conn.execute(
                    """
                    UPDATE files
                    SET variants = ?, planned_variants = ?, status = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (json.dumps(merged), json.dumps(planned), file_status, now, job_row["file_id"]),
                )
            else:
                logger.warning("Job %s finished but file %s is gone", job_id, job_row["file_id"])

            self._log_transition(
                conn, job_id, JobStatus.PROCESSING.value, status.value, now,
                worker_id=job_row["worker_id"], note=error,
            )

        return row_to_job(updated)

    def reset_stale(self, older_than: Union[timedelta, float]) -> int:
        """Crash recovery: reset processing jobs claimed before now - older_than.

        Returns:
            Count of reset jobs
        """
        now_dt = self.clock()
        cutoff = format_ts(now_dt - to_timedelta(older_than))
        now = format_ts(now_dt)

        with self._write_transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = ?, claim_token = NULL, worker_id = NULL, updated_at = ?
                WHERE status = ? AND claimed_at < ?
                RETURNING id, worker_id
                """,
                (JobStatus.PENDING.value, now, JobStatus.PROCESSING.value, cutoff),
            )
            rows = cursor.fetchall()
            for job_id, _ in rows:
                self._log_transition(
                    conn, job_id, JobStatus.PROCESSING.value, JobStatus.PENDING.value, now,
                    note="reset stale claim (crash recovery)",
                )

        if rows:
            logger.warning("Reset %d stale job(s) claimed before %s", len(rows), cutoff)
        return len(rows)

    def resubmit_failed(self, job_id: Optional[str] = None) -> List[Job]:
        now = self._now()
        created = []

        with self._write_transaction() as conn:
            query = "SELECT * FROM jobs WHERE status = ?"
            params: List[Any] = [JobStatus.FAILED.value]
            if job_id is not None:
                query += " AND id = ?"
                params.append(job_id)
            failed_rows = _fetch_dicts(conn.execute(query + " ORDER BY created_at ASC", params))

            for row in failed_rows:
                active = conn.execute(
                    f"""
                    SELECT 1 FROM jobs
                    WHERE file_id = ? AND variant_set = ?
                      AND status IN ({", ".join("?" for _ in ACTIVE_JOB_STATUSES)})
                    """,
                    (row["file_id"], row["variant_set"], *ACTIVE_JOB_STATUSES),
                ).fetchone()
                if active:
                    continue

                new_id = str(uuid.uuid4())
                cursor = conn.execute(
                    """
                    INSERT INTO jobs (id, file_id, status, payload, variant_set, attempts,
                                      created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                    RETURNING *
                    """,
                    (
                        new_id,
                        row["file_id"],
                        JobStatus.PENDING.value,
                        row["payload"],
                        row["variant_set"],
                        now,
                        now,
                    ),
                )
                created.append(row_to_job(_fetch_dicts(cursor)[0]))
                self._log_transition(
                    conn, new_id, None, JobStatus.PENDING.value, now,
                    note=f"resubmitted from {row['id']}",
                )

        if created:
            logger.info("Resubmitted %d failed job(s)", len(created))
        return created

    # --- Queries ---

    def get_job(self, job_id: str) -> Optional[Job]:
        rows = list(self.db["jobs"].rows_where("id = ?", [job_id]))
        if not rows:
            return None
        return row_to_job(rows[0])

    def list_jobs(
        self, status: Optional[str] = None, file_id: Optional[str] = None
    ) -> List[Job]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        if file_id is not None:
            clauses.append("file_id = ?")
            params.append(file_id)
        where = " AND ".join(clauses) or None
        rows = self.db["jobs"].rows_where(where, params, order_by="created_at, rowid")
        return [row_to_job(row) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for status, count in self.db.execute(
            "SELECT status, COUNT(*) FROM jobs GROUP BY status"
        ).fetchall():
            counts[status] = count
        return counts

    def transitions(self, job_id: str) -> List[StateTransition]:
        rows = self.db["job_transitions"].rows_where("job_id = ?", [job_id], order_by="id")
        return [row_to_transition(row) for row in rows]
