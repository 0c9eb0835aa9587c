"""SQLAlchemy implementation of JobStore for a shared PostgreSQL database.

Claims use ``SELECT ... FOR UPDATE SKIP LOCKED``: rows another transaction
is claiming are skipped rather than waited on, so many worker processes on
many hosts can poll the same table without blocking each other.

The same code runs against SQLite (used by the test suite); there the lock
clause is dropped by the dialect and the status re-check in the UPDATE is
what keeps claims exclusive.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import create_engine, func, insert, select, update
from sqlalchemy.engine import Connection, Engine

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
from .db_models import Base, FileRow, JobRow, JobTransitionRow
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

files = FileRow.__table__
jobs = JobRow.__table__
job_transitions = JobTransitionRow.__table__


def build_engine(url: str, pool_size: int = 5) -> Engine:
    """Engine for the job store.

    Args:
        url: SQLAlchemy database URL
        pool_size: Connections kept open; give the worker pool one per
            concurrent job plus one for the poll loop
    """
    if url.startswith("sqlite"):
        return create_engine(url)
    return create_engine(url, pool_size=pool_size, max_overflow=2, pool_pre_ping=True)


def claim_query(max_n: int):
    """Oldest pending job ids, skipping rows locked by other claimers."""
    return (
        select(jobs.c.id)
        .where(jobs.c.status == JobStatus.PENDING.value)
        .order_by(jobs.c.created_at.asc(), jobs.c.id.asc())
        .limit(max_n)
        .with_for_update(skip_locked=True)
    )


class SQLJobStore(JobStore):
    """Job store over any SQLAlchemy engine, built for PostgreSQL."""

    def __init__(
        self,
        url_or_engine: Union[str, Engine],
        pool_size: int = 5,
        clock: Callable[[], datetime] = utcnow,
        create_schema: bool = True,
    ):
        if isinstance(url_or_engine, Engine):
            self.engine = url_or_engine
        else:
            self.engine = build_engine(url_or_engine, pool_size=pool_size)
        self.clock = clock
        if create_schema:
            Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def _now(self) -> str:
        return format_ts(self.clock())

    def _log_transition(
        self,
        conn: Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        now: str,
        worker_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> None:
        conn.execute(
            insert(job_transitions).values(
                job_id=job_id,
                from_state=from_state,
                to_state=to_state,
                timestamp=now,
                worker_id=worker_id,
                note=note[:200] if note else None,
            )
        )

    def _active_job(self, conn: Connection, file_id: str, variant_set: str):
        return conn.execute(
            select(jobs)
            .where(
                jobs.c.file_id == file_id,
                jobs.c.variant_set == variant_set,
                jobs.c.status.in_(ACTIVE_JOB_STATUSES),
            )
            .order_by(jobs.c.created_at.asc())
            .limit(1)
        ).mappings().first()

    # --- Files ---

    def create_file(self, record: FileRecord) -> FileRecord:
        with self.engine.begin() as conn:
            conn.execute(insert(files).values(**file_to_row(record)))
        logger.debug("Created file %s (%s)", record.id, record.storage_key)
        return record

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(select(files).where(files.c.id == file_id)).mappings().first()
        return row_to_file(row) if row else None

    # --- Jobs ---

    def enqueue(self, file_id: str, payload: Union[JobPayload, Dict[str, Any]]) -> Job:
        payload = coerce_payload(payload)
        variant_set = payload.variant_set()
        now = self._now()

        with self.engine.begin() as conn:
            # Serialize enqueues per file so the active-job check cannot race
            file_row = conn.execute(
                select(files.c.id).where(files.c.id == file_id).with_for_update()
            ).first()
            if file_row is None:
                raise ValueError(f"Unknown file: {file_id}")

            existing = self._active_job(conn, file_id, variant_set)
            if existing:
                logger.debug(
                    "File %s already has active job %s for [%s]",
                    file_id, existing["id"], variant_set,
                )
                return row_to_job(existing)

            job_id = str(uuid.uuid4())
            row = conn.execute(
                insert(jobs)
                .values(
                    id=job_id,
                    file_id=file_id,
                    status=JobStatus.PENDING.value,
                    payload=payload.model_dump_json(),
                    variant_set=variant_set,
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
                .returning(*jobs.c)
            ).mappings().one()
            self._log_transition(conn, job_id, None, JobStatus.PENDING.value, now, note="enqueued")

        logger.info("Enqueued job %s for file %s [%s]", job_id, file_id, variant_set)
        return row_to_job(row)

    def claim_batch(self, max_n: int, worker_id: Optional[str] = None) -> List[Job]:
        if max_n <= 0:
            return []

        now = self._now()
        claim_token = uuid.uuid4().hex

        with self.engine.begin() as conn:
            ids = conn.execute(claim_query(max_n)).scalars().all()
            if not ids:
                return []

            rows = conn.execute(
                update(jobs)
                .where(jobs.c.id.in_(ids), jobs.c.status == JobStatus.PENDING.value)
                .values(
                    status=JobStatus.PROCESSING.value,
                    claimed_at=now,
                    updated_at=now,
                    attempts=jobs.c.attempts + 1,
                    claim_token=claim_token,
                    worker_id=worker_id,
                )
                .returning(*jobs.c)
            ).mappings().all()

            for row in rows:
                self._log_transition(
                    conn, row["id"], JobStatus.PENDING.value, JobStatus.PROCESSING.value,
                    now, worker_id=worker_id,
                )

        claimed = sorted((row_to_job(row) for row in rows), key=lambda j: (j.created_at, j.id))
        if claimed:
            logger.debug("Claimed %d job(s) for %s", len(claimed), worker_id or "anonymous worker")
        return claimed

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
        produced = dict(variants or {})
        error = truncate_error(reason)
        now = self._now()

        with self.engine.begin() as conn:
            job_row = conn.execute(
                select(jobs).where(jobs.c.id == job_id).with_for_update()
            ).mappings().first()
            if job_row is None:
                raise ClaimConflict(job_id, "job does not exist")
            if job_row["status"] != JobStatus.PROCESSING.value:
                raise ClaimConflict(job_id, f"job is {job_row['status']}, not processing")
            if job_row["claim_token"] != claim_token:
                raise ClaimConflict(job_id, "claim was reset and taken over")

            updated = conn.execute(
                update(jobs)
                .where(jobs.c.id == job_id, jobs.c.claim_token == claim_token)
                .values(
                    status=status.value,
                    updated_at=now,
                    completed_at=now,
                    error=error,
                    result=json.dumps(result or {}),
                )
                .returning(*jobs.c)
            ).mappings().first()
            if updated is None:
                raise ClaimConflict(job_id, "claim was reset and taken over")

            payload = JobPayload(**json.loads(job_row["payload"]))
            file_row = conn.execute(
                select(files.c.variants, files.c.planned_variants)
                .where(files.c.id == job_row["file_id"])
                .with_for_update()
            ).mappings().first()
            if file_row is not None:
                merged, planned, file_status = merge_file_variants(
                    file_row, payload.planned_keys(), produced, status == JobStatus.FAILED
                )
                conn.execute(
                    update(files)
                    .where(files.c.id == job_row["file_id"])
                    .values(
                        variants=json.dumps(merged),
                        planned_variants=json.dumps(planned),
                        status=file_status,
                        updated_at=now,
                    )
                )
            else:
                logger.warning("Job %s finished but file %s is gone", job_id, job_row["file_id"])

            self._log_transition(
                conn, job_id, JobStatus.PROCESSING.value, status.value, now,
                worker_id=job_row["worker_id"], note=error,
            )

        return row_to_job(updated)

    def reset_stale(self, older_than: Union[timedelta, float]) -> int:
        now_dt = self.clock()
        cutoff = format_ts(now_dt - to_timedelta(older_than))
        now = format_ts(now_dt)

        with self.engine.begin() as conn:
            reset_ids = conn.execute(
                update(jobs)
                .where(
                    jobs.c.status == JobStatus.PROCESSING.value,
                    jobs.c.claimed_at < cutoff,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    claim_token=None,
                    worker_id=None,
                    updated_at=now,
                )
                .returning(jobs.c.id)
            ).scalars().all()

            for job_id in reset_ids:
                self._log_transition(
                    conn, job_id, JobStatus.PROCESSING.value, JobStatus.PENDING.value, now,
                    note="reset stale claim (crash recovery)",
                )

        if reset_ids:
            logger.warning("Reset %d stale job(s) claimed before %s", len(reset_ids), cutoff)
        return len(reset_ids)

    def resubmit_failed(self, job_id: Optional[str] = None) -> List[Job]:
        now = self._now()
        created = []

        with self.engine.begin() as conn:
            query = select(jobs).where(jobs.c.status == JobStatus.FAILED.value)
            if job_id is not None:
                query = query.where(jobs.c.id == job_id)
            failed_rows = conn.execute(query.order_by(jobs.c.created_at.asc())).mappings().all()

            for row in failed_rows:
                if self._active_job(conn, row["file_id"], row["variant_set"]):
                    continue
                new_id = str(uuid.uuid4())
                new_row = conn.execute(
                    insert(jobs)
                    .values(
                        id=new_id,
                        file_id=row["file_id"],
                        status=JobStatus.PENDING.value,
                        payload=row["payload"],
                        variant_set=row["variant_set"],
                        attempts=0,
                        created_at=now,
                        updated_at=now,
                    )
                    .returning(*jobs.c)
                ).mappings().one()
                created.append(row_to_job(new_row))
                self._log_transition(
                    conn, new_id, None, JobStatus.PENDING.value, now,
                    note=f"resubmitted from {row['id']}",
                )

        if created:
            logger.info("Resubmitted %d failed job(s)", len(created))
        return created

    # --- Queries ---

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.engine.connect() as conn:
            row = conn.execute(select(jobs).where(jobs.c.id == job_id)).mappings().first()
        return row_to_job(row) if row else None

    def list_jobs(
        self, status: Optional[str] = None, file_id: Optional[str] = None
    ) -> List[Job]:
        query = select(jobs)
        if status is not None:
            query = query.where(jobs.c.status == JobStatus(status).value)
        if file_id is not None:
            query = query.where(jobs.c.file_id == file_id)
        query = query.order_by(jobs.c.created_at.asc(), jobs.c.id.asc())
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [row_to_job(row) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        with self.engine.connect() as conn:
            for status, count in conn.execute(
                select(jobs.c.status, func.count()).group_by(jobs.c.status)
            ):
                counts[status] = count
        return counts

    def transitions(self, job_id: str) -> List[StateTransition]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(job_transitions)
                .where(job_transitions.c.job_id == job_id)
                .order_by(job_transitions.c.id.asc())
            ).mappings().all()
        return [row_to_transition(row) for row in rows]
