"""Abstract base class for durable job stores.

A job store owns the jobs and files tables: claiming, status transitions,
stale-claim recovery and the audit trail. Two implementations exist:
- SQLiteJobStore: local-first, one database file shared by every worker
  process on the host
- SQLJobStore: SQLAlchemy over PostgreSQL, for workers spread over hosts
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .models import FileRecord, Job, JobPayload, StateTransition, derive_file_status

MAX_ERROR_CHARS = 500


class JobStore(ABC):
    """Durable job queue with exactly-once claiming.

    Implementations must provide:
    - Atomic claim of up to N oldest pending jobs that never hands the same
      job to two callers, even when they race
    - Ownership checks on complete/fail, so a worker that lost its claim to
      a stale reset cannot overwrite newer state
    - Idempotent enqueue for an active File+variant-set
    - Crash recovery via reset_stale()
    """

    @abstractmethod
    def enqueue(self, file_id: str, payload: Union[JobPayload, Dict[str, Any]]) -> Job:
        """Insert a pending job for a file.

        Args:
            file_id: File to process (must exist)
            payload: Work description resolved at enqueue time

        Returns:
            The new job, or the already active (pending/processing) job for
            the same file and variant set

        Implementation notes:
        - Durable write only, no processing happens here
        - Must not create a second active job for the same file+variant set
        """
        pass

    @abstractmethod
    def claim_batch(self, max_n: int, worker_id: Optional[str] = None) -> List[Job]:
        """Atomically claim up to max_n pending jobs.

        Args:
            max_n: Maximum number of jobs to claim (<= 0 is a no-op)
            worker_id: Identifier recorded on the claimed rows

        Returns:
            Claimed jobs, oldest first, each carrying a fresh claim_token

        Implementation notes:
        - MUST NOT block on rows another caller is claiming; a caller that
          loses a race gets fewer rows, never a duplicate
        - Sets status='processing', claimed_at=now, attempts += 1
        """
        pass

    @abstractmethod
    def complete(
        self,
        job_id: str,
        claim_token: str,
        variants: Optional[Dict[str, str]] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Mark a claimed job completed and merge its variants into the file.

        Raises:
            ClaimConflict: If the job is not processing under claim_token
        """
        pass

    @abstractmethod
    def fail(
        self,
        job_id: str,
        claim_token: str,
        reason: str,
        variants: Optional[Dict[str, str]] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Mark a claimed job failed, keeping any variants already written.

        Raises:
            ClaimConflict: If the job is not processing under claim_token
        """
        pass

    @abstractmethod
    def reset_stale(self, older_than: Union[timedelta, float]) -> int:
        """Crash recovery: return abandoned claims to the queue.

        Args:
            older_than: Age of claimed_at (timedelta or seconds) past which a
                processing job is presumed abandoned

        Returns:
            Count of reset jobs

        Implementation notes:
        - Only processing → pending; terminal jobs are never touched
        - Clears the claim token so the old owner gets ClaimConflict
        - attempts is not incremented here (the next claim does that)
        """
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    def list_jobs(
        self, status: Optional[str] = None, file_id: Optional[str] = None
    ) -> List[Job]:
        pass

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        pass

    @abstractmethod
    def resubmit_failed(self, job_id: Optional[str] = None) -> List[Job]:
        """Operator-triggered resubmission of failed jobs.

        Creates a new pending job with the same payload for each failed job
        (or only job_id). The failed rows stay failed. Files that already
        have an active job for the same variant set are skipped.
        """
        pass

    @abstractmethod
    def create_file(self, record: FileRecord) -> FileRecord:
        pass

    @abstractmethod
    def get_file(self, file_id: str) -> Optional[FileRecord]:
        pass

    @abstractmethod
    def transitions(self, job_id: str) -> List[StateTransition]:
        """Audit trail for a job, oldest first."""
        pass

    def close(self) -> None:
        """Release connections."""


def to_timedelta(older_than: Union[timedelta, float]) -> timedelta:
    if isinstance(older_than, timedelta):
        return older_than
    return timedelta(seconds=float(older_than))


def truncate_error(reason: Optional[str]) -> Optional[str]:
    if reason is None:
        return None
    return reason[:MAX_ERROR_CHARS]


def format_ts(value: datetime) -> str:
    """UTC timestamp text; fixed width so string order is time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(value)


def _loads(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def row_to_job(row: Mapping[str, Any]) -> Job:
    """Convert a jobs row (column → value) to a Job model."""
    return Job(
        id=row["id"],
        file_id=row["file_id"],
        status=row["status"],
        payload=JobPayload(**_loads(row["payload"], {})),
        variant_set=row["variant_set"] or "",
        attempts=row["attempts"] or 0,
        claim_token=row["claim_token"],
        worker_id=row["worker_id"],
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
        claimed_at=parse_ts(row["claimed_at"]),
        completed_at=parse_ts(row["completed_at"]),
        error=row["error"],
        result=_loads(row["result"], {}),
    )


def row_to_file(row: Mapping[str, Any]) -> FileRecord:
    return FileRecord(
        id=row["id"],
        project_id=row["project_id"],
        namespace=row["namespace"],
        storage_key=row["storage_key"],
        filename=row["filename"],
        mime_type=row["mime_type"],
        size=row["size"],
        width=row["width"],
        height=row["height"],
        status=row["status"],
        variants=_loads(row["variants"], {}),
        planned_variants=_loads(row["planned_variants"], {}),
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
    )


def file_to_row(record: FileRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "project_id": record.project_id,
        "namespace": record.namespace,
        "storage_key": record.storage_key,
        "filename": record.filename,
        "mime_type": record.mime_type,
        "size": record.size,
        "width": record.width,
        "height": record.height,
        "status": record.status,
        "variants": json.dumps(record.variants),
        "planned_variants": json.dumps(record.planned_variants),
        "created_at": format_ts(record.created_at),
        "updated_at": format_ts(record.updated_at),
    }


def row_to_transition(row: Mapping[str, Any]) -> StateTransition:
    return StateTransition(
        id=row["id"],
        job_id=row["job_id"],
        from_state=row["from_state"],
        to_state=row["to_state"],
        timestamp=parse_ts(row["timestamp"]),
        worker_id=row["worker_id"],
        note=row["note"],
    )


def merge_file_variants(
    file_row: Mapping[str, Any],
    job_planned: Dict[str, str],
    produced: Dict[str, str],
    job_failed: bool,
) -> Tuple[Dict[str, str], Dict[str, str], str]:
    """Fold a finished job into its file.

    Returns:
        (variants, planned_variants, status) to write back. Variants from
        earlier jobs are kept. A planned key is only replaced by the key a
        variant was actually written to.
    """
    variants = dict(_loads(file_row["variants"], {}))
    variants.update(produced)

    planned = dict(_loads(file_row["planned_variants"], {}))
    for name, key in job_planned.items():
        if not planned.get(name):
            planned[name] = key or produced.get(name, "")
    planned.update(produced)

    status = derive_file_status(planned, variants, job_failed)
    return variants, planned, status.value


def coerce_payload(payload: Union[JobPayload, Dict[str, Any]]) -> JobPayload:
    if isinstance(payload, JobPayload):
        return payload
    return JobPayload(**payload)
