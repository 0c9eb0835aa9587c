"""Durable job queue, worker pool and crash recovery for image variants."""

from .backends import JobStore
from .gate import CapacityGate
from .hashing import compute_bytes_hash, describe_output, verify_output
from .models import (
    ACTIVE_JOB_STATUSES,
    FileRecord,
    FileStatus,
    Job,
    JobOutcome,
    JobPayload,
    JobStatus,
    StateTransition,
    derive_file_status,
)
from .recovery import RecoverySweep
from .sql_backend import SQLJobStore
from .sqlite_backend import SQLiteJobStore
from .worker import JobWorkerPool, SlotState, process_image_job

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "JobStore",
    "SQLiteJobStore",
    "SQLJobStore",
    "CapacityGate",
    "RecoverySweep",
    "JobWorkerPool",
    "SlotState",
    "process_image_job",
    "FileRecord",
    "FileStatus",
    "Job",
    "JobOutcome",
    "JobPayload",
    "JobStatus",
    "StateTransition",
    "derive_file_status",
    "compute_bytes_hash",
    "describe_output",
    "verify_output",
]
