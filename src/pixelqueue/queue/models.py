"""Pydantic models for job queue data structures.

This module defines the type-safe models shared by the job stores, the
planner and the worker pool. All models use Pydantic for validation and
serialization; rows are converted to these models at the store boundary.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import VariantTask


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        pending → processing    (atomic claim)
        processing → completed  (all variants written)
        processing → failed     (any variant or the source failed)
        processing → pending    (recovery sweep, stale claim only)

    Terminal states never revert automatically. An operator resubmission
    creates a new pending job instead.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class FileStatus(str, Enum):
    """Lifecycle of an uploaded image."""

    UPLOADED = "uploaded"  # Original stored, no variant written yet
    READY = "ready"  # Every planned variant written
    PARTIAL = "partial"  # Some planned variants written
    ERROR = "error"  # Processing failed and nothing was written


class JobPayload(BaseModel):
    """Work description, resolved when the job is enqueued.

    Either ``tasks`` is populated (the usual case), or ``variant_defs`` is
    given together with ``namespace`` and ``upload_id`` and the worker plans
    against the decoded source.
    """

    tasks: List[VariantTask] = Field(default_factory=list)
    variant_defs: Optional[Dict[str, Any]] = Field(
        default=None, description="Raw variant settings to plan at processing time"
    )
    namespace: Optional[str] = Field(default=None, description="Project storage namespace")
    upload_id: Optional[str] = Field(default=None, description="Per-upload identifier")

    def variant_names(self) -> List[str]:
        if self.tasks:
            return sorted(t.name for t in self.tasks)
        return sorted((self.variant_defs or {}).keys())

    def planned_keys(self) -> Dict[str, str]:
        """Variant name → key; empty keys for variants planned by the worker."""
        if self.tasks:
            return {t.name: t.storage_key for t in self.tasks}
        return {name: "" for name in self.variant_names()}

    def variant_set(self) -> str:
        """Stable identity of the variant set, used to deduplicate active jobs."""
        return ",".join(self.variant_names())


class Job(BaseModel):
    """A row of the jobs table."""

    id: str = Field(..., description="Unique job identifier (UUID)")
    file_id: str = Field(..., description="File being processed")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    payload: JobPayload = Field(default_factory=JobPayload)
    variant_set: str = Field(default="", description="Sorted variant names of the payload")
    attempts: int = Field(default=0, ge=0, description="Number of claims so far")
    claim_token: Optional[str] = Field(default=None, description="Identity of the current claim")
    worker_id: Optional[str] = Field(default=None, description="Worker that holds the claim")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    claimed_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    error: Optional[str] = Field(default=None, description="Last failure reason")
    result: Dict[str, Any] = Field(default_factory=dict, description="Per-variant outcome")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True


class FileRecord(BaseModel):
    """A row of the files table."""

    id: str = Field(..., description="File identifier, also the per-upload identifier")
    project_id: str
    namespace: str = Field(..., description="Storage namespace of the owning project")
    storage_key: str = Field(..., description="Key of the original blob")
    filename: str = Field(..., description="User-supplied filename (never used in keys)")
    mime_type: str
    size: int = Field(..., ge=0)
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    status: FileStatus = Field(default=FileStatus.UPLOADED)
    variants: Dict[str, str] = Field(
        default_factory=dict, description="Variant name → key, only for written objects"
    )
    planned_variants: Dict[str, str] = Field(
        default_factory=dict, description="Variant name → key announced at upload time"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        """Pydantic configuration."""

        use_enum_values = True


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None)
    job_id: str
    from_state: Optional[str] = None
    to_state: str
    timestamp: datetime = Field(default_factory=utcnow)
    worker_id: Optional[str] = None
    note: Optional[str] = Field(default=None, description="First 200 chars of error or reason")


def derive_file_status(
    planned: Dict[str, str], variants: Dict[str, str], job_failed: bool
) -> FileStatus:
    """File status after a job has merged its variants.

    ready:    every planned variant is written
    partial:  some variants are written
    error:    nothing written and the job failed (or nothing was planned at all)
    uploaded: nothing written yet, nothing failed
    """
    missing = set(planned) - set(variants)
    if not missing and (variants or not job_failed):
        return FileStatus.READY
    if variants:
        return FileStatus.PARTIAL
    if job_failed:
        return FileStatus.ERROR
    return FileStatus.UPLOADED


class JobOutcome(BaseModel):
    """What one worker pass over a claimed job produced."""

    job_id: str
    file_id: str
    status: Optional[JobStatus] = Field(
        default=None, description="Terminal status written, None if the claim was lost"
    )
    variants: Dict[str, str] = Field(default_factory=dict, description="Written variant keys")
    failures: Dict[str, str] = Field(default_factory=dict, description="Variant → error")
    error: Optional[str] = None
    claim_lost: bool = False
    duration_s: float = 0.0

    class Config:
        """Pydantic configuration."""

        use_enum_values = True
