"""Error taxonomy for the variant pipeline.

Pure components (planner, transcoder) raise these with enough context for the
worker pool to attribute a failure to a specific variant. The worker decides
what is fatal to a job and what only fails one variant.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class PlanningError(PipelineError):
    """Bad variant configuration. Fatal to the job, never retried."""

    def __init__(self, message: str, variant: Optional[str] = None):
        self.variant = variant
        if variant:
            message = f"variant '{variant}': {message}"
        super().__init__(message)


class DecodeError(PipelineError):
    """Corrupt or unsupported source image. Fatal to the job."""


class EncodeError(PipelineError):
    """Transcoder failure for one variant. Siblings may still succeed."""

    def __init__(
        self,
        message: str,
        variant: Optional[str] = None,
        size: Optional[tuple] = None,
    ):
        self.variant = variant
        self.size = size
        prefix = []
        if variant:
            prefix.append(f"variant '{variant}'")
        if size:
            prefix.append(f"{size[0]}x{size[1]}")
        if prefix:
            message = f"{' '.join(prefix)}: {message}"
        super().__init__(message)


class StorageError(PipelineError):
    """Object-store failure (usually transient). Surfaced as a failed job."""

    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        if key:
            message = f"{message} (key={key})"
        super().__init__(message)


class ClaimConflict(PipelineError):
    """The job is no longer owned by this claim (stale reset or already terminal)."""

    def __init__(self, job_id: str, message: str = "claim no longer held"):
        self.job_id = job_id
        super().__init__(f"job {job_id}: {message}")
