"""Upload-side entrypoints built on the job queue.

This module is what an HTTP layer (or the CLI) calls:
- ingest_image: store the original, create the File, plan, enqueue
- request_variant: lazy processing of one variant on first read
- process_queue: drain the queue in-process with a progress bar
- get_queue_stats / resubmit_failed / verify_job_outputs: operator tools

Usage:
    store = build_job_store(config.database, config.worker.concurrency)
    objects = build_object_store(config.storage)

    result = ingest_image(store, objects, data, "cat.png", "42", "My Shop", settings)
    # result.file.planned_variants tells the client where variants will appear

    stats = process_queue(store, objects, concurrency=4)
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.engine import make_url
from tqdm import tqdm

from .errors import PipelineError, PlanningError, StorageError
from .models import DatabaseConfig, ImageMetadata, ProjectSettings
from .planner import (
    CONTENT_TYPES,
    SOURCE_FORMATS,
    VariantDefs,
    new_upload_id,
    original_key,
    plan,
    planned_keys,
    project_namespace,
)
from .queue import (
    ACTIVE_JOB_STATUSES,
    CapacityGate,
    FileRecord,
    Job,
    JobPayload,
    JobStatus,
    JobStore,
    JobWorkerPool,
    SQLiteJobStore,
    SQLJobStore,
    verify_output,
)
from .storage import ObjectStore
from .transcoder import probe

logger = logging.getLogger(__name__)

# Pillow format name for each stored MIME type
MIME_FORMATS = {CONTENT_TYPES[fmt]: name for name, fmt in SOURCE_FORMATS.items() if name != "MPO"}


class IngestResult(BaseModel):
    """What an upload created."""

    file: FileRecord
    job: Optional[Job] = Field(default=None, description="None when nothing needs processing")


class VariantLookup(BaseModel):
    """Answer to a read of one variant."""

    variant: str
    ready: bool
    key: str = Field(..., description="Variant key when ready, otherwise the original's key")
    job: Optional[Job] = Field(default=None, description="Job producing the variant")


def build_job_store(database: DatabaseConfig, concurrency: int = 1) -> JobStore:
    """Job store selected by the database URL.

    ``sqlite:///path`` opens the local SQLite store; any other SQLAlchemy
    URL opens the shared store with one connection per slot plus one for
    the poll loop.
    """
    url = make_url(database.url)
    if url.get_backend_name() == "sqlite":
        if not url.database or url.database == ":memory:":
            raise ValueError("the SQLite job store needs a database file path")
        return SQLiteJobStore(
            url.database,
            busy_timeout_ms=database.busy_timeout_ms,
            claim_timeout_ms=database.claim_timeout_ms,
        )
    return SQLJobStore(database.url, pool_size=concurrency + 1)


def ingest_image(
    store: JobStore,
    objects: ObjectStore,
    data: bytes,
    filename: str,
    project_id: str,
    project_name: str,
    variant_defs: VariantDefs,
    upload_id: Optional[str] = None,
) -> IngestResult:
    """Accept an upload: store it, record it, and enqueue its variants.

    Nothing is transcoded here. Validation happens before anything is
    written, so a rejected upload leaves no trace.

    Args:
        store: Job store
        objects: Object store for the original
        data: Uploaded bytes
        filename: Client filename (kept for display only)
        project_id: Owning project
        project_name: Project name, used in the storage namespace
        variant_defs: Project variant settings
        upload_id: Identifier to use instead of a fresh one

    Returns:
        IngestResult with the File (including planned variant keys) and job

    Raises:
        DecodeError: The upload is not a decodable image
        PlanningError: The project's variant settings are invalid
        StorageError: The original could not be stored
    """
    metadata = probe(data)
    upload_id = upload_id or new_upload_id()
    namespace = project_namespace(project_name, project_id)
    tasks = plan(metadata, variant_defs, namespace, upload_id)

    key = original_key(namespace, upload_id, metadata.format)
    source_format = SOURCE_FORMATS.get(metadata.format.upper())
    mime_type = CONTENT_TYPES[source_format] if source_format else "application/octet-stream"

    objects.put(key, data, mime_type)
    record = FileRecord(
        id=upload_id,
        project_id=project_id,
        namespace=namespace,
        storage_key=key,
        filename=filename,
        mime_type=mime_type,
        size=len(data),
        width=metadata.width,
        height=metadata.height,
        planned_variants=planned_keys(tasks),
    )
    try:
        store.create_file(record)
    except Exception:
        objects.delete(key)
        raise

    job = None
    if tasks:
        job = store.enqueue(record.id, JobPayload(tasks=tasks))
    logger.info(
        "Ingested %s as %s (%dx%d, %d variant(s) planned)",
        filename, record.id, metadata.width, metadata.height, len(tasks),
    )
    return IngestResult(file=record, job=job)


def request_variant(
    store: JobStore, file_id: str, variant: str, variant_defs: VariantDefs
) -> VariantLookup:
    """Read path for one variant, enqueueing it on first request.

    When the variant is not written yet, a job for just that variant is
    enqueued (or the already active one is returned) and the original's key
    is handed back to serve in the meantime. The variant lands at the same
    key it would have had if planned at upload time.

    Raises:
        PipelineError: Unknown file
        PlanningError: The variant is not defined for the project
    """
    file = store.get_file(file_id)
    if file is None:
        raise PipelineError(f"Unknown file: {file_id}")

    if variant in file.variants:
        return VariantLookup(variant=variant, ready=True, key=file.variants[variant])

    for job in store.list_jobs(file_id=file.id):
        if job.status in ACTIVE_JOB_STATUSES and variant in job.payload.variant_names():
            return VariantLookup(variant=variant, ready=False, key=file.storage_key, job=job)

    settings = ProjectSettings.from_document(_settings_document(variant_defs))
    if variant not in settings.variants:
        raise PlanningError("not defined in project settings", variant=variant)
    single = {variant: settings.variants[variant]}

    source_format = MIME_FORMATS.get(file.mime_type)
    if file.width and file.height and source_format:
        metadata = ImageMetadata(width=file.width, height=file.height, format=source_format)
        payload = JobPayload(tasks=plan(metadata, single, file.namespace, file.id))
    else:
        # Size unknown: the worker plans against the decoded source
        payload = JobPayload(
            variant_defs={name: d.model_dump(mode="json") for name, d in single.items()},
            namespace=file.namespace,
            upload_id=file.id,
        )

    job = store.enqueue(file.id, payload)
    logger.info("Lazy request for %s/%s → job %s", file.id, variant, job.id)
    return VariantLookup(variant=variant, ready=False, key=file.storage_key, job=job)


def _settings_document(variant_defs: VariantDefs):
    if isinstance(variant_defs, ProjectSettings) or variant_defs is None:
        return variant_defs
    return dict(variant_defs)


def process_queue(
    store: JobStore,
    objects: ObjectStore,
    concurrency: int = 1,
    poll_interval_s: float = 0.5,
    show_progress: bool = True,
) -> Dict[str, Any]:
    """Process every pending job in-process, then return.

    Args:
        store: Job store
        objects: Object store
        concurrency: Jobs in flight at once
        poll_interval_s: Sleep between polls while waiting on other claimers
        show_progress: Show a tqdm progress bar

    Returns:
        Dictionary with processing statistics:
            - completed: Jobs that wrote every variant
            - failed: Jobs that failed (possibly with some variants written)
            - claim_lost: Jobs taken over by another worker mid-flight
            - total_duration: Sum of job durations in seconds
    """
    pending = store.count_by_status().get(JobStatus.PENDING.value, 0)
    stats = {"completed": 0, "failed": 0, "claim_lost": 0, "total_duration": 0.0}

    with tqdm(total=pending, desc="Processing images", unit="job", disable=not show_progress) as bar:

        def on_job_done(outcome):
            bar.update(1)

        gate = CapacityGate(concurrency)
        with JobWorkerPool(
            store, objects, gate, poll_interval_s=poll_interval_s, on_job_done=on_job_done
        ) as pool:
            outcomes = pool.run(until_idle=True)

    for outcome in outcomes:
        if outcome.claim_lost:
            stats["claim_lost"] += 1
        elif outcome.status == JobStatus.COMPLETED.value:
            stats["completed"] += 1
        else:
            stats["failed"] += 1
        stats["total_duration"] += outcome.duration_s

    return stats


def get_queue_stats(store: JobStore) -> Dict[str, int]:
    """Current queue statistics.

    Returns:
        Dictionary with one count per job status plus ``total``
    """
    stats = store.count_by_status()
    stats["total"] = sum(stats.values())
    return stats


def resubmit_failed(store: JobStore, job_id: Optional[str] = None) -> List[Job]:
    """Create fresh pending jobs for failed ones (operator action)."""
    jobs = store.resubmit_failed(job_id)
    if job_id is not None and not jobs:
        logger.warning("Job %s was not resubmitted (not failed, or already active)", job_id)
    return jobs


def verify_job_outputs(
    store: JobStore, objects: ObjectStore, job_id: str
) -> Tuple[bool, List[str]]:
    """Check the stored variants of a job against the digests in its result.

    Returns:
        Tuple of (all_valid, problems)
    """
    job = store.get_job(job_id)
    if job is None:
        raise PipelineError(f"Unknown job: {job_id}")

    problems = []
    for name, entry in sorted(job.result.get("variants", {}).items()):
        try:
            data = objects.get(entry["key"])
        except StorageError as e:
            problems.append(f"{name}: {e}")
            continue
        if not verify_output(data, entry):
            problems.append(f"{name}: content does not match recorded digest")
    return not problems, problems


def presigned_variants(file: FileRecord, objects: ObjectStore, ttl_s: int = 3600) -> Dict[str, str]:
    """Presigned URLs for the original and every written variant."""
    urls = {"original": objects.presign(file.storage_key, ttl_s)}
    for name, key in sorted(file.variants.items()):
        urls[name] = objects.presign(key, ttl_s)
    return urls
