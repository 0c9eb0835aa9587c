"""Worker pool: claims pending jobs and runs them on a bounded thread pool.

This module provides:
- process_image_job: one claimed job, end to end (fetch, plan, transcode,
  upload, record)
- JobWorkerPool: the poll loop, sized claims and per-slot state tracking

Failure attribution:
- DecodeError, PlanningError, or a StorageError fetching the original fail
  the whole job
- EncodeError or a StorageError uploading one variant fail that variant
  only; siblings still run and their keys are recorded
- Any other exception is attributed the same way: to the variant being
  transcoded or uploaded, otherwise to the whole job
- ClaimConflict means another worker owns the job now; nothing further is
  written
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..errors import ClaimConflict, DecodeError, EncodeError, PlanningError, StorageError
from ..models import VariantTask
from ..planner import plan
from ..storage import ObjectStore
from ..transcoder import probe, transcode
from .backends import JobStore
from .gate import CapacityGate
from .hashing import describe_output
from .models import FileRecord, Job, JobOutcome, JobStatus

logger = logging.getLogger(__name__)


class SlotState(str, Enum):
    """What one worker slot is doing."""

    IDLE = "idle"
    CLAIMED = "claimed"
    TRANSCODING = "transcoding"
    UPLOADING = "uploading"
    FAILED = "failed"


StateCallback = Callable[[SlotState], None]


def default_worker_id() -> str:
    return f"worker-{os.getpid()}"


def resolve_tasks(job: Job, file: FileRecord, source: bytes) -> List[VariantTask]:
    """Work list for a job: embedded tasks, or planned from the source now.

    Raises:
        DecodeError: Source cannot be decoded (worker-side planning only)
        PlanningError: Variant definitions are invalid
    """
    payload = job.payload
    if payload.tasks:
        return list(payload.tasks)
    if payload.variant_defs is None:
        return []
    metadata = probe(source)
    return plan(
        metadata,
        payload.variant_defs,
        namespace=payload.namespace or file.namespace,
        upload_id=payload.upload_id or file.id,
    )


def process_image_job(
    job: Job,
    store: JobStore,
    objects: ObjectStore,
    on_state: Optional[StateCallback] = None,
) -> JobOutcome:
    """Worker function: processes one claimed job.

    Args:
        job: Claimed job (carries the claim_token used to record the result)
        store: Job store the job was claimed from
        objects: Object store holding originals and receiving variants
        on_state: Called with each slot state change

    Returns:
        JobOutcome describing what was written

    Never retries: a failed job stays failed until an operator resubmits it.
    """
    set_state = on_state or (lambda state: None)
    start_time = time.time()
    produced: Dict[str, str] = {}
    outputs: Dict[str, dict] = {}
    failures: Dict[str, str] = {}

    def finish(status: JobStatus, error: Optional[str] = None) -> JobOutcome:
        result = {"variants": outputs, "failures": failures}
        try:
            if status == JobStatus.COMPLETED:
                store.complete(job.id, job.claim_token, variants=produced, result=result)
            else:
                store.fail(job.id, job.claim_token, error, variants=produced, result=result)
        except ClaimConflict as e:
            logger.warning("Dropping result of %s: %s", job.id, e)
            return JobOutcome(
                job_id=job.id,
                file_id=job.file_id,
                variants=produced,
                failures=failures,
                error=str(e),
                claim_lost=True,
                duration_s=time.time() - start_time,
            )
        return JobOutcome(
            job_id=job.id,
            file_id=job.file_id,
            status=status,
            variants=produced,
            failures=failures,
            error=error,
            duration_s=time.time() - start_time,
        )

    # 1. Source and work list; any failure here is fatal for the job
    try:
        file = store.get_file(job.file_id)
        if file is None:
            raise StorageError(f"file {job.file_id} has no record")
        source = objects.get(file.storage_key)
        tasks = resolve_tasks(job, file, source)
    except (DecodeError, PlanningError, StorageError) as e:
        error = f"{type(e).__name__}: {e}"
        logger.error("Job %s failed before transcoding: %s", job.id, error)
        return finish(JobStatus.FAILED, error)
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        logger.exception("Job %s crashed before transcoding", job.id)
        return finish(JobStatus.FAILED, error)

    # 2. Variants, each attributed separately
    for task in tasks:
        set_state(SlotState.TRANSCODING)
        try:
            data = transcode(source, task)
        except DecodeError as e:
            error = f"DecodeError: {e}"
            logger.error("Job %s: source cannot be decoded: %s", job.id, e)
            return finish(JobStatus.FAILED, error)
        except EncodeError as e:
            failures[task.name] = str(e)
            logger.warning("Job %s: %s", job.id, e)
            continue
        except Exception as e:
            failures[task.name] = f"{type(e).__name__}: {e}"
            logger.exception("Job %s: transcoding %s crashed", job.id, task.name)
            continue

        set_state(SlotState.UPLOADING)
        try:
            objects.put(task.storage_key, data, task.content_type)
        except StorageError as e:
            failures[task.name] = str(e)
            logger.warning("Job %s: upload of %s failed: %s", job.id, task.name, e)
            continue
        except Exception as e:
            failures[task.name] = f"{type(e).__name__}: {e}"
            logger.exception("Job %s: upload of %s crashed", job.id, task.name)
            continue

        produced[task.name] = task.storage_key
        outputs[task.name] = describe_output(task.storage_key, data)

    # 3. Record
    if failures:
        summary = "; ".join(f"{name}: {msg}" for name, msg in sorted(failures.items()))
        error = f"{len(failures)} of {len(tasks)} variant(s) failed: {summary}"
        return finish(JobStatus.FAILED, error)

    logger.info("Job %s completed: %d variant(s)", job.id, len(produced))
    return finish(JobStatus.COMPLETED)


class JobWorkerPool:
    """ThreadPoolExecutor-based worker pool polling one job store.

    Features:
    - At most gate.capacity jobs in flight; claims are sized to free slots
    - Poll loop sleeps poll_interval_s when idle, or until a slot frees
      when saturated
    - Per-slot state (idle/claimed/transcoding/uploading/failed)
    - Context manager for graceful shutdown

    Usage:
        with JobWorkerPool(store, objects, CapacityGate(4)) as pool:
            pool.run()
    """

    def __init__(
        self,
        store: JobStore,
        objects: ObjectStore,
        gate: CapacityGate,
        poll_interval_s: float = 5.0,
        worker_id: Optional[str] = None,
        on_slot_change: Optional[Callable[[int, SlotState], None]] = None,
        on_job_done: Optional[Callable[[JobOutcome], None]] = None,
    ):
        """Initialize worker pool.

        Args:
            store: Job store to claim from
            objects: Object store for originals and variants
            gate: Capacity gate; its capacity is the number of slots
            poll_interval_s: Idle sleep between polls
            worker_id: Recorded on claimed jobs (default: worker-<pid>)
            on_slot_change: Observer called with (slot index, new state)
            on_job_done: Observer called with each job outcome
        """
        self.store = store
        self.objects = objects
        self.gate = gate
        self.poll_interval_s = poll_interval_s
        self.worker_id = worker_id or default_worker_id()
        self.on_slot_change = on_slot_change
        self.on_job_done = on_job_done

        self._executor: Optional[ThreadPoolExecutor] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._slots: List[SlotState] = [SlotState.IDLE] * gate.capacity
        self._free_slots = list(range(gate.capacity))
        self._outcomes: List[JobOutcome] = []

    def __enter__(self):
        """Create the thread pool on context entry."""
        self._executor = ThreadPoolExecutor(
            max_workers=self.gate.capacity, thread_name_prefix="pixelqueue-slot"
        )
        return self

    def __exit__(self, *args):
        """Stop polling and wait for in-flight jobs."""
        self.stop()
        self.shutdown(wait=True)

    def shutdown(self, wait: bool = True):
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def stop(self):
        """Ask run() to return after the current poll."""
        self._stop.set()
        self.gate.notify()

    def slot_states(self) -> List[str]:
        with self._lock:
            return [state.value for state in self._slots]

    @property
    def outcomes(self) -> List[JobOutcome]:
        with self._lock:
            return list(self._outcomes)

    def _set_slot(self, slot: int, state: SlotState) -> None:
        with self._lock:
            self._slots[slot] = state
        self._notify_slot(slot, state)

    def _notify_slot(self, slot: int, state: SlotState) -> None:
        if not self.on_slot_change:
            return
        try:
            self.on_slot_change(slot, state)
        except Exception:
            logger.exception("Slot observer failed for slot %d (%s)", slot, state.value)

    def _take_slot(self) -> int:
        with self._lock:
            return self._free_slots.pop(0)

    def _return_slot(self, slot: int) -> None:
        with self._lock:
            self._free_slots.append(slot)
            self._free_slots.sort()

    def poll_once(self) -> int:
        """Claim as many jobs as there are free slots and dispatch them.

        Returns:
            Number of jobs dispatched
        """
        if not self._executor:
            raise RuntimeError("Worker pool not initialized (use with statement)")

        granted = self.gate.try_acquire(self.gate.capacity)
        if not granted:
            return 0

        try:
            jobs = self.store.claim_batch(granted, worker_id=self.worker_id)
        except BaseException:
            self.gate.release(granted)
            raise

        if len(jobs) < granted:
            self.gate.release(granted - len(jobs))

        for job in jobs:
            slot = self._take_slot()
            self._set_slot(slot, SlotState.CLAIMED)
            self._executor.submit(self._run_job, job, slot)

        if jobs:
            logger.debug("Dispatched %d job(s); %d slot(s) free", len(jobs), self.gate.available)
        return len(jobs)

    def _run_job(self, job: Job, slot: int) -> Optional[JobOutcome]:
        outcome = None
        try:
            outcome = process_image_job(
                job, self.store, self.objects, on_state=lambda s: self._set_slot(slot, s)
            )
            if outcome.status != JobStatus.COMPLETED.value:
                self._set_slot(slot, SlotState.FAILED)
            with self._lock:
                self._outcomes.append(outcome)
            if self.on_job_done:
                self.on_job_done(outcome)
        except Exception:
            # Result could not be recorded; the recovery sweep returns the job to the queue
            logger.exception("Job %s crashed in slot %d", job.id, slot)
            self._set_slot(slot, SlotState.FAILED)
        finally:
            self._set_slot(slot, SlotState.IDLE)
            self._return_slot(slot)
            self.gate.release(1)
        return outcome

    def _drained(self) -> bool:
        if self.gate.in_use:
            return False
        return self.store.count_by_status().get(JobStatus.PENDING.value, 0) == 0

    def run(self, until_idle: bool = False) -> List[JobOutcome]:
        """Poll until stop() is called.

        Args:
            until_idle: Return once nothing is pending and no job is in
                flight (used to drain the queue)

        Returns:
            Outcomes of the jobs this pool finished
        """
        if not self._executor:
            raise RuntimeError("Worker pool not initialized (use with statement)")

        logger.info(
            "Worker %s polling with %d slot(s), interval %.1fs",
            self.worker_id, self.gate.capacity, self.poll_interval_s,
        )
        while not self._stop.is_set():
            try:
                dispatched = self.poll_once()
            except Exception:
                logger.exception("Claim failed; retrying after poll interval")
                dispatched = 0

            if until_idle and dispatched == 0 and self._drained():
                break

            if self.gate.available == 0:
                self.gate.wait_for_capacity(timeout=self.poll_interval_s)
            elif dispatched == 0:
                if until_idle:
                    self.gate.wait_for_change(timeout=self.poll_interval_s)
                else:
                    self._stop.wait(self.poll_interval_s)

        return self.outcomes
