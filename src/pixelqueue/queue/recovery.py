"""Recovery sweep: returns abandoned claims to the queue.

A worker that crashes mid-job leaves its rows in ``processing``. The sweep
resets any row claimed longer ago than the stale threshold so another worker
can pick it up. It runs once at worker startup and then on an interval.
"""

import logging
import threading
from datetime import timedelta
from typing import Optional

from .backends import JobStore

logger = logging.getLogger(__name__)


class RecoverySweep:
    """Periodic reset_stale() on a daemon thread.

    The stale threshold must exceed the longest legitimate job duration,
    otherwise a slow job is handed to a second worker while still running
    (the first worker then gets ClaimConflict and drops its result).
    """

    def __init__(self, store: JobStore, stale_after_s: float, interval_s: float = 300.0):
        if stale_after_s <= 0:
            raise ValueError(f"stale_after_s must be positive, got {stale_after_s}")
        self.store = store
        self.stale_after = timedelta(seconds=stale_after_s)
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        """Reset stale jobs now. Returns how many were reset."""
        count = self.store.reset_stale(self.stale_after)
        if count:
            logger.info("Recovery sweep reset %d stale job(s)", count)
        else:
            logger.debug("Recovery sweep found no stale jobs")
        return count

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.run_once()
            except Exception:
                # Keep sweeping; the next pass retries
                logger.exception("Recovery sweep failed")

    def start(self) -> None:
        """Start sweeping on the interval (no-op when interval_s <= 0)."""
        if self.interval_s <= 0 or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="pixelqueue-recovery", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __enter__(self):
        self.run_once()
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()
