"""Bounded-capacity gate shared by the slots of a worker pool."""

import threading
from typing import Optional


class CapacityGate:
    """Counting gate bounding how many jobs run at once.

    Unlike a semaphore, a caller can ask for "up to n" permits without
    blocking and learn how many it got, which is what sizing a claim batch
    to the free slots needs.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._in_use = 0
        self._cond = threading.Condition()

    @property
    def available(self) -> int:
        with self._cond:
            return self.capacity - self._in_use

    @property
    def in_use(self) -> int:
        with self._cond:
            return self._in_use

    def try_acquire(self, n: int = 1) -> int:
        """Take up to n permits without blocking. Returns how many were taken."""
        if n <= 0:
            return 0
        with self._cond:
            granted = min(n, self.capacity - self._in_use)
            self._in_use += granted
            return granted

    def release(self, n: int = 1) -> None:
        """Return n permits and wake waiters."""
        if n <= 0:
            return
        with self._cond:
            if n > self._in_use:
                raise ValueError(f"releasing {n} permits but only {self._in_use} in use")
            self._in_use -= n
            self._cond.notify_all()

    def wait_for_capacity(self, timeout: Optional[float] = None) -> bool:
        """Block until at least one permit is free or timeout expires."""
        with self._cond:
            return self._cond.wait_for(lambda: self._in_use < self.capacity, timeout=timeout)

    def wait_for_change(self, timeout: Optional[float] = None) -> None:
        """Sleep until a permit is released or timeout expires."""
        with self._cond:
            self._cond.wait(timeout=timeout)

    def notify(self) -> None:
        """Wake anything waiting on the gate (used for shutdown)."""
        with self._cond:
            self._cond.notify_all()
