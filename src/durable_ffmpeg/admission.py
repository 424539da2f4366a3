"""Counting admission gate for encoder processes."""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .errors import Cancelled

logger = logging.getLogger(__name__)


class AdmissionGate:
    """Caps how many encoder children run at once across all requests.

    A counting semaphore rather than a lock: waiters are admitted in no
    particular order, and a waiter whose job is cancelled leaves the queue
    without ever spawning.
    """

    def __init__(self, limit: int, poll_interval_s: float = 0.1) -> None:
        if limit < 1:
            raise ValueError(f"concurrency limit must be >= 1, got {limit}")
        self.limit = limit
        self.poll_interval_s = poll_interval_s
        self._semaphore = threading.BoundedSemaphore(limit)
        self._lock = threading.Lock()
        self._active = 0
        self._peak = 0

    @contextmanager
    def admit(self, cancel_event: Optional[threading.Event] = None) -> Iterator[None]:
        """Hold one slot for the duration of the block.

        Raises:
            Cancelled: If ``cancel_event`` is set while waiting for a slot
        """
        while not self._semaphore.acquire(timeout=self.poll_interval_s):
            if cancel_event is not None and cancel_event.is_set():
                raise Cancelled("cancelled while waiting for an encoder slot")

        with self._lock:
            self._active += 1
            self._peak = max(self._peak, self._active)
            active = self._active
        logger.debug("encoder slot acquired (%d/%d)", active, self.limit)

        try:
            yield
        finally:
            with self._lock:
                self._active -= 1
            self._semaphore.release()

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    @property
    def peak(self) -> int:
        """Highest number of simultaneously admitted holders seen so far."""
        with self._lock:
            return self._peak
