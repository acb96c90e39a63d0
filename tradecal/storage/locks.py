"""Per-segment advisory locks for learning runs."""

from contextlib import contextmanager
from typing import Dict, Iterator
import logging
import threading

from tradecal.exceptions import SegmentLockTimeout

logger = logging.getLogger(__name__)


class SegmentLockRegistry:
    """One lock per segment key.

    Runs for different segments proceed in parallel; two runs for the same
    segment are serialised so the baseline read stays stable until commit.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, segment: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(segment)
            if lock is None:
                lock = threading.Lock()
                self._locks[segment] = lock
            return lock

    @contextmanager
    def hold(self, segment: str, timeout: float = 30.0) -> Iterator[None]:
        lock = self._lock_for(segment)
        if not lock.acquire(timeout=timeout):
            logger.warning(f"Timed out waiting for segment lock {segment}")
            raise SegmentLockTimeout(segment, timeout)
        try:
            yield
        finally:
            lock.release()
