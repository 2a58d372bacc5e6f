"""Mutual exclusion for sync and background processing runs."""

import logging
import threading

logger = logging.getLogger(__name__)


class SyncGate:
    """Non-blocking gate shared by every sync trigger.

    ``try_acquire`` is an atomic check-and-set: a caller that loses the race
    is rejected immediately rather than queued behind the current holder.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holder: str | None = None

    def try_acquire(self, holder: str) -> bool:
        if not self._lock.acquire(blocking=False):
            logger.debug("Gate held by %s, rejecting %s", self._holder, holder)
            return False
        self._holder = holder
        return True

    def release(self) -> None:
        self._holder = None
        self._lock.release()

    @property
    def is_held(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> str | None:
        return self._holder
