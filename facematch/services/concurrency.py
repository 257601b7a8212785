"""Single-flight locking per person and cooperative cancellation."""
import threading
from typing import Hashable, Set

from facematch.core.exceptions import AlreadyInProgressError
from facematch.core.logging import get_logger

logger = get_logger(__name__)


class PersonLockRegistry:
    """Set of keys with an in-flight operation.

    Acquisition is a single check-and-insert under a mutex, so two callers
    can never both hold the same key. Safe to share between threads and
    event loops.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._held: Set[Hashable] = set()

    def try_acquire(self, key: Hashable) -> bool:
        """Mark ``key`` busy; False if it already was."""
        with self._mutex:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def acquire(self, key: Hashable) -> None:
        """Mark ``key`` busy.

        Raises:
            AlreadyInProgressError: If an operation for ``key`` is in flight
        """
        if not self.try_acquire(key):
            logger.info("Search already in progress", person_id=str(key))
            raise AlreadyInProgressError(
                "A search is already running for this person",
                {"person_id": str(key)},
            )

    def release(self, key: Hashable) -> None:
        """Mark ``key`` idle; releasing an idle key is a no-op."""
        with self._mutex:
            self._held.discard(key)

    def is_held(self, key: Hashable) -> bool:
        with self._mutex:
            return key in self._held


class CancellationToken:
    """Flag a caller sets to ask a running search to stop.

    Checked by the search at batch boundaries and before each image; work
    already persisted is kept.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
