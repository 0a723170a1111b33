"""Per-account mutual exclusion."""

import threading

__all__ = ["AccountLocks"]


class AccountLocks:
    """Lazily created lock per account label.

    Sync runs and token refreshes for one account take the same lock;
    different accounts never contend.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, label: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(label)
            if lock is None:
                lock = self._locks[label] = threading.Lock()
            return lock
