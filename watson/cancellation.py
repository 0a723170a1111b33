"""Cooperative cancellation for background work."""

import threading
from typing import Optional

from .errors import Cancelled

__all__ = ["CancellationToken"]


class CancellationToken:
    """Shared flag checked by network loops and backoff waits.

    Wraps a ``threading.Event`` so waits wake up immediately on cancel.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("Operation cancelled")

    def wait(self, timeout: Optional[float]) -> bool:
        """Sleep up to ``timeout`` seconds. Returns True if cancelled meanwhile."""
        return self._event.wait(timeout)
