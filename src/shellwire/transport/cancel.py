"""Shutdown signal shared by the tasks of one session."""

from __future__ import annotations

import threading


class CancelToken:
    """A one-way broadcast flag.

    ``cancel()`` may be called any number of times from any thread; only the
    first call changes anything.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "") -> bool:
        """Signal cancellation. Returns True only for the first call."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)
