"""
Cooperative cancellation token passed down a task run.
"""

import threading

from dubflow.core.error_codes import TaskCanceled


class CancelToken:
    """Set once by the engine; polled by stages, segment loops and commands."""

    def __init__(self, task_id: str | None = None):
        self.task_id = task_id
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    def is_canceled(self) -> bool:
        return self._event.is_set()

    def raise_if_canceled(self):
        if self._event.is_set():
            raise TaskCanceled(self.task_id)

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if canceled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)
