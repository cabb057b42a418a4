"""
Standardised error handling for DubFlow.
"""

from dubflow.core.constants import ErrorCode, RETRYABLE_ERRORS, MAX_ERROR_MESSAGE_LEN


class PipelineError(Exception):
    """Raised when a stage or segment encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class SegmentIntegrityError(PipelineError):
    """Segmentation lost or altered text. Never retried."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.SEGMENT_INTEGRITY, message, retryable=False)


class TaskCanceled(Exception):
    """Raised inside a run when its cancel token fires."""

    def __init__(self, task_id: str | None = None):
        self.task_id = task_id
        super().__init__(f"Task {task_id} canceled" if task_id else "Task canceled")


class QueueError(Exception):
    """Raised for invalid queue operations (duplicates, unknown entries)."""


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS


def truncate_message(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:MAX_ERROR_MESSAGE_LEN]
