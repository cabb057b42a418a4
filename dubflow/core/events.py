"""
Outbound engine events.

One typed channel per event kind. Listeners receive a dataclass payload;
a failing listener is logged and never interrupts the pipeline.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

P = TypeVar("P")


@dataclass
class StatusEvent:
    task_id: str
    status: str
    stage: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class ProgressEvent:
    task_id: str
    stage: str
    percent: float
    message: str = ""


@dataclass
class SegmentProgressEvent:
    task_id: str
    stage: str
    segment_id: str
    segment_index: int
    status: str
    completed: int
    total: int


@dataclass
class SegmentFailedEvent:
    task_id: str
    stage: str
    segment_id: str
    segment_index: int
    error_code: str
    error_message: str
    retryable: bool
    attempt: int


@dataclass
class RecoverySuggestedEvent:
    task_id: str
    plan: object


@dataclass
class LogEvent:
    task_id: str
    stage: Optional[str]
    level: str
    message: str


@dataclass
class CompletedEvent:
    task_id: str
    output_path: Optional[str] = None


@dataclass
class FailedEvent:
    task_id: str
    stage: Optional[str]
    error_code: str
    error_message: str


class EventChannel(Generic[P]):
    """Subscribe/emit for a single payload type."""

    def __init__(self, kind: str):
        self.kind = kind
        self._listeners: list[Callable[[P], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[P], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def emit(self, payload: P):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                logger.error("%s listener failed: %s", self.kind, e, exc_info=True)


class EngineEvents:
    """The engine's event surface, one channel per kind."""

    def __init__(self):
        self.status: EventChannel[StatusEvent] = EventChannel("status")
        self.progress: EventChannel[ProgressEvent] = EventChannel("progress")
        self.segment_progress: EventChannel[SegmentProgressEvent] = EventChannel("segmentProgress")
        self.segment_failed: EventChannel[SegmentFailedEvent] = EventChannel("segmentFailed")
        self.recovery_suggested: EventChannel[RecoverySuggestedEvent] = EventChannel("recoverySuggested")
        self.log: EventChannel[LogEvent] = EventChannel("log")
        self.completed: EventChannel[CompletedEvent] = EventChannel("completed")
        self.failed: EventChannel[FailedEvent] = EventChannel("failed")
