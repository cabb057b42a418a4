"""
Queue scheduler and worker.
Feeds waiting queue entries into the engine one at a time.
"""

import logging
import threading
from typing import Callable, Optional

from dubflow.core.constants import (
    TaskStatus, QueueStatus, ErrorCode,
    DEFAULT_FAILURE_PAUSE_THRESHOLD, DEFAULT_STALE_TIMEOUT_MS, QUEUE_POLL_INTERVAL_SEC,
)
from dubflow.core.db_sqlite import Database
from dubflow.core.events import StatusEvent
from dubflow.core.models_sqlite import QueueEntry, QueueSnapshot
from dubflow.core.task_engine import StartResult, TaskEngine
from dubflow.core.task_queue import TaskQueue

logger = logging.getLogger(__name__)

_WORKER_SLOT = 0


class QueueScheduler:
    """
    Dispatches the highest-priority waiting task whenever the engine is idle.
    Pauses itself after a run of consecutive failures.
    """

    def __init__(self, db: Database, engine: TaskEngine, queue: TaskQueue | None = None,
                 failure_threshold: int = DEFAULT_FAILURE_PAUSE_THRESHOLD,
                 stale_timeout_ms: int = DEFAULT_STALE_TIMEOUT_MS):
        self.db = db
        self.engine = engine
        self.queue = queue or TaskQueue(db)
        self.failure_threshold = max(1, failure_threshold)
        self.stale_timeout_ms = stale_timeout_ms

        self._worker_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._lock = threading.RLock()
        self._running = False
        self._paused = False
        self._consecutive_failures = 0
        self._current_task_id: Optional[str] = None
        self._empty_notified = False

        # Callbacks
        self.on_queue_updated: Optional[Callable[[QueueSnapshot], None]] = None
        self.on_queue_empty: Optional[Callable[[], None]] = None
        self.on_paused: Optional[Callable[[int], None]] = None

        engine.events.status.subscribe(self._on_engine_status)
        engine.events.progress.subscribe(lambda e: self._touch(e.task_id))
        engine.events.segment_progress.subscribe(lambda e: self._touch(e.task_id))
        engine.events.log.subscribe(lambda e: self._touch(e.task_id))

    # ── Queue management ──────────────────────────────────────────────

    def enqueue_task(self, task_id: str, batch_id: str | None = None,
                     priority: int = 0) -> QueueEntry:
        entry = self.queue.enqueue(task_id, batch_id, priority)
        self.db.update_task_status(task_id, TaskStatus.QUEUED,
                                   error_code=None, error_message=None)
        self._notify_queue_updated()
        self._wake.set()
        return entry

    def requeue_task(self, task_id: str) -> bool:
        """Put a finished or failed task back at the tail of the waiting list."""
        entry = self.queue.get_entry(task_id)
        if entry is None:
            self.enqueue_task(task_id)
            return True
        if entry.queue_status == QueueStatus.RUNNING:
            logger.info("Requeue rejected: task %s is running", task_id)
            return False
        if entry.queue_status != QueueStatus.WAITING:
            self.queue.move_to_waiting_tail(task_id)
        self.db.update_task_status(task_id, TaskStatus.QUEUED,
                                   error_code=None, error_message=None)
        self._notify_queue_updated()
        self._wake.set()
        return True

    def reorder(self, task_id: str, to_index: int) -> tuple[int, int]:
        moved = self.queue.reorder(task_id, to_index)
        self._notify_queue_updated()
        return moved

    def remove_waiting_task(self, task_id: str) -> bool:
        if not self.queue.remove_waiting_task(task_id):
            return False
        self.db.update_task_status(task_id, TaskStatus.CANCELED,
                                   error_code=ErrorCode.QUEUE_REMOVED,
                                   error_message="Removed from waiting queue")
        self._notify_queue_updated()
        return True

    def get_snapshot(self) -> QueueSnapshot:
        self.reconcile_running()
        return self.queue.get_snapshot(paused=self._paused)

    # ── Pause / resume ────────────────────────────────────────────────

    def pause(self):
        with self._lock:
            self._paused = True
        logger.info("Queue paused")
        self._notify_queue_updated()

    def resume(self):
        with self._lock:
            self._paused = False
            self._consecutive_failures = 0
        logger.info("Queue resumed")
        self._notify_queue_updated()
        self._wake.set()

    def is_paused(self) -> bool:
        return self._paused

    # ── Recovery ──────────────────────────────────────────────────────

    def recover_stale(self, timeout_ms: int | None = None) -> list[str]:
        """Requeue running entries whose heartbeat went quiet (crashed worker)."""
        stale = self.queue.list_stale_running_tasks(timeout_ms or self.stale_timeout_ms)
        owned = {self.engine.get_running_task_id(), self._current_task_id}
        task_ids = [e.task_id for e in stale if e.task_id not in owned]
        if not task_ids:
            return []
        self.queue.requeue_tasks(task_ids)
        for task_id in task_ids:
            self.db.update_task_status(task_id, TaskStatus.QUEUED,
                                       error_code=None, error_message=None)
        logger.warning("Recovered %d stale running task(s): %s", len(task_ids), task_ids)
        self._notify_queue_updated()
        return task_ids

    def reconcile_running(self) -> list[str]:
        """
        Requeue running entries that neither the engine nor this worker owns.

        Such orphans are left behind by a crash; their heartbeat may still be
        fresh, so waiting for the stale timeout would let a second entry run
        alongside them.
        """
        with self._lock:
            running = self.queue.get_snapshot(paused=self._paused).running
            if not running:
                return []
            owned = {self.engine.get_running_task_id(), self._current_task_id}
            orphans = [e.task_id for e in running if e.task_id not in owned]
            if not orphans:
                return []
            self.queue.requeue_tasks(orphans)
            for task_id in orphans:
                self.db.update_task_status(task_id, TaskStatus.QUEUED,
                                           error_code=None, error_message=None)
        logger.warning("Requeued %d orphaned running task(s): %s", len(orphans), orphans)
        self._wake.set()
        return orphans

    # ── Worker ────────────────────────────────────────────────────────

    def start_processing(self):
        """Start the worker thread."""
        if self._running:
            return
        self.recover_stale()
        self._stop_event.clear()
        self._running = True
        self._worker_thread = threading.Thread(target=self._worker_loop, daemon=True,
                                               name="queue-worker")
        self._worker_thread.start()

    def stop_processing(self, wait: bool = False):
        """Stop dispatching. The task already in the engine keeps running."""
        self._stop_event.set()
        self._wake.set()
        if wait and self._worker_thread:
            self._worker_thread.join()
        self._running = False

    def is_running(self) -> bool:
        return self._running

    def wait_until_drained(self, timeout: float | None = None) -> bool:
        """Block until nothing is waiting or running (or the queue pauses)."""
        done = threading.Event()

        def check():
            snapshot = self.get_snapshot()
            if self._paused or (not snapshot.waiting and not snapshot.running
                                and not self.engine.is_busy()):
                done.set()

        while not done.is_set():
            check()
            if done.wait(QUEUE_POLL_INTERVAL_SEC):
                break
            if timeout is not None:
                timeout -= QUEUE_POLL_INTERVAL_SEC
                if timeout <= 0:
                    return False
        return True

    def _worker_loop(self):
        """Main worker loop. Dispatches one task at a time."""
        try:
            while not self._stop_event.is_set():
                self._wake.clear()
                if self._paused or self.engine.is_busy() or self._current_task_id:
                    self._wake.wait(QUEUE_POLL_INTERVAL_SEC)
                    continue

                self.reconcile_running()
                entries = self.queue.dequeue_next(1)
                if not entries:
                    if not self._empty_notified:
                        self._empty_notified = True
                        self._notify_queue_empty()
                    self._wake.wait(QUEUE_POLL_INTERVAL_SEC)
                    continue

                self._empty_notified = False
                self._dispatch(entries[0])
        except Exception as e:
            logger.error("Queue worker error: %s", e, exc_info=True)
        finally:
            self._running = False

    def _dispatch(self, entry: QueueEntry):
        task_id = entry.task_id
        task = self.db.get_task(task_id)
        if task is None or task.status == TaskStatus.CANCELED:
            logger.info("Dropping queue entry for %s task %s",
                        "missing" if task is None else "canceled", task_id)
            self.queue.update_queue_status(task_id, QueueStatus.REMOVED)
            self._notify_queue_updated()
            return

        with self._lock:
            self._current_task_id = task_id
        self.queue.update_queue_status(task_id, QueueStatus.RUNNING, worker_slot=_WORKER_SLOT)
        try:
            result = self.engine.start(task_id)
        except Exception as e:
            logger.error("Engine start for %s raised: %s", task_id, e, exc_info=True)
            result = StartResult(False, f"Engine start failed: {e}")
        if result.accepted:
            self._notify_queue_updated()
            return

        reason = result.reason or "Queue start rejected"
        if "running" in reason.lower():
            # engine busy with something else; try again shortly
            logger.info("Start of %s deferred: %s", task_id, reason)
            with self._lock:
                self.queue.requeue_tasks([task_id])
                self.queue.reorder(task_id, 0)
                self._current_task_id = None
            self._stop_event.wait(QUEUE_POLL_INTERVAL_SEC)
            return

        logger.warning("Start of %s rejected: %s", task_id, reason)
        with self._lock:
            self.queue.update_queue_status(task_id, QueueStatus.FAILED,
                                           last_error_code=ErrorCode.QUEUE_START_REJECTED)
            self._current_task_id = None
        self.db.update_task_status(task_id, TaskStatus.FAILED,
                                   error_code=ErrorCode.QUEUE_START_REJECTED,
                                   error_message=reason)
        self._record_outcome(failed=True)
        self._notify_queue_updated()

    # ── Engine callbacks ──────────────────────────────────────────────

    def _on_engine_status(self, event: StatusEvent):
        if event.status == TaskStatus.COMPLETED:
            self._finish(event.task_id, QueueStatus.COMPLETED, None, count_failure=False)
        elif event.status == TaskStatus.FAILED:
            self._finish(event.task_id, QueueStatus.FAILED,
                         event.error_code or ErrorCode.TASK_FAILED, count_failure=True)
        elif event.status == TaskStatus.CANCELED:
            entry = self.queue.get_entry(event.task_id)
            if entry and entry.queue_status == QueueStatus.WAITING:
                self.queue.remove_waiting_task(event.task_id)
                self._notify_queue_updated()
                return
            self._finish(event.task_id, QueueStatus.FAILED, ErrorCode.TASK_CANCELED,
                         count_failure=False)

    def _finish(self, task_id: str, status: str, error_code: str | None, count_failure: bool):
        with self._lock:
            entry = self.queue.get_entry(task_id)
            if entry is None or entry.queue_status != QueueStatus.RUNNING:
                return
            self.queue.update_queue_status(task_id, status, last_error_code=error_code)
            if self._current_task_id == task_id:
                self._current_task_id = None
        if status == QueueStatus.COMPLETED:
            self._record_outcome(failed=False)
        elif count_failure:
            self._record_outcome(failed=True)
        logger.info("Queue entry %s finished: %s%s", task_id, status,
                    f" ({error_code})" if error_code else "")
        self._notify_queue_updated()
        self._wake.set()

    def _record_outcome(self, failed: bool):
        with self._lock:
            if not failed:
                self._consecutive_failures = 0
                return
            self._consecutive_failures += 1
            count = self._consecutive_failures
            if count < self.failure_threshold or self._paused:
                return
            self._paused = True
        logger.warning("Queue paused after %d consecutive failures", count)
        if self.on_paused:
            self.on_paused(count)

    def _touch(self, task_id: str):
        if task_id == self._current_task_id:
            self.queue.touch_heartbeat(task_id)

    def _notify_queue_empty(self):
        if self.on_queue_empty:
            try:
                self.on_queue_empty()
            except Exception as e:
                logger.error("on_queue_empty callback failed: %s", e, exc_info=True)

    def _notify_queue_updated(self):
        if self.on_queue_updated:
            try:
                self.on_queue_updated(self.get_snapshot())
            except Exception as e:
                logger.error("on_queue_updated callback failed: %s", e, exc_info=True)
