"""
Persistent backlog for the single-worker engine.

Waiting entries carry a dense queue_index (0..n-1). Every operation that
moves an entry into or out of the waiting list reindexes it in the same
transaction, so the index never has gaps or duplicates.
"""

import logging
from datetime import datetime, timedelta, timezone

from dubflow.core.constants import (
    QueueStatus, QUEUE_TERMINAL_STATUSES, MAX_DEQUEUE_LIMIT, MIN_STALE_TIMEOUT_MS,
)
from dubflow.core.db_sqlite import Database
from dubflow.core.error_codes import QueueError
from dubflow.core.models_sqlite import QueueEntry, QueueSnapshot

logger = logging.getLogger(__name__)

_PATCHABLE = ('batch_id', 'priority', 'started_at', 'heartbeat_at', 'finished_at',
              'worker_slot', 'last_error_code', 'enqueued_at')


class TaskQueue:
    def __init__(self, db: Database):
        self.db = db

    # ── Internal helpers (call with db._lock held) ────────────────────

    def _get(self, task_id: str) -> QueueEntry | None:
        row = self.db.conn.execute(
            "SELECT * FROM task_queue WHERE task_id = ?", (task_id,)
        ).fetchone()
        return self.db._row_to_queue_entry(row) if row else None

    def _waiting_ids(self, exclude: str | None = None) -> list[str]:
        rows = self.db.conn.execute(
            "SELECT task_id FROM task_queue WHERE queue_status = ? ORDER BY queue_index, enqueued_at",
            (QueueStatus.WAITING,),
        ).fetchall()
        return [r['task_id'] for r in rows if r['task_id'] != exclude]

    def _reindex(self, ordered_ids: list[str]):
        self.db.conn.executemany(
            "UPDATE task_queue SET queue_index = ? WHERE task_id = ?",
            [(i, task_id) for i, task_id in enumerate(ordered_ids)],
        )

    # ── Public API ────────────────────────────────────────────────────

    def get_entry(self, task_id: str) -> QueueEntry | None:
        with self.db._lock:
            return self._get(task_id)

    def enqueue(self, task_id: str, batch_id: str | None = None,
                priority: int = 0) -> QueueEntry:
        with self.db._lock:
            existing = self._get(task_id)
            if existing and existing.queue_status in (QueueStatus.WAITING, QueueStatus.RUNNING):
                raise QueueError(f"Task {task_id} is already queued ({existing.queue_status})")
            next_index = len(self._waiting_ids())
            now = self.db._now()
            # finished history rows are recycled for the new run
            self.db.conn.execute("DELETE FROM task_queue WHERE task_id = ?", (task_id,))
            self.db.conn.execute(
                """INSERT INTO task_queue
                   (task_id, batch_id, queue_status, priority, queue_index, enqueued_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (task_id, batch_id, QueueStatus.WAITING, int(priority), next_index, now),
            )
            self.db.conn.commit()
            entry = self._get(task_id)
        logger.info("Enqueued task %s at index %d (priority %d)", task_id, next_index, priority)
        return entry

    def dequeue_next(self, limit: int = 1) -> list[QueueEntry]:
        """Peek at the next waiting entries; does not change their status."""
        limit = max(1, min(MAX_DEQUEUE_LIMIT, int(limit)))
        with self.db._lock:
            rows = self.db.conn.execute(
                """SELECT * FROM task_queue WHERE queue_status = ?
                   ORDER BY priority DESC, queue_index ASC LIMIT ?""",
                (QueueStatus.WAITING, limit),
            ).fetchall()
        return [self.db._row_to_queue_entry(r) for r in rows]

    def update_queue_status(self, task_id: str, status: str, **patch) -> QueueEntry:
        unknown = set(patch) - set(_PATCHABLE)
        if unknown:
            raise ValueError(f"Unknown queue fields: {sorted(unknown)}")

        with self.db._lock:
            entry = self._get(task_id)
            if entry is None:
                raise QueueError(f"Task {task_id} is not in the queue")

            now = self.db._now()
            fields = {'queue_status': status}
            if status == QueueStatus.RUNNING:
                fields['started_at'] = entry.started_at or now
                fields['heartbeat_at'] = entry.heartbeat_at or now
                fields['finished_at'] = None
            elif status == QueueStatus.WAITING:
                fields['started_at'] = None
                fields['heartbeat_at'] = None
                fields['finished_at'] = None
                fields['worker_slot'] = None
            elif status in QUEUE_TERMINAL_STATUSES:
                fields['finished_at'] = now
            if status != QueueStatus.RUNNING:
                fields['worker_slot'] = None
            fields.update(patch)

            sets = ', '.join(f"{k} = ?" for k in fields)
            self.db.conn.execute(
                f"UPDATE task_queue SET {sets} WHERE task_id = ?",
                list(fields.values()) + [task_id],
            )

            was_waiting = entry.queue_status == QueueStatus.WAITING
            if was_waiting and status != QueueStatus.WAITING:
                self._reindex(self._waiting_ids(exclude=task_id))
            elif not was_waiting and status == QueueStatus.WAITING:
                ids = self._waiting_ids(exclude=task_id) + [task_id]
                self._reindex(ids)
            self.db.conn.commit()
            return self._get(task_id)

    def touch_heartbeat(self, task_id: str):
        with self.db._lock:
            self.db.conn.execute(
                "UPDATE task_queue SET heartbeat_at = ? WHERE task_id = ? AND queue_status = ?",
                (self.db._now(), task_id, QueueStatus.RUNNING),
            )
            self.db.conn.commit()

    def reorder(self, task_id: str, to_index: int) -> tuple[int, int]:
        """Move a waiting entry; returns (from_index, clamped to_index)."""
        with self.db._lock:
            entry = self._get(task_id)
            if entry is None or entry.queue_status != QueueStatus.WAITING:
                raise QueueError(f"Task {task_id} is not waiting")
            ids = self._waiting_ids()
            from_index = ids.index(task_id)
            ids.pop(from_index)
            target = max(0, min(len(ids), int(to_index)))
            ids.insert(target, task_id)
            self._reindex(ids)
            self.db.conn.commit()
        logger.info("Reordered task %s: %d -> %d", task_id, from_index, target)
        return from_index, target

    def remove_waiting_task(self, task_id: str) -> bool:
        with self.db._lock:
            entry = self._get(task_id)
            if entry is None or entry.queue_status != QueueStatus.WAITING:
                return False
            self.update_queue_status(task_id, QueueStatus.REMOVED)
        logger.info("Removed waiting task %s", task_id)
        return True

    def list_stale_running_tasks(self, timeout_ms: int) -> list[QueueEntry]:
        timeout_ms = max(MIN_STALE_TIMEOUT_MS, int(timeout_ms))
        cutoff = datetime.now(timezone.utc) - timedelta(milliseconds=timeout_ms)
        with self.db._lock:
            rows = self.db.conn.execute(
                "SELECT * FROM task_queue WHERE queue_status = ?",
                (QueueStatus.RUNNING,),
            ).fetchall()
        stale = []
        for row in rows:
            entry = self.db._row_to_queue_entry(row)
            last_seen = entry.heartbeat_at or entry.started_at or entry.enqueued_at
            if last_seen and datetime.fromisoformat(last_seen) < cutoff:
                stale.append(entry)
        return stale

    def move_to_waiting_tail(self, task_id: str) -> QueueEntry:
        with self.db._lock:
            entry = self._get(task_id)
            if entry is None:
                raise QueueError(f"Task {task_id} is not in the queue")
            ids = self._waiting_ids(exclude=task_id)
            self.db.conn.execute(
                """UPDATE task_queue
                   SET queue_status = ?, queue_index = ?, enqueued_at = ?,
                       started_at = NULL, heartbeat_at = NULL, finished_at = NULL,
                       worker_slot = NULL, last_error_code = NULL
                   WHERE task_id = ?""",
                (QueueStatus.WAITING, len(ids), self.db._now(), task_id),
            )
            self._reindex(ids + [task_id])
            self.db.conn.commit()
            return self._get(task_id)

    def requeue_tasks(self, task_ids: list[str]) -> list[QueueEntry]:
        moved = []
        with self.db._lock:
            for task_id in task_ids:
                if self._get(task_id) is None:
                    logger.warning("Cannot requeue unknown task %s", task_id)
                    continue
                moved.append(self.move_to_waiting_tail(task_id))
        return moved

    def get_snapshot(self, paused: bool = False) -> QueueSnapshot:
        with self.db._lock:
            rows = self.db.conn.execute(
                "SELECT * FROM task_queue ORDER BY priority DESC, queue_index ASC, enqueued_at ASC"
            ).fetchall()
        snapshot = QueueSnapshot(paused=paused, updated_at=self.db._now())
        buckets = {
            QueueStatus.WAITING: snapshot.waiting,
            QueueStatus.RUNNING: snapshot.running,
            QueueStatus.COMPLETED: snapshot.completed,
            QueueStatus.FAILED: snapshot.failed,
        }
        for row in rows:
            entry = self.db._row_to_queue_entry(row)
            bucket = buckets.get(entry.queue_status)
            if bucket is not None:
                bucket.append(entry)
        # history newest first
        snapshot.completed.sort(key=lambda e: e.finished_at or "", reverse=True)
        snapshot.failed.sort(key=lambda e: e.finished_at or "", reverse=True)
        return snapshot
