"""
SQLite database layer for DubFlow.
Thread-safe via check_same_thread=False + explicit locking.
"""

import json
import sqlite3
import threading
import uuid
import logging
from datetime import datetime, timezone
from pathlib import Path

from dubflow.core.constants import (
    DB_PATH, TaskStatus, StageRunStatus, SegmentStatus, TERMINAL_STATUSES,
)
from dubflow.core.error_codes import truncate_message
from dubflow.core.models_sqlite import (
    Task, StageRun, Segment, RecoverySnapshot, QueueEntry, Artifact,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    source_url TEXT NOT NULL,
    title TEXT,
    status TEXT NOT NULL DEFAULT 'idle',
    source_language TEXT,
    target_language TEXT NOT NULL DEFAULT 'zh',
    whisper_model TEXT NOT NULL DEFAULT 'base',
    translate_provider TEXT,
    translate_model_id TEXT,
    tts_provider TEXT,
    tts_model_id TEXT,
    tts_voice TEXT,
    segmentation_strategy TEXT NOT NULL DEFAULT 'punctuation',
    segmentation_options TEXT,
    error_code TEXT,
    error_message TEXT,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at DESC);

CREATE TABLE IF NOT EXISTS stage_runs (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    stage_name TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT,
    ended_at TEXT,
    duration_ms INTEGER,
    retry_count INTEGER DEFAULT 0,
    log_excerpt TEXT,
    error_code TEXT,
    error_message TEXT,
    FOREIGN KEY (task_id) REFERENCES tasks(id)
);

CREATE INDEX IF NOT EXISTS idx_stage_runs_task ON stage_runs(task_id, started_at);

CREATE TABLE IF NOT EXISTS segments (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    stage_name TEXT NOT NULL,
    segment_index INTEGER NOT NULL,
    source_text TEXT NOT NULL,
    result_text TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER DEFAULT 0,
    error_code TEXT,
    error_message TEXT,
    started_at TEXT,
    ended_at TEXT,
    duration_ms INTEGER,
    UNIQUE (task_id, stage_name, segment_index),
    FOREIGN KEY (task_id) REFERENCES tasks(id)
);

CREATE INDEX IF NOT EXISTS idx_segments_task_stage ON segments(task_id, stage_name, segment_index);

CREATE TABLE IF NOT EXISTS recovery_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    stage_name TEXT NOT NULL,
    checkpoint_key TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT,
    FOREIGN KEY (task_id) REFERENCES tasks(id)
);

CREATE INDEX IF NOT EXISTS idx_recovery_task ON recovery_snapshots(task_id, created_at DESC);

CREATE TABLE IF NOT EXISTS artifacts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    artifact_type TEXT NOT NULL,
    file_path TEXT NOT NULL,
    file_size INTEGER,
    mime_type TEXT,
    created_at TEXT,
    FOREIGN KEY (task_id) REFERENCES tasks(id)
);

CREATE INDEX IF NOT EXISTS idx_artifacts_task_type ON artifacts(task_id, artifact_type);

CREATE TABLE IF NOT EXISTS task_queue (
    task_id TEXT PRIMARY KEY,
    batch_id TEXT,
    queue_status TEXT NOT NULL DEFAULT 'waiting',
    priority INTEGER NOT NULL DEFAULT 0,
    queue_index INTEGER NOT NULL DEFAULT 0,
    enqueued_at TEXT,
    started_at TEXT,
    heartbeat_at TEXT,
    finished_at TEXT,
    worker_slot INTEGER,
    last_error_code TEXT,
    FOREIGN KEY (task_id) REFERENCES tasks(id)
);

CREATE INDEX IF NOT EXISTS idx_task_queue_status ON task_queue(queue_status, priority DESC, queue_index ASC);
"""


class Database:
    """SQLite database wrapper for DubFlow."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._ensure_dirs()
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        # Set schema version
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        # fixed precision keeps timestamps sortable as text
        return datetime.now(timezone.utc).isoformat(timespec="microseconds")

    @staticmethod
    def _elapsed_ms(started_at: str | None, ended_at: str) -> int | None:
        if not started_at:
            return None
        delta = datetime.fromisoformat(ended_at) - datetime.fromisoformat(started_at)
        return max(0, int(delta.total_seconds() * 1000))

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(**dict(row))

    @staticmethod
    def _row_to_stage_run(row: sqlite3.Row) -> StageRun:
        return StageRun(**dict(row))

    @staticmethod
    def _row_to_segment(row: sqlite3.Row) -> Segment:
        return Segment(**dict(row))

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> RecoverySnapshot:
        return RecoverySnapshot(**dict(row))

    @staticmethod
    def _row_to_queue_entry(row: sqlite3.Row) -> QueueEntry:
        return QueueEntry(**dict(row))

    @staticmethod
    def _row_to_artifact(row: sqlite3.Row) -> Artifact:
        return Artifact(**dict(row))

    # ── Task CRUD ─────────────────────────────────────────────────────

    def create_task(self, source_url: str, **fields) -> Task:
        now = self._now()
        options = fields.pop('segmentation_options', None)
        if isinstance(options, dict):
            options = json.dumps(options, sort_keys=True)
        task = Task(
            id=str(uuid.uuid4()),
            source_url=source_url,
            segmentation_options=options,
            created_at=now,
            updated_at=now,
            **fields,
        )
        data = dict(task.__dict__)
        cols = ', '.join(data)
        marks = ', '.join('?' for _ in data)
        with self._lock:
            self.conn.execute(
                f"INSERT INTO tasks ({cols}) VALUES ({marks})",
                list(data.values()),
            )
            self.conn.commit()
        return task

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(self) -> list[Task]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM tasks ORDER BY created_at DESC"
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def update_task(self, task_id: str, **kwargs):
        kwargs['updated_at'] = self._now()
        if 'error_message' in kwargs:
            kwargs['error_message'] = truncate_message(kwargs['error_message'])
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [task_id]
        with self._lock:
            self.conn.execute(
                f"UPDATE tasks SET {sets} WHERE id = ?", vals
            )
            self.conn.commit()

    def update_task_status(self, task_id: str, status: str, **extra):
        fields = {'status': status}
        if status in TERMINAL_STATUSES:
            fields['completed_at'] = self._now()
        elif status == TaskStatus.QUEUED:
            fields['completed_at'] = None
        fields.update(extra)
        self.update_task(task_id, **fields)

    # ── Stage runs ────────────────────────────────────────────────────

    def start_stage_run(self, task_id: str, stage_name: str) -> StageRun:
        with self._lock:
            previous = self.conn.execute(
                "SELECT COUNT(*) FROM stage_runs WHERE task_id = ? AND stage_name = ?",
                (task_id, stage_name),
            ).fetchone()[0]
            run = StageRun(
                id=str(uuid.uuid4()),
                task_id=task_id,
                stage_name=stage_name,
                status=StageRunStatus.RUNNING,
                started_at=self._now(),
                retry_count=previous,
            )
            self.conn.execute(
                """INSERT INTO stage_runs
                   (id, task_id, stage_name, status, started_at, retry_count)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (run.id, run.task_id, run.stage_name, run.status,
                 run.started_at, run.retry_count),
            )
            self.conn.commit()
        return run

    def finish_stage_run(self, run_id: str, status: str,
                         error_code: str | None = None,
                         error_message: str | None = None,
                         log_excerpt: str | None = None):
        with self._lock:
            row = self.conn.execute(
                "SELECT started_at FROM stage_runs WHERE id = ?", (run_id,)
            ).fetchone()
            ended = self._now()
            duration = self._elapsed_ms(row['started_at'] if row else None, ended)
            self.conn.execute(
                """UPDATE stage_runs
                   SET status = ?, ended_at = ?, duration_ms = ?,
                       error_code = ?, error_message = ?, log_excerpt = ?
                   WHERE id = ?""",
                (status, ended, duration, error_code,
                 truncate_message(error_message), log_excerpt, run_id),
            )
            self.conn.commit()

    def list_stage_runs(self, task_id: str, stage_name: str | None = None) -> list[StageRun]:
        query = "SELECT * FROM stage_runs WHERE task_id = ?"
        params: list = [task_id]
        if stage_name:
            query += " AND stage_name = ?"
            params.append(stage_name)
        query += " ORDER BY started_at, rowid"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_stage_run(r) for r in rows]

    # ── Segments ──────────────────────────────────────────────────────

    def list_segments(self, task_id: str, stage_name: str | None = None) -> list[Segment]:
        query = "SELECT * FROM segments WHERE task_id = ?"
        params: list = [task_id]
        if stage_name:
            query += " AND stage_name = ?"
            params.append(stage_name)
        query += " ORDER BY stage_name, segment_index"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_segment(r) for r in rows]

    def list_failed_segments(self, task_id: str) -> list[Segment]:
        with self._lock:
            rows = self.conn.execute(
                """SELECT * FROM segments WHERE task_id = ? AND status = ?
                   ORDER BY stage_name, segment_index""",
                (task_id, SegmentStatus.FAILED),
            ).fetchall()
        return [self._row_to_segment(r) for r in rows]

    def get_segment(self, segment_id: str) -> Segment | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM segments WHERE id = ?", (segment_id,)
            ).fetchone()
        return self._row_to_segment(row) if row else None

    def replace_segments(self, task_id: str, stage_name: str,
                         chunks: list) -> list[Segment]:
        """Drop every segment of the stage and insert fresh pending rows."""
        segments = [
            Segment(
                id=chunk.id,
                task_id=task_id,
                stage_name=stage_name,
                segment_index=chunk.index,
                source_text=chunk.text,
            )
            for chunk in chunks
        ]
        with self._lock:
            self.conn.execute(
                "DELETE FROM segments WHERE task_id = ? AND stage_name = ?",
                (task_id, stage_name),
            )
            self.conn.executemany(
                """INSERT INTO segments
                   (id, task_id, stage_name, segment_index, source_text, status, retry_count)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                [(s.id, s.task_id, s.stage_name, s.segment_index, s.source_text,
                  s.status, s.retry_count) for s in segments],
            )
            self.conn.commit()
        return segments

    def update_segment(self, segment_id: str, **kwargs):
        if 'error_message' in kwargs:
            kwargs['error_message'] = truncate_message(kwargs['error_message'])
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [segment_id]
        with self._lock:
            self.conn.execute(
                f"UPDATE segments SET {sets} WHERE id = ?", vals
            )
            self.conn.commit()

    def mark_segment_running(self, segment_id: str):
        self.update_segment(segment_id,
                            status=SegmentStatus.RUNNING,
                            started_at=self._now(),
                            ended_at=None,
                            duration_ms=None)

    def mark_segment_success(self, segment_id: str, result_text: str):
        with self._lock:
            segment = self.get_segment(segment_id)
            ended = self._now()
            self.update_segment(segment_id,
                                status=SegmentStatus.SUCCESS,
                                result_text=result_text,
                                error_code=None,
                                error_message=None,
                                ended_at=ended,
                                duration_ms=self._elapsed_ms(
                                    segment.started_at if segment else None, ended))

    def mark_segment_failed(self, segment_id: str, error_code: str,
                            error_message: str, increment_retry: bool = True):
        with self._lock:
            segment = self.get_segment(segment_id)
            ended = self._now()
            fields = {
                'status': SegmentStatus.FAILED,
                'error_code': error_code,
                'error_message': error_message,
                'ended_at': ended,
                'duration_ms': self._elapsed_ms(
                    segment.started_at if segment else None, ended),
            }
            if increment_retry and segment:
                fields['retry_count'] = segment.retry_count + 1
            self.update_segment(segment_id, **fields)

    # ── Recovery snapshots ────────────────────────────────────────────

    def save_snapshot(self, task_id: str, stage_name: str,
                      checkpoint_key: str, payload: dict) -> RecoverySnapshot:
        body = json.dumps(payload, ensure_ascii=False, sort_keys=True)
        with self._lock:
            now = self._now()
            cur = self.conn.execute(
                """INSERT INTO recovery_snapshots
                   (task_id, stage_name, checkpoint_key, payload, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (task_id, stage_name, checkpoint_key, body, now),
            )
            self.conn.commit()
            snapshot_id = cur.lastrowid
        return RecoverySnapshot(id=snapshot_id, task_id=task_id,
                                stage_name=stage_name,
                                checkpoint_key=checkpoint_key,
                                payload=body, created_at=now)

    def get_latest_snapshot(self, task_id: str,
                            stage_name: str | None = None) -> RecoverySnapshot | None:
        query = "SELECT * FROM recovery_snapshots WHERE task_id = ?"
        params: list = [task_id]
        if stage_name:
            query += " AND stage_name = ?"
            params.append(stage_name)
        query += " ORDER BY created_at DESC, id DESC LIMIT 1"
        with self._lock:
            row = self.conn.execute(query, params).fetchone()
        return self._row_to_snapshot(row) if row else None

    def list_snapshots(self, task_id: str) -> list[RecoverySnapshot]:
        with self._lock:
            rows = self.conn.execute(
                """SELECT * FROM recovery_snapshots WHERE task_id = ?
                   ORDER BY created_at DESC, id DESC""",
                (task_id,),
            ).fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    # ── Artifacts ─────────────────────────────────────────────────────

    def add_artifact(self, task_id: str, artifact_type: str, file_path: Path,
                     mime_type: str | None = None) -> Artifact:
        path = Path(file_path)
        size = path.stat().st_size if path.exists() else None
        now = self._now()
        with self._lock:
            cur = self.conn.execute(
                """INSERT INTO artifacts
                   (task_id, artifact_type, file_path, file_size, mime_type, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (task_id, artifact_type, str(path), size, mime_type, now),
            )
            self.conn.commit()
            artifact_id = cur.lastrowid
        return Artifact(id=artifact_id, task_id=task_id, artifact_type=artifact_type,
                        file_path=str(path), file_size=size, mime_type=mime_type,
                        created_at=now)

    def get_latest_artifact(self, task_id: str, artifact_type: str) -> Artifact | None:
        with self._lock:
            row = self.conn.execute(
                """SELECT * FROM artifacts WHERE task_id = ? AND artifact_type = ?
                   ORDER BY created_at DESC, id DESC LIMIT 1""",
                (task_id, artifact_type),
            ).fetchone()
        return self._row_to_artifact(row) if row else None

    def list_artifacts(self, task_id: str) -> list[Artifact]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM artifacts WHERE task_id = ? ORDER BY created_at, id",
                (task_id,),
            ).fetchall()
        return [self._row_to_artifact(r) for r in rows]
