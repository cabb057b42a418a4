"""
SQLite data models (plain dataclasses) for DubFlow.
"""

import json
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Task:
    id: str                          # UUID
    source_url: str
    title: Optional[str] = None
    status: str = "idle"
    source_language: Optional[str] = None
    target_language: str = "zh"
    whisper_model: str = "base"
    translate_provider: Optional[str] = None
    translate_model_id: Optional[str] = None
    tts_provider: Optional[str] = None
    tts_model_id: Optional[str] = None
    tts_voice: Optional[str] = None
    segmentation_strategy: str = "punctuation"
    segmentation_options: Optional[str] = None   # JSON
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    def segmentation_options_dict(self) -> dict:
        if not self.segmentation_options:
            return {}
        try:
            value = json.loads(self.segmentation_options)
        except (TypeError, ValueError):
            return {}
        return value if isinstance(value, dict) else {}


@dataclass
class StageRun:
    id: str
    task_id: str
    stage_name: str
    status: str = "running"
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    duration_ms: Optional[int] = None
    retry_count: int = 0
    log_excerpt: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class Segment:
    id: str
    task_id: str
    stage_name: str
    segment_index: int
    source_text: str
    result_text: Optional[str] = None
    status: str = "pending"
    retry_count: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    duration_ms: Optional[int] = None


@dataclass
class RecoverySnapshot:
    id: int
    task_id: str
    stage_name: str
    checkpoint_key: str
    payload: str                     # JSON
    created_at: Optional[str] = None

    def payload_dict(self) -> dict:
        try:
            value = json.loads(self.payload or "{}")
        except (TypeError, ValueError):
            return {}
        return value if isinstance(value, dict) else {}


@dataclass
class QueueEntry:
    task_id: str
    batch_id: Optional[str] = None
    queue_status: str = "waiting"
    priority: int = 0
    queue_index: int = 0
    enqueued_at: Optional[str] = None
    started_at: Optional[str] = None
    heartbeat_at: Optional[str] = None
    finished_at: Optional[str] = None
    worker_slot: Optional[int] = None
    last_error_code: Optional[str] = None


@dataclass
class Artifact:
    id: int
    task_id: str
    artifact_type: str
    file_path: str
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class QueueSnapshot:
    waiting: list = field(default_factory=list)
    running: list = field(default_factory=list)
    completed: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    paused: bool = False
    updated_at: Optional[str] = None
