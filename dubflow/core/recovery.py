"""
Checkpoints, failure classification and recovery suggestions.

Checkpoints are appended after every segment success (and once when a
segmented stage fails). Each one records the configuration in effect so a
later resume can tell whether the stored segment results are still valid.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from dubflow.core.constants import (
    STAGES, STAGE_ALIASES, SegmentStatus, StageRunStatus, ErrorCode, TRANSIENT_CODE_PREFIXES,
)
from dubflow.core.db_sqlite import Database

logger = logging.getLogger(__name__)

_PERMISSION_MARKERS = ("401", "403", "permission", "forbidden", "unauthorized", "api key")
_CONFIG_MARKERS = ("config", "invalid", "range", "voice", "unsupported")
_TRANSIENT_MARKERS = ("timeout", "timed out", "network", "connection", "429", "rate",
                      "temporarily", "unavailable", "reset by peer")


class RecoveryActionType:
    RETRY_FAILED_SEGMENTS = "retryFailedSegments"
    WAIT_AND_RETRY = "waitAndRetry"
    FIX_CONFIG = "fixConfig"
    CHECK_PERMISSIONS = "checkPermissions"
    RESUME_FROM_CHECKPOINT = "resumeFromCheckpoint"
    RESTART_STAGE = "restartStage"


@dataclass
class RecoveryAction:
    action: str
    label: str
    reason: str
    stage: Optional[str] = None
    segment_ids: list = field(default_factory=list)


@dataclass
class FailedSegmentInfo:
    id: str
    stage_name: str
    segment_index: int
    error_code: Optional[str]
    error_message: Optional[str]


@dataclass
class RecoveryPlan:
    task_id: str
    from_stage: Optional[str]
    failed_segments: list = field(default_factory=list)
    actions: list = field(default_factory=list)

    def has_action(self, action: str) -> bool:
        return any(a.action == action for a in self.actions)


# ── Stage names ──────────────────────────────────────────────────────

def normalize_stage_name(value: str | None) -> str | None:
    """Map a stored or user-supplied stage name to a pipeline stage, or None."""
    if not value:
        return None
    name = str(value).strip().lower()
    if name in STAGES:
        return name
    return STAGE_ALIASES.get(name)


# ── Classification ───────────────────────────────────────────────────

def error_category(code: str | None, message: str | None) -> str:
    """Return 'integrity', 'permission', 'config' or 'transient'."""
    code = code or ""
    if code == ErrorCode.SEGMENT_INTEGRITY:
        return "integrity"
    if code.startswith(TRANSIENT_CODE_PREFIXES):
        return "transient"
    if code == ErrorCode.PROVIDER_AUTH:
        return "permission"
    if code == ErrorCode.CONFIG_INVALID:
        return "config"

    text = f"{code} {message or ''}".lower()
    if any(marker in text for marker in _PERMISSION_MARKERS):
        return "permission"
    if any(marker in text for marker in _CONFIG_MARKERS):
        return "config"
    return "transient"


def classify_error(code: str | None, message: str | None) -> str:
    """'retryable' for transient failures, 'fatal' for everything else."""
    return "retryable" if error_category(code, message) == "transient" else "fatal"


def backoff_delay_ms(attempt: int, base_ms: int, max_ms: int) -> int:
    """Delay before retry number `attempt` (1-based): base doubling, capped."""
    if base_ms <= 0:
        return 0
    return min(max_ms, base_ms * (2 ** max(0, attempt - 1)))


# ── Config hashing ───────────────────────────────────────────────────

def config_hash(snapshot: dict | None) -> str:
    canonical = json.dumps(snapshot or {}, sort_keys=True, ensure_ascii=False,
                           separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def is_compatible(payload: dict, current_snapshot: dict | None) -> bool:
    if current_snapshot is None:
        return True
    stored = payload.get("configHash")
    if not stored:
        stored = config_hash(payload.get("configSnapshot"))
    return stored == config_hash(current_snapshot)


# ── Checkpoint store ─────────────────────────────────────────────────

class CheckpointStore:
    def __init__(self, db: Database):
        self.db = db

    def _payload(self, task_id: str, stage_name: str, checkpoint_segment_id: str | None,
                 config_snapshot: dict, digest: str) -> dict:
        segments = self.db.list_segments(task_id, stage_name)
        return {
            "stageName": stage_name,
            "checkpointSegmentId": checkpoint_segment_id,
            "successfulSegmentIds": [s.id for s in segments if s.status == SegmentStatus.SUCCESS],
            "failedSegmentIds": [s.id for s in segments if s.status == SegmentStatus.FAILED],
            "configSnapshot": config_snapshot,
            "configHash": digest,
            "createdAt": self.db._now(),
        }

    def save_segment_checkpoint(self, task_id: str, stage_name: str,
                                checkpoint_segment_id: str, config_snapshot: dict):
        digest = config_hash(config_snapshot)
        key = f"{stage_name}:{checkpoint_segment_id}:{digest[:12]}"
        # newest row reflects every segment marked before it
        with self.db._lock:
            payload = self._payload(task_id, stage_name, checkpoint_segment_id,
                                    config_snapshot, digest)
            return self.db.save_snapshot(task_id, stage_name, key, payload)

    def save_failure_checkpoint(self, task_id: str, stage_name: str, config_snapshot: dict):
        digest = config_hash(config_snapshot)
        with self.db._lock:
            segments = self.db.list_segments(task_id, stage_name)
            done = [s for s in segments if s.status == SegmentStatus.SUCCESS]
            last_id = done[-1].id if done else None
            key = f"{stage_name}:{last_id or 'none'}:{digest[:12]}"
            payload = self._payload(task_id, stage_name, last_id, config_snapshot, digest)
            return self.db.save_snapshot(task_id, stage_name, key, payload)

    def get_latest(self, task_id: str, stage_name: str | None = None):
        return self.db.get_latest_snapshot(task_id, stage_name)


# ── Planner ──────────────────────────────────────────────────────────

class RecoveryPlanner:
    """Derives advisory recovery actions from segment and checkpoint state."""

    def __init__(self, db: Database,
                 config_provider: Optional[Callable[[object, str | None], dict]] = None):
        self.db = db
        # (task, stage) -> comparable config snapshot currently in effect
        self.config_provider = config_provider

    def _failure_stage(self, task_id: str, failed_segments: list) -> str | None:
        runs = [r for r in self.db.list_stage_runs(task_id) if r.status == StageRunStatus.FAILED]
        if runs:
            return runs[-1].stage_name
        if failed_segments:
            return failed_segments[0].stage_name
        return None

    def create_plan(self, task_id: str, current_config: dict | None = None) -> RecoveryPlan:
        failed = self.db.list_failed_segments(task_id)
        latest = self.db.get_latest_snapshot(task_id)
        snapshot_stage = normalize_stage_name(latest.stage_name) if latest else None
        from_stage = snapshot_stage or (failed[0].stage_name if failed else None)

        if current_config is None and self.config_provider is not None:
            task = self.db.get_task(task_id)
            if task is not None:
                current_config = self.config_provider(task, snapshot_stage)

        plan = RecoveryPlan(
            task_id=task_id,
            from_stage=from_stage,
            failed_segments=[
                FailedSegmentInfo(id=s.id, stage_name=s.stage_name,
                                  segment_index=s.segment_index,
                                  error_code=s.error_code,
                                  error_message=s.error_message)
                for s in failed
            ],
        )

        if failed:
            categories = {error_category(s.error_code, s.error_message) for s in failed}
            stage = failed[0].stage_name
            plan.actions.append(RecoveryAction(
                action=RecoveryActionType.RETRY_FAILED_SEGMENTS,
                label="Retry failed segments",
                reason=f"{len(failed)} segment(s) failed; retrying them keeps completed work.",
                stage=stage,
                segment_ids=[s.id for s in failed],
            ))
            if "transient" in categories:
                plan.actions.append(RecoveryAction(
                    action=RecoveryActionType.WAIT_AND_RETRY,
                    label="Wait and retry",
                    reason="Network, timeout or rate-limit errors often clear after a pause.",
                    stage=stage,
                ))
            if "config" in categories:
                plan.actions.append(RecoveryAction(
                    action=RecoveryActionType.FIX_CONFIG,
                    label="Fix configuration",
                    reason="A provider rejected the model, voice or parameter settings.",
                    stage=stage,
                ))
            if "permission" in categories:
                plan.actions.append(RecoveryAction(
                    action=RecoveryActionType.CHECK_PERMISSIONS,
                    label="Check credentials and permissions",
                    reason="A provider or path refused access (401/403).",
                    stage=stage,
                ))

        if latest and snapshot_stage:
            failure_stage = self._failure_stage(task_id, failed)
            in_range = (failure_stage is None
                        or STAGES.index(snapshot_stage) <= STAGES.index(failure_stage))
            if in_range:
                if is_compatible(latest.payload_dict(), current_config):
                    plan.actions.append(RecoveryAction(
                        action=RecoveryActionType.RESUME_FROM_CHECKPOINT,
                        label="Resume from latest checkpoint",
                        reason="Completed segments can be reused.",
                        stage=snapshot_stage,
                    ))
                else:
                    plan.actions.append(RecoveryAction(
                        action=RecoveryActionType.RESTART_STAGE,
                        label="Restart stage",
                        reason="Settings changed since the checkpoint; stored segments are stale.",
                        stage=snapshot_stage,
                    ))

        logger.debug("Recovery plan for %s: %s", task_id, [a.action for a in plan.actions])
        return plan
