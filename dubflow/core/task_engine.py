"""
Task engine: drives one task at a time through the six pipeline stages.

downloading -> extracting -> transcribing -> translating -> synthesizing -> merging

Download, extract, transcribe and merge are atomic. Translate and synthesize
work on segments: each segment is retried on its own, and a checkpoint is
written after every segment success so a failed run can resume without
redoing finished work.
"""

import collections
import json
import os
import re
import shutil
import threading
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from dubflow.core.constants import (
    TaskStatus, Stage, STAGES, SEGMENTED_STAGES, StageRunStatus, SegmentStatus,
    ArtifactType, STAGE_REQUIRED_ARTIFACT, ErrorCode, stage_error_code,
    PROGRESS_STAGE_START, PROGRESS_COMPLETE, YtdlpAuthMode,
    YTDLP_TV_CLIENT_ARGS, YTDLP_FORMAT_ERROR_MARKERS,
    EXTRACT_SAMPLE_RATE, EXTRACT_CHANNELS,
)
from dubflow.core.cancellation import CancelToken
from dubflow.core.config import AppConfig
from dubflow.core.db_sqlite import Database
from dubflow.core.error_codes import PipelineError, TaskCanceled, truncate_message
from dubflow.core.events import (
    EngineEvents, StatusEvent, ProgressEvent, SegmentProgressEvent,
    SegmentFailedEvent, RecoverySuggestedEvent, LogEvent, CompletedEvent, FailedEvent,
)
from dubflow.core.models_sqlite import Segment
from dubflow.core.process_runner import (
    run_command, CommandError, CommandTimeout, CommandCanceled,
)
from dubflow.core.providers import Translator, Synthesizer, fetch_audio
from dubflow.core.recovery import (
    CheckpointStore, RecoveryPlanner, RecoveryPlan, classify_error, backoff_delay_ms,
    is_compatible, normalize_stage_name,
)
from dubflow.core.segmentation import segment, assert_segment_integrity
from dubflow.core.toolchain import Toolchain, select_whisper_device

logger = logging.getLogger(__name__)

_PERCENT_RE = re.compile(r"(\d{1,3}(?:\.\d+)?)%")
_LOG_EXCERPT_LINES = 20


def parse_percent(line: str) -> float | None:
    match = _PERCENT_RE.search(line)
    if not match:
        return None
    value = float(match.group(1))
    return value if 0 <= value <= 100 else None


@dataclass
class StartResult:
    accepted: bool
    reason: Optional[str] = None


@dataclass
class RunContext:
    """Everything one run of one task needs; discarded when the run ends."""
    task_id: str
    task_dir: Path
    token: CancelToken
    resume_stage: str
    retry_segment_ids: Optional[set] = None
    reset_segments: bool = False
    config_snapshots: dict = field(default_factory=dict)
    video_path: Optional[Path] = None
    audio_path: Optional[Path] = None
    transcript_path: Optional[Path] = None
    translation_path: Optional[Path] = None
    tts_manifest_path: Optional[Path] = None
    final_path: Optional[Path] = None
    log_tail: collections.deque = field(
        default_factory=lambda: collections.deque(maxlen=_LOG_EXCERPT_LINES))
    progress_lock: threading.Lock = field(default_factory=threading.Lock)
    segments_done: int = 0


_ARTIFACT_FIELDS = {
    ArtifactType.VIDEO: "video_path",
    ArtifactType.AUDIO: "audio_path",
    ArtifactType.TRANSCRIPT: "transcript_path",
    ArtifactType.TRANSLATION: "translation_path",
    ArtifactType.TTS: "tts_manifest_path",
    ArtifactType.FINAL: "final_path",
}


class TaskEngine:
    """
    Single-concurrency pipeline runner.
    Listeners subscribe to `engine.events.<kind>` for UI or queue updates.
    """

    def __init__(self, db: Database, config: AppConfig, toolchain: Toolchain,
                 translator: Translator, synthesizer: Synthesizer,
                 events: EngineEvents | None = None, data_root: Path | None = None):
        self.db = db
        self.config = config
        self.toolchain = toolchain
        self.translator = translator
        self.synthesizer = synthesizer
        self.events = events or EngineEvents()
        self.data_root = Path(data_root or config.data_root)
        self.checkpoints = CheckpointStore(db)
        self.planner = RecoveryPlanner(db, config_provider=config.comparable_snapshot)

        self._lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._running_task_id: Optional[str] = None
        self._token: Optional[CancelToken] = None
        self._worker_thread: Optional[threading.Thread] = None

    # ── Public API ────────────────────────────────────────────────────

    def get_running_task_id(self) -> Optional[str]:
        return self._running_task_id

    def is_busy(self) -> bool:
        return self._running_task_id is not None

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        return self._idle.wait(timeout)

    def start(self, task_id: str, resume_stage: str | None = None,
              retry_segment_ids: list[str] | None = None,
              reset_segments: bool = False) -> StartResult:
        """Begin (or resume) a task on a background thread."""
        with self._lock:
            if self._running_task_id and self._running_task_id != task_id:
                return StartResult(False, f"Another task is running: {self._running_task_id}")
            if self._running_task_id == task_id:
                return StartResult(False, "Task is already running")

            task = self.db.get_task(task_id)
            if task is None:
                return StartResult(False, "Task not found")
            # queued-but-idle tasks (e.g. reclaimed after a crash) may start
            if task.status in STAGES:
                return StartResult(False, f"Task is already {task.status}")

            stage = STAGES[0]
            if resume_stage:
                stage = normalize_stage_name(resume_stage)
                if stage is None:
                    return StartResult(False, f"Unknown stage: {resume_stage}")

            context = RunContext(
                task_id=task_id,
                task_dir=self.data_root / "tasks" / task_id,
                token=CancelToken(task_id),
                resume_stage=stage,
                retry_segment_ids=set(retry_segment_ids) if retry_segment_ids else None,
                reset_segments=reset_segments,
                config_snapshots={s: self.config.comparable_snapshot(task, s)
                                  for s in SEGMENTED_STAGES},
            )
            missing = self._hydrate_artifacts(context)
            if missing:
                return StartResult(False, f"Cannot start at {stage}: missing {missing} artifact")

            self._running_task_id = task_id
            self._token = context.token
            self._idle.clear()

        try:
            context.task_dir.mkdir(parents=True, exist_ok=True)
            self.db.update_task_status(task_id, TaskStatus.QUEUED,
                                       error_code=None, error_message=None)
        except Exception:
            self._release(task_id)
            raise
        self.events.status.emit(StatusEvent(task_id=task_id, status=TaskStatus.QUEUED))
        self.events.progress.emit(ProgressEvent(
            task_id=task_id, stage=stage, percent=PROGRESS_STAGE_START[stage],
            message="Queued"))
        logger.info("Starting task %s at stage %s (retry set: %s)", task_id, stage,
                    len(context.retry_segment_ids) if context.retry_segment_ids else "none")

        self._worker_thread = threading.Thread(
            target=self._run, args=(context,), name=f"task-{task_id[:8]}", daemon=True)
        self._worker_thread.start()
        return StartResult(True)

    def cancel(self, task_id: str) -> bool:
        with self._lock:
            if task_id == self._running_task_id and self._token is not None:
                logger.info("Cancel requested for running task %s", task_id)
                self._token.cancel()
                return True
        task = self.db.get_task(task_id)
        if task is not None and task.status == TaskStatus.QUEUED:
            self.db.update_task_status(task_id, TaskStatus.CANCELED,
                                       error_code=ErrorCode.TASK_CANCELED,
                                       error_message="Canceled before execution")
            self.events.status.emit(StatusEvent(task_id=task_id, status=TaskStatus.CANCELED))
            return True
        return False

    def retry_segments(self, task_id: str, segment_ids: list[str]) -> StartResult:
        wanted = set(segment_ids or [])
        if not wanted:
            return StartResult(False, "No segments given")
        stages = {s.stage_name for s in self.db.list_segments(task_id) if s.id in wanted}
        if not stages:
            return StartResult(False, "Unknown segment ids")
        stage = Stage.TRANSLATING if Stage.TRANSLATING in stages else Stage.SYNTHESIZING
        return self.start(task_id, resume_stage=stage, retry_segment_ids=list(wanted))

    def resume_from_checkpoint(self, task_id: str) -> StartResult:
        latest = self.db.get_latest_snapshot(task_id)
        if latest is None:
            return StartResult(False, "No checkpoint for task")
        stage = normalize_stage_name(latest.stage_name)
        if stage is None:
            return StartResult(False, f"Checkpoint has unknown stage: {latest.stage_name}")

        task = self.db.get_task(task_id)
        if task is None:
            return StartResult(False, "Task not found")
        payload = latest.payload_dict()
        if not is_compatible(payload, self.config.comparable_snapshot(task, stage)):
            logger.info("Checkpoint config for %s changed; restarting %s from scratch",
                        task_id, stage)
            return self.start(task_id, resume_stage=stage, reset_segments=True)

        failed = [str(i) for i in payload.get("failedSegmentIds") or []]
        return self.start(task_id, resume_stage=stage, retry_segment_ids=failed or None)

    def list_segments(self, task_id: str, stage_name: str | None = None) -> list[Segment]:
        return self.db.list_segments(task_id, stage_name)

    def get_recovery_plan(self, task_id: str) -> RecoveryPlan:
        return self.planner.create_plan(task_id)

    # ── Run loop ──────────────────────────────────────────────────────

    def _run(self, context: RunContext):
        try:
            self._execute(context)
        except Exception as e:
            logger.error("Unexpected engine error for task %s: %s",
                         context.task_id, e, exc_info=True)
            self.db.update_task_status(context.task_id, TaskStatus.FAILED,
                                       error_code=ErrorCode.TASK_FAILED,
                                       error_message=str(e))
            self.events.failed.emit(FailedEvent(
                task_id=context.task_id, stage=None,
                error_code=ErrorCode.TASK_FAILED, error_message=str(e)))
            self.events.status.emit(StatusEvent(
                task_id=context.task_id, status=TaskStatus.FAILED,
                error_code=ErrorCode.TASK_FAILED, error_message=str(e)))
        finally:
            self._release(context.task_id)

    def _release(self, task_id: str):
        with self._lock:
            if self._running_task_id == task_id:
                self._running_task_id = None
                self._token = None
        self._idle.set()

    def _execute(self, context: RunContext):
        task_id = context.task_id
        start_index = STAGES.index(context.resume_stage)

        for stage in STAGES[start_index:]:
            if context.token.is_canceled():
                self._mark_canceled(context, stage)
                return

            run = self.db.start_stage_run(task_id, stage)
            context.log_tail.clear()
            self.db.update_task_status(task_id, stage)
            self.events.status.emit(StatusEvent(task_id=task_id, status=stage, stage=stage))
            self._progress(context, stage, PROGRESS_STAGE_START[stage], f"{stage} started")

            handler: Callable[[RunContext], None] = getattr(self, f"_execute_{stage}")
            try:
                handler(context)
                context.token.raise_if_canceled()
            except (TaskCanceled, CommandCanceled):
                self.db.finish_stage_run(run.id, StageRunStatus.SKIPPED,
                                         log_excerpt=self._excerpt(context))
                self._mark_canceled(context, stage)
                return
            except Exception as e:
                if context.token.is_canceled():
                    self.db.finish_stage_run(run.id, StageRunStatus.SKIPPED,
                                             log_excerpt=self._excerpt(context))
                    self._mark_canceled(context, stage)
                    return
                self._fail_stage(context, stage, run.id, e)
                return

            self.db.finish_stage_run(run.id, StageRunStatus.SUCCESS,
                                     log_excerpt=self._excerpt(context))
            self._progress(context, stage, self._stage_percent(stage, 1.0), f"{stage} done")
            self._log(context, stage, "info", f"{stage} completed")

        self.db.update_task_status(task_id, TaskStatus.COMPLETED,
                                   error_code=None, error_message=None)
        self._progress(context, Stage.MERGING, PROGRESS_COMPLETE, "Completed")
        self.events.status.emit(StatusEvent(task_id=task_id, status=TaskStatus.COMPLETED))
        self.events.completed.emit(CompletedEvent(
            task_id=task_id,
            output_path=str(context.final_path) if context.final_path else None))
        logger.info("Task %s completed", task_id)

    def _fail_stage(self, context: RunContext, stage: str, run_id: str, error: Exception):
        task_id = context.task_id
        code = stage_error_code(stage)
        message = str(error) or type(error).__name__
        if not isinstance(error, (PipelineError, CommandError, CommandTimeout)):
            logger.error("Stage %s of task %s raised: %s", stage, task_id, error, exc_info=True)
        else:
            logger.warning("Stage %s of task %s failed: %s", stage, task_id, message)

        self._log(context, stage, "error", message)
        self.db.finish_stage_run(run_id, StageRunStatus.FAILED, error_code=code,
                                 error_message=message, log_excerpt=self._excerpt(context))
        self.db.update_task_status(task_id, TaskStatus.FAILED,
                                   error_code=code, error_message=message)
        self.events.failed.emit(FailedEvent(task_id=task_id, stage=stage,
                                            error_code=code,
                                            error_message=truncate_message(message)))
        self.events.status.emit(StatusEvent(task_id=task_id, status=TaskStatus.FAILED,
                                            stage=stage, error_code=code,
                                            error_message=truncate_message(message)))

        plan = self.planner.create_plan(task_id)
        if plan.actions:
            self.events.recovery_suggested.emit(RecoverySuggestedEvent(task_id=task_id, plan=plan))

    def _mark_canceled(self, context: RunContext, stage: str | None):
        logger.info("Task %s canceled during %s", context.task_id, stage)
        self.db.update_task_status(context.task_id, TaskStatus.CANCELED,
                                   error_code=ErrorCode.TASK_CANCELED,
                                   error_message="Canceled by user")
        self._log(context, stage, "warn", "Task canceled")
        self.events.status.emit(StatusEvent(task_id=context.task_id,
                                            status=TaskStatus.CANCELED, stage=stage))

    # ── Helpers ───────────────────────────────────────────────────────

    def _hydrate_artifacts(self, context: RunContext) -> str | None:
        """Restore input paths for a resumed run; returns the missing type, if any."""
        start_index = STAGES.index(context.resume_stage)
        for artifact_type, attr in _ARTIFACT_FIELDS.items():
            artifact = self.db.get_latest_artifact(context.task_id, artifact_type)
            if artifact and Path(artifact.file_path).exists():
                setattr(context, attr, Path(artifact.file_path))
        if start_index == 0:
            return None
        required = STAGE_REQUIRED_ARTIFACT.get(context.resume_stage)
        if required and getattr(context, _ARTIFACT_FIELDS[required]) is None:
            return required
        return None

    def _record_artifact(self, context: RunContext, artifact_type: str, path: Path,
                         mime_type: str | None = None):
        setattr(context, _ARTIFACT_FIELDS[artifact_type], Path(path))
        self.db.add_artifact(context.task_id, artifact_type, path, mime_type)

    def _log(self, context: RunContext, stage: str | None, level: str, message: str):
        context.log_tail.append(message)
        self.events.log.emit(LogEvent(task_id=context.task_id, stage=stage,
                                      level=level, message=message))

    @staticmethod
    def _excerpt(context: RunContext) -> str:
        return "\n".join(context.log_tail)

    def _progress(self, context: RunContext, stage: str, percent: float, message: str = ""):
        self.events.progress.emit(ProgressEvent(task_id=context.task_id, stage=stage,
                                                percent=round(percent, 1), message=message))

    def _stage_percent(self, stage: str, fraction: float) -> float:
        start = PROGRESS_STAGE_START[stage]
        index = STAGES.index(stage)
        end = (PROGRESS_STAGE_START[STAGES[index + 1]]
               if index + 1 < len(STAGES) else PROGRESS_COMPLETE)
        return start + (end - start) * max(0.0, min(1.0, fraction))

    def _run_tool(self, context: RunContext, stage: str, args: list,
                  env: dict | None = None,
                  on_stdout_line: Callable[[str], None] | None = None,
                  on_stderr_line: Callable[[str], None] | None = None):
        """Run an external command, mapping failures onto PipelineError."""
        if not args[0]:
            raise PipelineError(ErrorCode.TOOL_MISSING,
                                f"Required tool for {stage} is not available", retryable=False)

        def default_line(line: str):
            context.log_tail.append(line)

        try:
            return run_command(
                args,
                cwd=context.task_dir,
                env=env,
                on_stdout_line=on_stdout_line or default_line,
                on_stderr_line=on_stderr_line or default_line,
                cancel_token=context.token,
                timeout=self.config.stage_timeout_sec,
            )
        except CommandCanceled:
            raise TaskCanceled(context.task_id)
        except FileNotFoundError:
            raise PipelineError(ErrorCode.TOOL_MISSING,
                                f"Executable not found: {args[0]}", retryable=False)
        except CommandTimeout as e:
            raise PipelineError(ErrorCode.COMMAND_TIMEOUT, str(e), retryable=True)
        except CommandError as e:
            error = PipelineError(ErrorCode.COMMAND_FAILED, str(e), retryable=True)
            error.output_excerpt = e.output_excerpt
            raise error

    def _with_retries(self, context: RunContext, stage: str, action: Callable[[], None]):
        """Retry an atomic stage body on retryable errors, per the stage's policy."""
        attempts = self.config.retry_attempts(stage)
        attempt = 0
        while True:
            attempt += 1
            context.token.raise_if_canceled()
            try:
                action()
                return
            except PipelineError as e:
                if not e.retryable or attempt >= attempts:
                    raise
                delay = backoff_delay_ms(attempt, self.config.get('retry_base_delay_ms'),
                                         self.config.get('retry_max_delay_ms'))
                logger.warning("%s attempt %d/%d failed (%s), retrying in %dms",
                               stage, attempt, attempts, e.code, delay)
                self._log(context, stage, "warn",
                          f"Attempt {attempt}/{attempts} failed: {e.message}")
                if context.token.wait(delay / 1000.0):
                    raise TaskCanceled(context.task_id)

    # ── Stage: downloading ────────────────────────────────────────────

    def _ytdlp_auth_args(self) -> list[str]:
        mode = self.config.get('ytdlp_auth_mode', YtdlpAuthMode.NONE)
        if mode == YtdlpAuthMode.BROWSER_COOKIES:
            return ["--cookies-from-browser", self.config.get('ytdlp_cookies_browser') or "chrome"]
        if mode == YtdlpAuthMode.COOKIES_FILE:
            cookies = Path(self.config.get('ytdlp_cookies_file') or "")
            if not cookies.is_file():
                raise PipelineError(ErrorCode.CONFIG_INVALID,
                                    f"Cookies file not found: {cookies}", retryable=False)
            return ["--cookies", str(cookies)]
        return []

    def _execute_downloading(self, context: RunContext):
        task = self.db.get_task(context.task_id)
        printed: list[str] = []
        last_percent = [-1]

        def on_line(line: str):
            context.log_tail.append(line)
            percent = parse_percent(line) if line.startswith("[download]") else None
            if percent is not None and int(percent) != last_percent[0]:
                last_percent[0] = int(percent)
                self._progress(context, Stage.DOWNLOADING,
                               self._stage_percent(Stage.DOWNLOADING, percent / 100.0),
                               f"Downloading {percent:.0f}%")
            elif not line.startswith("["):
                printed.append(line)

        base_args = [
            self.toolchain.ytdlp_path,
            "--newline", "--progress", "--no-playlist",
            "-f", "bv*+ba/b",
            "--merge-output-format", "mp4",
            "-o", str(context.task_dir / "source.%(ext)s"),
            "--print", "after_move:filepath",
        ] + self._ytdlp_auth_args()

        def attempt():
            printed.clear()
            try:
                self._run_tool(context, Stage.DOWNLOADING, base_args + [task.source_url],
                               on_stdout_line=on_line, on_stderr_line=on_line)
            except PipelineError as e:
                excerpt = getattr(e, "output_excerpt", "").lower()
                if e.code != ErrorCode.COMMAND_FAILED or not any(
                        marker in excerpt for marker in YTDLP_FORMAT_ERROR_MARKERS):
                    raise
                self._log(context, Stage.DOWNLOADING, "warn",
                          "Retrying yt-dlp with fallback extractor args: youtube:player_client=tv")
                printed.clear()
                self._run_tool(context, Stage.DOWNLOADING,
                               base_args + YTDLP_TV_CLIENT_ARGS + [task.source_url],
                               on_stdout_line=on_line, on_stderr_line=on_line)

        self._with_retries(context, Stage.DOWNLOADING, attempt)

        video_path = None
        for line in reversed(printed):
            candidate = Path(line)
            if candidate.is_file():
                video_path = candidate
                break
        if video_path is None:
            matches = sorted(p for p in context.task_dir.glob("source.*")
                             if p.suffix not in (".part", ".ytdl"))
            video_path = matches[0] if matches else None
        if video_path is None:
            raise PipelineError(ErrorCode.ARTIFACT_MISSING,
                                "yt-dlp finished but no video file was produced", retryable=False)
        self._record_artifact(context, ArtifactType.VIDEO, video_path, "video/mp4")

    # ── Stage: extracting ─────────────────────────────────────────────

    def _execute_extracting(self, context: RunContext):
        if context.video_path is None:
            raise PipelineError(ErrorCode.ARTIFACT_MISSING, "video path is missing",
                                retryable=False)
        output = context.task_dir / "audio.wav"
        args = [
            self.toolchain.ffmpeg_path, "-y",
            "-i", str(context.video_path),
            "-vn",
            "-ac", str(EXTRACT_CHANNELS),
            "-ar", str(EXTRACT_SAMPLE_RATE),
            str(output),
        ]
        self._with_retries(context, Stage.EXTRACTING,
                           lambda: self._run_tool(context, Stage.EXTRACTING, args))
        self._record_artifact(context, ArtifactType.AUDIO, output, "audio/wav")

    # ── Stage: transcribing ───────────────────────────────────────────

    def _execute_transcribing(self, context: RunContext):
        if context.audio_path is None:
            raise PipelineError(ErrorCode.ARTIFACT_MISSING, "audio path is missing",
                                retryable=False)
        task = self.db.get_task(context.task_id)
        model = task.whisper_model or self.config.get('whisper_model')
        device = select_whisper_device(self.toolchain.capabilities, model)
        cache_dir = self.data_root / "cache"
        model_dir = cache_dir / "whisper"
        model_dir.mkdir(parents=True, exist_ok=True)

        def build_args(selected: str) -> list:
            args = [
                self.toolchain.python_path, "-m", "whisper", str(context.audio_path),
                "--model", model,
                "--model_dir", str(model_dir),
                "--device", selected,
                "--output_dir", str(context.task_dir),
                "--output_format", "all",
            ]
            if selected == "cpu":
                args += ["--fp16", "False"]
            if task.source_language:
                args += ["--language", task.source_language]
            return args

        env = dict(os.environ, XDG_CACHE_HOME=str(cache_dir))

        def on_stderr(line: str):
            self._log(context, Stage.TRANSCRIBING, "info", line)

        def attempt():
            try:
                self._run_tool(context, Stage.TRANSCRIBING, build_args(device), env=env,
                               on_stderr_line=on_stderr)
            except PipelineError:
                if device == "cpu":
                    raise
                self._log(context, Stage.TRANSCRIBING, "warn",
                          f"Whisper {device} failed, retrying with CPU")
                self._run_tool(context, Stage.TRANSCRIBING, build_args("cpu"), env=env,
                               on_stderr_line=on_stderr)

        self._log(context, Stage.TRANSCRIBING, "info", f"Whisper device selected: {device}")
        self._with_retries(context, Stage.TRANSCRIBING, attempt)

        stem = context.audio_path.stem
        transcript = context.task_dir / f"{stem}.txt"
        if not transcript.exists():
            raise PipelineError(ErrorCode.ARTIFACT_MISSING,
                                f"Whisper produced no transcript at {transcript}",
                                retryable=False)
        self._record_artifact(context, ArtifactType.TRANSCRIPT, transcript, "text/plain")

        if not task.source_language:
            language = _detected_language(context.task_dir / f"{stem}.json")
            if language:
                self.db.update_task(context.task_id, source_language=language)

    # ── Segmented stages ──────────────────────────────────────────────

    def _prepare_segments(self, context: RunContext, stage: str, text: str) -> list[Segment]:
        """Segment the stage input and reuse or replace the stored segment set."""
        task = self.db.get_task(context.task_id)
        options = {**self.config.segmentation_options(), **task.segmentation_options_dict()}
        chunks = segment(text, task.segmentation_strategy, options)
        if not chunks:
            raise PipelineError(ErrorCode.EMPTY_INPUT, f"No text to process in {stage}",
                                retryable=False)
        assert_segment_integrity(text, chunks)

        existing = self.db.list_segments(context.task_id, stage)
        reason = None
        if context.reset_segments and stage == context.resume_stage:
            reason = "restart requested"
        elif len(existing) != len(chunks):
            reason = f"segment count changed ({len(existing)} -> {len(chunks)})"
        elif any(old.source_text != new.text for old, new in zip(existing, chunks)):
            reason = "segment text changed"
        else:
            latest = self.db.get_latest_snapshot(context.task_id, stage)
            if latest and not is_compatible(latest.payload_dict(),
                                                 context.config_snapshots[stage]):
                reason = "configuration changed since last checkpoint"

        if reason is None:
            logger.info("Reusing %d %s segments for task %s", len(existing), stage,
                        context.task_id)
            return existing

        if existing:
            logger.info("Replacing %s segments for task %s: %s", stage, context.task_id, reason)
        return self.db.replace_segments(context.task_id, stage, chunks)

    @staticmethod
    def _select_segments(context: RunContext, stage: str, segments: list[Segment]) -> list[Segment]:
        if context.retry_segment_ids and stage == context.resume_stage:
            return [s for s in segments
                    if s.id in context.retry_segment_ids
                    or s.status in (SegmentStatus.PENDING, SegmentStatus.RUNNING)]
        return [s for s in segments if s.status != SegmentStatus.SUCCESS]

    def _process_segment(self, context: RunContext, stage: str, seg: Segment, total: int,
                         work: Callable[[Segment], str], segment_code: str) -> bool:
        """Run one segment with retries. Returns False if it ended failed."""
        attempts = self.config.retry_attempts(stage)
        attempt = 0
        while True:
            attempt += 1
            context.token.raise_if_canceled()
            self.db.mark_segment_running(seg.id)
            try:
                result = work(seg)
            except TaskCanceled:
                self.db.update_segment(seg.id, status=SegmentStatus.PENDING)
                raise
            except Exception as e:
                if context.token.is_canceled():
                    self.db.update_segment(seg.id, status=SegmentStatus.PENDING)
                    raise TaskCanceled(context.task_id)
                code = e.code if isinstance(e, PipelineError) else ErrorCode.UNEXPECTED
                detail = e.message if isinstance(e, PipelineError) else str(e)
                retryable = classify_error(code, detail) == "retryable" and (
                    e.retryable if isinstance(e, PipelineError) else True)
                if not isinstance(e, PipelineError):
                    logger.error("Segment %s raised: %s", seg.id, e, exc_info=True)
                self.db.mark_segment_failed(seg.id, segment_code, str(e),
                                            increment_retry=retryable)
                self.events.segment_failed.emit(SegmentFailedEvent(
                    task_id=context.task_id, stage=stage, segment_id=seg.id,
                    segment_index=seg.segment_index, error_code=segment_code,
                    error_message=truncate_message(str(e)), retryable=retryable,
                    attempt=attempt))
                if retryable and attempt < attempts:
                    delay = backoff_delay_ms(attempt, self.config.get('retry_base_delay_ms'),
                                             self.config.get('retry_max_delay_ms'))
                    logger.warning("Segment %d of %s failed (%s), retry %d/%d in %dms",
                                   seg.segment_index, stage, code, attempt + 1, attempts, delay)
                    if context.token.wait(delay / 1000.0):
                        self.db.update_segment(seg.id, status=SegmentStatus.PENDING)
                        raise TaskCanceled(context.task_id)
                    continue
                self._log(context, stage, "error",
                          f"Segment {seg.segment_index} failed after {attempt} attempt(s): {e}")
                return False

            self.db.mark_segment_success(seg.id, result)
            self.checkpoints.save_segment_checkpoint(context.task_id, stage, seg.id,
                                                     context.config_snapshots[stage])
            with context.progress_lock:
                context.segments_done += 1
                done = context.segments_done
            self.events.segment_progress.emit(SegmentProgressEvent(
                task_id=context.task_id, stage=stage, segment_id=seg.id,
                segment_index=seg.segment_index, status=SegmentStatus.SUCCESS,
                completed=done, total=total))
            self._progress(context, stage, self._stage_percent(stage, done / total),
                           f"{stage} {done}/{total}")
            return True

    def _begin_segment_pass(self, context: RunContext, segments: list[Segment]):
        context.segments_done = sum(1 for s in segments if s.status == SegmentStatus.SUCCESS)

    # ── Stage: translating ────────────────────────────────────────────

    def _execute_translating(self, context: RunContext):
        if context.transcript_path is None:
            raise PipelineError(ErrorCode.ARTIFACT_MISSING, "transcript path is missing",
                                retryable=False)
        task = self.db.get_task(context.task_id)
        source_text = context.transcript_path.read_text(encoding="utf-8")
        segments = self._prepare_segments(context, Stage.TRANSLATING, source_text)
        targets = self._select_segments(context, Stage.TRANSLATING, segments)
        self._begin_segment_pass(context, [s for s in segments if s not in targets])
        total = len(segments)
        snapshot = context.config_snapshots[Stage.TRANSLATING]

        def translate(seg: Segment) -> str:
            return self.translator.translate(seg.source_text, task.target_language)

        # strictly sequential; stop at the first segment that exhausts its attempts
        for seg in targets:
            context.token.raise_if_canceled()
            if not self._process_segment(context, Stage.TRANSLATING, seg, total,
                                         translate, ErrorCode.TRANSLATE_SEGMENT_FAILED):
                self.checkpoints.save_failure_checkpoint(context.task_id, Stage.TRANSLATING,
                                                         snapshot)
                raise PipelineError(ErrorCode.TRANSLATE_SEGMENT_FAILED,
                                    f"Segment {seg.segment_index} could not be translated",
                                    retryable=False)

        final = self.db.list_segments(context.task_id, Stage.TRANSLATING)
        unfinished = [s for s in final if s.status != SegmentStatus.SUCCESS]
        if unfinished:
            self.checkpoints.save_failure_checkpoint(context.task_id, Stage.TRANSLATING,
                                                     snapshot)
            raise PipelineError(ErrorCode.TRANSLATE_SEGMENT_FAILED,
                                f"{len(unfinished)} segment(s) still untranslated",
                                retryable=False)

        output = context.task_dir / "translation.txt"
        output.write_text("\n".join(s.result_text or "" for s in final), encoding="utf-8")
        self._record_artifact(context, ArtifactType.TRANSLATION, output, "text/plain")

    # ── Stage: synthesizing ───────────────────────────────────────────

    def _execute_synthesizing(self, context: RunContext):
        if context.translation_path is None:
            raise PipelineError(ErrorCode.ARTIFACT_MISSING, "translation path is missing",
                                retryable=False)
        task = self.db.get_task(context.task_id)
        text = context.translation_path.read_text(encoding="utf-8")
        segments = self._prepare_segments(context, Stage.SYNTHESIZING, text)
        targets = self._select_segments(context, Stage.SYNTHESIZING, segments)
        self._begin_segment_pass(context, [s for s in segments if s not in targets])
        total = len(segments)
        tts_dir = context.task_dir / "tts"
        tts_dir.mkdir(parents=True, exist_ok=True)
        voice = task.tts_voice or self.config.get('tts_voice')

        def synthesize(seg: Segment) -> str:
            reference = self.synthesizer.synthesize(seg.source_text, voice=voice)
            context.token.raise_if_canceled()
            path = fetch_audio(reference, tts_dir / f"segment_{seg.segment_index:04d}.mp3")
            return str(path)

        claim_lock = threading.Lock()
        cursor = [0]
        failed: list[Segment] = []
        errors: list[BaseException] = []

        def worker(slot: int):
            while not context.token.is_canceled():
                # cursor advance and claim are one step
                with claim_lock:
                    if cursor[0] >= len(targets) or errors:
                        return
                    seg = targets[cursor[0]]
                    cursor[0] += 1
                try:
                    ok = self._process_segment(context, Stage.SYNTHESIZING, seg, total,
                                               synthesize, ErrorCode.TTS_SEGMENT_FAILED)
                except BaseException as e:
                    with claim_lock:
                        errors.append(e)
                    return
                if not ok:
                    with claim_lock:
                        failed.append(seg)

        workers = max(1, min(self.config.tts_concurrency, len(targets) or 1))
        threads = [threading.Thread(target=worker, args=(slot,), daemon=True,
                                    name=f"tts-{slot}")
                   for slot in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        context.token.raise_if_canceled()
        if errors:
            raise errors[0]

        final = self.db.list_segments(context.task_id, Stage.SYNTHESIZING)
        unfinished = [s for s in final if s.status != SegmentStatus.SUCCESS]
        if failed or unfinished:
            self.checkpoints.save_failure_checkpoint(
                context.task_id, Stage.SYNTHESIZING,
                context.config_snapshots[Stage.SYNTHESIZING])
            raise PipelineError(ErrorCode.TTS_SEGMENT_FAILED,
                                f"{len(unfinished)} of {total} segment(s) failed to synthesize",
                                retryable=False)

        manifest = tts_dir / "segments.txt"
        lines = []
        for s in final:
            escaped = str(Path(s.result_text).resolve()).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        manifest.write_text("\n".join(lines) + "\n", encoding="utf-8")
        self._record_artifact(context, ArtifactType.TTS, manifest, "text/plain")

    # ── Stage: merging ────────────────────────────────────────────────

    def _execute_merging(self, context: RunContext):
        if context.tts_manifest_path is None:
            raise PipelineError(ErrorCode.ARTIFACT_MISSING, "tts manifest is missing",
                                retryable=False)
        segments = self.db.list_segments(context.task_id, Stage.SYNTHESIZING)
        missing = [s.segment_index for s in segments
                   if s.status != SegmentStatus.SUCCESS
                   or not s.result_text or not Path(s.result_text).exists()]
        if not segments or missing:
            raise PipelineError(ErrorCode.ARTIFACT_MISSING,
                                f"Synthesized audio missing for segments {missing}",
                                retryable=False)

        output = context.task_dir / "tts.final.mp3"
        if len(segments) == 1:
            shutil.copyfile(segments[0].result_text, output)
        else:
            args = [
                self.toolchain.ffmpeg_path, "-y",
                "-f", "concat", "-safe", "0",
                "-i", str(context.tts_manifest_path),
                "-c", "copy",
                str(output),
            ]
            self._with_retries(context, Stage.MERGING,
                               lambda: self._run_tool(context, Stage.MERGING, args))
        self._record_artifact(context, ArtifactType.FINAL, output, "audio/mpeg")


def _detected_language(json_path: Path) -> str | None:
    try:
        with open(json_path, 'r', encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Could not read Whisper output %s: %s", json_path, e)
        return None
    language = data.get("language") if isinstance(data, dict) else None
    return language.strip() if isinstance(language, str) and language.strip() else None
