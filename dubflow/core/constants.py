"""
Shared constants for DubFlow.
Imported by every other module.
"""

import os
import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "DubFlow"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_DATA_DIR = pathlib.Path(os.environ.get("DUBFLOW_HOME", HOME / ".dubflow"))
TASKS_DIR = APP_DATA_DIR / "tasks"
LOG_DIR = APP_DATA_DIR / "logs"
DB_PATH = APP_DATA_DIR / "app.db"
CONFIG_PATH = APP_DATA_DIR / "config.json"

# ── Task status values ────────────────────────────────────────────────
class TaskStatus:
    IDLE = "idle"
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    TRANSCRIBING = "transcribing"
    TRANSLATING = "translating"
    SYNTHESIZING = "synthesizing"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

# ── Pipeline stages (ordered) ─────────────────────────────────────────
class Stage:
    DOWNLOADING = TaskStatus.DOWNLOADING
    EXTRACTING = TaskStatus.EXTRACTING
    TRANSCRIBING = TaskStatus.TRANSCRIBING
    TRANSLATING = TaskStatus.TRANSLATING
    SYNTHESIZING = TaskStatus.SYNTHESIZING
    MERGING = TaskStatus.MERGING

STAGES = (
    Stage.DOWNLOADING,
    Stage.EXTRACTING,
    Stage.TRANSCRIBING,
    Stage.TRANSLATING,
    Stage.SYNTHESIZING,
    Stage.MERGING,
)

SEGMENTED_STAGES = (Stage.TRANSLATING, Stage.SYNTHESIZING)

# Statuses during which a task counts as "in flight"
RUNNING_STATUSES = (TaskStatus.QUEUED,) + STAGES

TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELED)

STAGE_ALIASES = {
    "download": Stage.DOWNLOADING,
    "extract": Stage.EXTRACTING,
    "transcribe": Stage.TRANSCRIBING,
    "transcription": Stage.TRANSCRIBING,
    "translate": Stage.TRANSLATING,
    "translation": Stage.TRANSLATING,
    "tts": Stage.SYNTHESIZING,
    "synthesize": Stage.SYNTHESIZING,
    "synthesis": Stage.SYNTHESIZING,
    "merge": Stage.MERGING,
}

# Retry policy keys used in config for each stage
STAGE_RETRY_KEYS = {
    Stage.DOWNLOADING: "download",
    Stage.EXTRACTING: "extract",
    Stage.TRANSCRIBING: "transcribe",
    Stage.TRANSLATING: "translate",
    Stage.SYNTHESIZING: "tts",
    Stage.MERGING: "merge",
}

# ── Stage run / segment / queue status ────────────────────────────────
class StageRunStatus:
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

class SegmentStatus:
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

class QueueStatus:
    WAITING = "waiting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    REMOVED = "removed"

QUEUE_TERMINAL_STATUSES = (QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.REMOVED)

# ── Artifacts ─────────────────────────────────────────────────────────
class ArtifactType:
    VIDEO = "video"
    AUDIO = "audio"
    TRANSCRIPT = "transcript"
    TRANSLATION = "translation"
    TTS = "tts"
    FINAL = "final"

# Input each stage reads when a run starts there
STAGE_REQUIRED_ARTIFACT = {
    Stage.EXTRACTING: ArtifactType.VIDEO,
    Stage.TRANSCRIBING: ArtifactType.AUDIO,
    Stage.TRANSLATING: ArtifactType.TRANSCRIPT,
    Stage.SYNTHESIZING: ArtifactType.TRANSLATION,
    Stage.MERGING: ArtifactType.TTS,
}

# ── Segmentation ──────────────────────────────────────────────────────
class SegmentationStrategy:
    PUNCTUATION = "punctuation"
    SENTENCE = "sentence"
    DURATION = "duration"

SEGMENTATION_STRATEGIES = (
    SegmentationStrategy.PUNCTUATION,
    SegmentationStrategy.SENTENCE,
    SegmentationStrategy.DURATION,
)

DEFAULT_MAX_CHARS_PER_SEGMENT = 220
MIN_MAX_CHARS_PER_SEGMENT = 40
DEFAULT_TARGET_SEGMENT_LENGTH = 260
MIN_TARGET_SEGMENT_LENGTH = 60
DEFAULT_TARGET_DURATION_SEC = 8
MIN_TARGET_DURATION_SEC = 4
MIN_DURATION_CHARS = 30
CHARS_PER_SECOND = 4

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Stage failures
    DOWNLOADING_FAILED = "E_DOWNLOADING_FAILED"
    EXTRACTING_FAILED = "E_EXTRACTING_FAILED"
    TRANSCRIBING_FAILED = "E_TRANSCRIBING_FAILED"
    TRANSLATING_FAILED = "E_TRANSLATING_FAILED"
    SYNTHESIZING_FAILED = "E_SYNTHESIZING_FAILED"
    MERGING_FAILED = "E_MERGING_FAILED"

    # Segment failures
    TRANSLATE_SEGMENT_FAILED = "E_TRANSLATE_SEGMENT_FAILED"
    TTS_SEGMENT_FAILED = "E_TTS_SEGMENT_FAILED"

    # Non-retryable
    SEGMENT_INTEGRITY = "E_SEGMENT_INTEGRITY"
    CONFIG_INVALID = "E_CONFIG_INVALID"
    PROVIDER_AUTH = "E_PROVIDER_AUTH"
    TOOL_MISSING = "E_TOOL_MISSING"
    ARTIFACT_MISSING = "E_ARTIFACT_MISSING"
    EMPTY_INPUT = "E_EMPTY_INPUT"

    # Retryable
    NETWORK = "E_NETWORK"
    PROVIDER_TIMEOUT = "E_PROVIDER_TIMEOUT"
    RATE_LIMITED = "E_RATE_LIMITED"
    PROVIDER_FAILED = "E_PROVIDER_FAILED"
    COMMAND_FAILED = "E_COMMAND_FAILED"
    COMMAND_TIMEOUT = "E_COMMAND_TIMEOUT"

    # Task / queue
    TASK_FAILED = "E_TASK_FAILED"
    TASK_CANCELED = "E_TASK_CANCELED"
    QUEUE_REMOVED = "E_QUEUE_REMOVED"
    QUEUE_START_REJECTED = "E_QUEUE_START_REJECTED"
    UNEXPECTED = "E_UNEXPECTED"

RETRYABLE_ERRORS = {
    ErrorCode.NETWORK,
    ErrorCode.PROVIDER_TIMEOUT,
    ErrorCode.RATE_LIMITED,
    ErrorCode.PROVIDER_FAILED,
    ErrorCode.COMMAND_FAILED,
    ErrorCode.COMMAND_TIMEOUT,
}

# Code prefixes that always indicate a transient failure
TRANSIENT_CODE_PREFIXES = ("E_NETWORK", "E_PROVIDER_TIMEOUT", "E_RATE_LIMIT", "E_COMMAND_TIMEOUT")

MAX_ERROR_MESSAGE_LEN = 2000


def stage_error_code(stage: str) -> str:
    return f"E_{stage.upper()}_FAILED"

# ── Execution defaults ────────────────────────────────────────────────
DEFAULT_RETRY_POLICY = {
    "download": 2,
    "extract": 1,
    "transcribe": 2,
    "translate": 2,
    "tts": 2,
    "merge": 1,
}
DEFAULT_RETRY_BASE_DELAY_MS = 1000
DEFAULT_RETRY_MAX_DELAY_MS = 15000
DEFAULT_STAGE_TIMEOUT_MS = 10 * 60 * 1000
DEFAULT_TTS_CONCURRENCY = 2
MAX_TTS_CONCURRENCY = 3
CANCEL_POLL_INTERVAL_SEC = 0.12
OUTPUT_TAIL_LINES = 12

# ── Queue defaults ────────────────────────────────────────────────────
DEFAULT_STALE_TIMEOUT_MS = 10 * 60 * 1000
MIN_STALE_TIMEOUT_MS = 1000
DEFAULT_FAILURE_PAUSE_THRESHOLD = 3
MAX_DEQUEUE_LIMIT = 20
QUEUE_POLL_INTERVAL_SEC = 0.5

# ── Downloads ─────────────────────────────────────────────────────────
class YtdlpAuthMode:
    NONE = "none"
    BROWSER_COOKIES = "browser_cookies"
    COOKIES_FILE = "cookies_file"

YTDLP_TV_CLIENT_ARGS = ["--extractor-args", "youtube:player_client=tv"]
YTDLP_FORMAT_ERROR_MARKERS = (
    "requested format is not available",
    "only images are available",
    "sign in to confirm",
    "http error 403",
)

# ── Transcription / audio ─────────────────────────────────────────────
DEFAULT_WHISPER_MODEL = "base"
SMALL_WHISPER_MODELS = ("tiny", "tiny.en", "base", "base.en")
EXTRACT_SAMPLE_RATE = 16000
EXTRACT_CHANNELS = 1

# ── Progress mapping ─────────────────────────────────────────────────
PROGRESS_STAGE_START = {
    Stage.DOWNLOADING: 0,
    Stage.EXTRACTING: 20,
    Stage.TRANSCRIBING: 30,
    Stage.TRANSLATING: 50,
    Stage.SYNTHESIZING: 70,
    Stage.MERGING: 90,
}
PROGRESS_COMPLETE = 100

# ── Providers ─────────────────────────────────────────────────────────
DEFAULT_TARGET_LANGUAGE = "zh"
DEFAULT_TRANSLATE_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TRANSLATE_MODEL = "gpt-4o-mini"
DEFAULT_TTS_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TTS_MODEL = "tts-1"
DEFAULT_TTS_VOICE = "alloy"
PROVIDER_REQUEST_TIMEOUT_SEC = 120
