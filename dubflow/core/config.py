"""
Application configuration manager.
Stores settings in a JSON file under the DubFlow data directory.
"""

import json
import logging
from pathlib import Path

from dubflow.core.constants import (
    CONFIG_PATH, APP_DATA_DIR, SegmentationStrategy, SEGMENTATION_STRATEGIES,
    DEFAULT_MAX_CHARS_PER_SEGMENT, MIN_MAX_CHARS_PER_SEGMENT,
    DEFAULT_TARGET_SEGMENT_LENGTH, MIN_TARGET_SEGMENT_LENGTH,
    DEFAULT_TARGET_DURATION_SEC, MIN_TARGET_DURATION_SEC,
    DEFAULT_RETRY_POLICY, DEFAULT_RETRY_BASE_DELAY_MS, DEFAULT_RETRY_MAX_DELAY_MS,
    DEFAULT_STAGE_TIMEOUT_MS, DEFAULT_TTS_CONCURRENCY, MAX_TTS_CONCURRENCY,
    DEFAULT_STALE_TIMEOUT_MS, MIN_STALE_TIMEOUT_MS, DEFAULT_FAILURE_PAUSE_THRESHOLD,
    DEFAULT_WHISPER_MODEL, DEFAULT_TARGET_LANGUAGE,
    DEFAULT_TRANSLATE_BASE_URL, DEFAULT_TRANSLATE_MODEL,
    DEFAULT_TTS_BASE_URL, DEFAULT_TTS_MODEL, DEFAULT_TTS_VOICE,
    STAGE_RETRY_KEYS, YtdlpAuthMode, Stage, STAGES,
)

# Validation bounds
_RETRY_ATTEMPTS_MIN = 1
_RETRY_ATTEMPTS_MAX = 10
_STAGE_TIMEOUT_MIN = 30_000          # 30 seconds
_STAGE_TIMEOUT_MAX = 6 * 3600_000    # 6 hours

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'data_root': str(APP_DATA_DIR),
    'segmentation_strategy': SegmentationStrategy.PUNCTUATION,
    'max_chars_per_segment': DEFAULT_MAX_CHARS_PER_SEGMENT,
    'target_segment_length': DEFAULT_TARGET_SEGMENT_LENGTH,
    'target_duration_sec': DEFAULT_TARGET_DURATION_SEC,
    'retry_policy': dict(DEFAULT_RETRY_POLICY),
    'retry_base_delay_ms': DEFAULT_RETRY_BASE_DELAY_MS,
    'retry_max_delay_ms': DEFAULT_RETRY_MAX_DELAY_MS,
    'stage_timeout_ms': DEFAULT_STAGE_TIMEOUT_MS,
    'tts_concurrency': DEFAULT_TTS_CONCURRENCY,
    'stale_timeout_ms': DEFAULT_STALE_TIMEOUT_MS,
    'failure_pause_threshold': DEFAULT_FAILURE_PAUSE_THRESHOLD,
    'whisper_model': DEFAULT_WHISPER_MODEL,
    'target_language': DEFAULT_TARGET_LANGUAGE,
    'translate_provider': 'openai',
    'translate_base_url': DEFAULT_TRANSLATE_BASE_URL,
    'translate_model': DEFAULT_TRANSLATE_MODEL,
    'translate_api_key': '',
    'tts_provider': 'openai',
    'tts_base_url': DEFAULT_TTS_BASE_URL,
    'tts_model': DEFAULT_TTS_MODEL,
    'tts_voice': DEFAULT_TTS_VOICE,
    'tts_api_key': '',
    'ytdlp_auth_mode': YtdlpAuthMode.NONE,
    'ytdlp_cookies_browser': 'chrome',
    'ytdlp_cookies_file': '',
}


def _clamp_int(value, low: int, high: int | None, fallback: int, key: str) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r, using default", key, value)
        return fallback
    value = max(low, value)
    if high is not None:
        value = min(high, value)
    return value


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = json.loads(json.dumps(_DEFAULTS))
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Failed to load config: %s", e)
                return
            for key, value in saved.items():
                self._data[key] = self._validate(key, value)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def update(self, values: dict, persist: bool = True):
        for key, value in values.items():
            self._data[key] = self._validate(key, value)
        if persist:
            self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'segmentation_strategy':
            if value not in SEGMENTATION_STRATEGIES:
                logger.warning("Unknown segmentation_strategy %r, using punctuation", value)
                return SegmentationStrategy.PUNCTUATION
            return value

        if key == 'max_chars_per_segment':
            return _clamp_int(value, MIN_MAX_CHARS_PER_SEGMENT, None,
                              DEFAULT_MAX_CHARS_PER_SEGMENT, key)

        if key == 'target_segment_length':
            return _clamp_int(value, MIN_TARGET_SEGMENT_LENGTH, None,
                              DEFAULT_TARGET_SEGMENT_LENGTH, key)

        if key == 'target_duration_sec':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid target_duration_sec %r, using default", value)
                return DEFAULT_TARGET_DURATION_SEC
            return max(MIN_TARGET_DURATION_SEC, value)

        if key == 'retry_policy':
            policy = dict(DEFAULT_RETRY_POLICY)
            if isinstance(value, dict):
                for name, attempts in value.items():
                    policy[name] = _clamp_int(attempts, _RETRY_ATTEMPTS_MIN,
                                              _RETRY_ATTEMPTS_MAX,
                                              DEFAULT_RETRY_POLICY.get(name, 1),
                                              f"retry_policy.{name}")
            return policy

        if key == 'retry_base_delay_ms':
            return _clamp_int(value, 0, 60_000, DEFAULT_RETRY_BASE_DELAY_MS, key)

        if key == 'retry_max_delay_ms':
            return _clamp_int(value, 0, 600_000, DEFAULT_RETRY_MAX_DELAY_MS, key)

        if key == 'stage_timeout_ms':
            return _clamp_int(value, _STAGE_TIMEOUT_MIN, _STAGE_TIMEOUT_MAX,
                              DEFAULT_STAGE_TIMEOUT_MS, key)

        if key == 'tts_concurrency':
            return _clamp_int(value, 1, MAX_TTS_CONCURRENCY, DEFAULT_TTS_CONCURRENCY, key)

        if key == 'stale_timeout_ms':
            return _clamp_int(value, MIN_STALE_TIMEOUT_MS, None, DEFAULT_STALE_TIMEOUT_MS, key)

        if key == 'failure_pause_threshold':
            return _clamp_int(value, 1, 100, DEFAULT_FAILURE_PAUSE_THRESHOLD, key)

        if key == 'ytdlp_auth_mode':
            if value not in (YtdlpAuthMode.NONE, YtdlpAuthMode.BROWSER_COOKIES,
                             YtdlpAuthMode.COOKIES_FILE):
                logger.warning("Invalid ytdlp_auth_mode %r, using none", value)
                return YtdlpAuthMode.NONE

        return value

    def as_dict(self) -> dict:
        return json.loads(json.dumps(self._data))

    # ── Derived settings ──────────────────────────────────────────────

    def retry_attempts(self, stage: str) -> int:
        """Total attempts allowed per unit of work in the given stage."""
        key = STAGE_RETRY_KEYS.get(stage, stage)
        policy = self._data.get('retry_policy') or {}
        return max(_RETRY_ATTEMPTS_MIN, int(policy.get(key, DEFAULT_RETRY_POLICY.get(key, 1))))

    def segmentation_options(self) -> dict:
        return {
            'max_chars_per_segment': self._data.get('max_chars_per_segment'),
            'target_segment_length': self._data.get('target_segment_length'),
            'target_duration_sec': self._data.get('target_duration_sec'),
        }

    def comparable_snapshot(self, task=None, stage: str | None = None) -> dict:
        """
        The subset of settings that changes segment boundaries or output
        of `stage` (every segmented stage when None). Checkpoints taken
        under a different snapshot are not safe to resume.

        Speech settings only count from synthesizing onward, so a voice
        change leaves translation checkpoints valid.
        """
        strategy = self.segmentation_strategy
        options = self.segmentation_options()
        target_language = self.target_language
        if task is not None:
            strategy = task.segmentation_strategy or strategy
            options = {**options, **task.segmentation_options_dict()}
            target_language = task.target_language or target_language
        snapshot = {
            'segmentation_strategy': strategy,
            'segmentation_options': options,
            'target_language': target_language,
            'translate_model': (task.translate_model_id if task is not None else None)
                               or self.get('translate_model'),
        }
        if stage is None or STAGES.index(stage) >= STAGES.index(Stage.SYNTHESIZING):
            snapshot['tts_model'] = ((task.tts_model_id if task is not None else None)
                                     or self.get('tts_model'))
            snapshot['tts_voice'] = ((task.tts_voice if task is not None else None)
                                     or self.get('tts_voice'))
        return snapshot

    @property
    def data_root(self) -> Path:
        return Path(self._data.get('data_root', str(APP_DATA_DIR)))

    @property
    def segmentation_strategy(self) -> str:
        return self._data.get('segmentation_strategy', SegmentationStrategy.PUNCTUATION)

    @property
    def target_language(self) -> str:
        return self._data.get('target_language', DEFAULT_TARGET_LANGUAGE)

    @property
    def tts_concurrency(self) -> int:
        return self._data.get('tts_concurrency', DEFAULT_TTS_CONCURRENCY)

    @property
    def stage_timeout_sec(self) -> float:
        return self._data.get('stage_timeout_ms', DEFAULT_STAGE_TIMEOUT_MS) / 1000.0
