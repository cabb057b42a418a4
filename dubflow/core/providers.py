"""
Translation and speech-synthesis provider clients.

Both talk to OpenAI-compatible HTTP APIs with requests. Transport and HTTP
failures are mapped onto PipelineError codes so the engine can decide
between retrying a segment and failing it outright. Retrying itself is the
engine's job; these clients make exactly one request per call.
"""

import json
import shutil
import uuid
import logging
from pathlib import Path
from typing import Protocol

import requests

from dubflow.core.constants import (
    ErrorCode, PROVIDER_REQUEST_TIMEOUT_SEC,
    DEFAULT_TRANSLATE_BASE_URL, DEFAULT_TRANSLATE_MODEL,
    DEFAULT_TTS_BASE_URL, DEFAULT_TTS_MODEL, DEFAULT_TTS_VOICE,
)
from dubflow.core.error_codes import PipelineError

logger = logging.getLogger(__name__)


class Translator(Protocol):
    def translate(self, text: str, target_language: str) -> str: ...


class Synthesizer(Protocol):
    def synthesize(self, text: str, voice: str | None = None) -> str:
        """Return a URL or local file path for the synthesized audio."""
        ...


def _raise_for_response(resp: requests.Response, provider: str):
    if resp.status_code == 200:
        return
    # never echo request headers; the body is enough to diagnose
    body = resp.text[:300] if resp.text else "No response body"
    if resp.status_code == 429:
        raise PipelineError(ErrorCode.RATE_LIMITED,
                            f"{provider} rate limited (429): {body}", retryable=True)
    if resp.status_code in (401, 403):
        raise PipelineError(ErrorCode.PROVIDER_AUTH,
                            f"{provider} rejected credentials ({resp.status_code}): {body}",
                            retryable=False)
    if resp.status_code in (400, 404, 422):
        raise PipelineError(ErrorCode.CONFIG_INVALID,
                            f"{provider} rejected request ({resp.status_code}): {body}",
                            retryable=False)
    if resp.status_code in (408, 504):
        raise PipelineError(ErrorCode.PROVIDER_TIMEOUT,
                            f"{provider} timed out ({resp.status_code})", retryable=True)
    raise PipelineError(ErrorCode.PROVIDER_FAILED,
                        f"{provider} returned {resp.status_code}: {body}", retryable=True)


def _post(session: requests.Session, url: str, provider: str, timeout: float,
          **kwargs) -> requests.Response:
    try:
        resp = session.post(url, timeout=timeout, **kwargs)
    except requests.exceptions.Timeout:
        raise PipelineError(ErrorCode.PROVIDER_TIMEOUT,
                            f"{provider} request timed out", retryable=True)
    except requests.exceptions.ConnectionError:
        raise PipelineError(ErrorCode.NETWORK,
                            f"Network error connecting to {provider}", retryable=True)
    except requests.exceptions.RequestException as e:
        raise PipelineError(ErrorCode.PROVIDER_FAILED,
                            f"{provider} request failed: {e}", retryable=True)
    _raise_for_response(resp, provider)
    return resp


class ChatCompletionsTranslator:
    """Translates one segment per request via /chat/completions."""

    provider = "translator"

    def __init__(self, api_key: str, base_url: str = DEFAULT_TRANSLATE_BASE_URL,
                 model: str = DEFAULT_TRANSLATE_MODEL,
                 timeout: float = PROVIDER_REQUEST_TIMEOUT_SEC,
                 session: requests.Session | None = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    def translate(self, text: str, target_language: str) -> str:
        if not self.api_key:
            raise PipelineError(ErrorCode.CONFIG_INVALID,
                                "Translation API key is not configured", retryable=False)
        payload = {
            "model": self.model,
            "temperature": 0.2,
            "messages": [
                {"role": "system",
                 "content": ("You are a subtitle translator. Translate the user's text into "
                             f"{target_language}. Reply with the translation only.")},
                {"role": "user", "content": text},
            ],
        }
        resp = _post(
            self.session, f"{self.base_url}/chat/completions", self.provider, self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}",
                     "Content-Type": "application/json"},
            data=json.dumps(payload),
        )
        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise PipelineError(ErrorCode.PROVIDER_FAILED,
                                "Failed to parse translation response", retryable=True)
        translated = (content or "").strip()
        if not translated:
            raise PipelineError(ErrorCode.PROVIDER_FAILED,
                                "Translation response was empty", retryable=True)
        return translated


class HttpSpeechSynthesizer:
    """Synthesizes speech via /audio/speech and writes it under output_dir."""

    provider = "speech synthesizer"

    def __init__(self, api_key: str, output_dir: Path,
                 base_url: str = DEFAULT_TTS_BASE_URL,
                 model: str = DEFAULT_TTS_MODEL,
                 voice: str = DEFAULT_TTS_VOICE,
                 timeout: float = PROVIDER_REQUEST_TIMEOUT_SEC,
                 session: requests.Session | None = None):
        self.api_key = api_key
        self.output_dir = Path(output_dir)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.voice = voice
        self.timeout = timeout
        self.session = session or requests.Session()

    def synthesize(self, text: str, voice: str | None = None) -> str:
        if not self.api_key:
            raise PipelineError(ErrorCode.CONFIG_INVALID,
                                "Speech API key is not configured", retryable=False)
        resp = _post(
            self.session, f"{self.base_url}/audio/speech", self.provider, self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}",
                     "Content-Type": "application/json"},
            data=json.dumps({
                "model": self.model,
                "voice": voice or self.voice,
                "input": text,
                "response_format": "mp3",
            }),
        )
        if not resp.content:
            raise PipelineError(ErrorCode.PROVIDER_FAILED,
                                "Speech response contained no audio", retryable=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"{uuid.uuid4().hex}.mp3"
        with open(path, 'wb') as f:
            f.write(resp.content)
        return str(path)


def fetch_audio(reference: str, destination: Path,
                timeout: float = PROVIDER_REQUEST_TIMEOUT_SEC) -> Path:
    """Materialize an audio reference (URL or local path) at destination."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    if reference.startswith(("http://", "https://")):
        try:
            with requests.get(reference, stream=True, timeout=timeout) as resp:
                _raise_for_response(resp, "audio download")
                with open(destination, 'wb') as f:
                    for chunk in resp.iter_content(chunk_size=64 * 1024):
                        if chunk:
                            f.write(chunk)
        except requests.exceptions.Timeout:
            raise PipelineError(ErrorCode.PROVIDER_TIMEOUT,
                                "Audio download timed out", retryable=True)
        except requests.exceptions.ConnectionError:
            raise PipelineError(ErrorCode.NETWORK,
                                "Network error downloading synthesized audio", retryable=True)
        return destination

    source = Path(reference)
    if not source.exists():
        raise PipelineError(ErrorCode.PROVIDER_FAILED,
                            f"Synthesized audio not found: {source}", retryable=True)
    if source.resolve() != destination.resolve():
        shutil.move(str(source), str(destination))
    return destination
