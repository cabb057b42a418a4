"""
Toolchain resolution and diagnostics.

Resolves the external binaries once per process (the bootstrap owns the
resulting handle and injects it into the engine) and probes the Python
runtime for Whisper acceleration.
"""

import json
import shutil
import sys
import logging
from dataclasses import dataclass, field
from pathlib import Path

from dubflow.core.constants import SMALL_WHISPER_MODELS
from dubflow.core.process_runner import run_command, CommandError, CommandTimeout

logger = logging.getLogger(__name__)

_PROBE_SCRIPT = (
    "import json\n"
    "try:\n"
    "    import torch\n"
    "    cuda = bool(torch.cuda.is_available())\n"
    "    mps = bool(getattr(torch.backends, 'mps', None) and torch.backends.mps.is_available())\n"
    "except Exception:\n"
    "    cuda = mps = False\n"
    "try:\n"
    "    import whisper  # noqa: F401\n"
    "    has_whisper = True\n"
    "except Exception:\n"
    "    has_whisper = False\n"
    "print(json.dumps({'cuda': cuda, 'mps': mps, 'whisper': has_whisper}))\n"
)


@dataclass
class Capabilities:
    cuda_available: bool = False
    mps_available: bool = False
    whisper_installed: bool = False


@dataclass
class Toolchain:
    ytdlp_path: str
    ffmpeg_path: str
    python_path: str
    capabilities: Capabilities = field(default_factory=Capabilities)

    def missing(self) -> list[str]:
        return [name for name, path in (("yt-dlp", self.ytdlp_path),
                                        ("ffmpeg", self.ffmpeg_path),
                                        ("python", self.python_path))
                if not path]


def select_whisper_device(capabilities: Capabilities, model: str | None) -> str:
    if capabilities.cuda_available:
        return "cuda"
    if not capabilities.mps_available:
        return "cpu"
    # small models run faster on CPU than through MPS scheduling
    if (model or "") in SMALL_WHISPER_MODELS:
        return "cpu"
    return "mps"


def probe_capabilities(python_path: str) -> Capabilities:
    try:
        result = run_command([python_path, "-c", _PROBE_SCRIPT], timeout=60)
    except (CommandError, CommandTimeout, FileNotFoundError) as e:
        logger.warning("Whisper runtime probe failed: %s", e)
        return Capabilities()
    try:
        data = json.loads(result.stdout_lines[-1]) if result.stdout_lines else {}
    except ValueError:
        logger.warning("Unexpected probe output: %s", result.stdout)
        data = {}
    return Capabilities(
        cuda_available=bool(data.get("cuda")),
        mps_available=bool(data.get("mps")),
        whisper_installed=bool(data.get("whisper")),
    )


def resolve_toolchain(python_path: str | None = None, probe: bool = True) -> Toolchain:
    """Locate yt-dlp, ffmpeg and the Python that runs Whisper."""
    python_path = python_path or shutil.which("python3") or sys.executable
    toolchain = Toolchain(
        ytdlp_path=shutil.which("yt-dlp") or "",
        ffmpeg_path=shutil.which("ffmpeg") or "",
        python_path=python_path,
    )
    if probe and python_path:
        toolchain.capabilities = probe_capabilities(python_path)
    logger.info("Toolchain: yt-dlp=%s ffmpeg=%s python=%s cuda=%s mps=%s",
                toolchain.ytdlp_path or "missing", toolchain.ffmpeg_path or "missing",
                toolchain.python_path, toolchain.capabilities.cuda_available,
                toolchain.capabilities.mps_available)
    return toolchain


# ── Diagnostics ───────────────────────────────────────────────────────

def _tool_version(args: list[str], first_line: bool = True) -> str:
    try:
        result = run_command(args, timeout=10)
    except FileNotFoundError:
        return "Not installed"
    except CommandError as e:
        return f"Error (rc={e.returncode})"
    except CommandTimeout:
        return "Error: timed out"
    lines = result.stdout_lines
    if not lines:
        return ""
    return lines[0] if first_line else result.stdout


def get_diagnostics(toolchain: Toolchain, cookies_path: Path | None = None) -> dict:
    """Gather tool versions and runtime capabilities."""
    cookies = {"detected": False, "path": str(cookies_path) if cookies_path else None}
    if cookies_path and cookies_path.exists():
        cookies["detected"] = True
    return {
        "ytdlp_version": _tool_version([toolchain.ytdlp_path or "yt-dlp", "--version"]),
        "ffmpeg_version": _tool_version([toolchain.ffmpeg_path or "ffmpeg", "-version"]),
        "python": toolchain.python_path,
        "cuda": toolchain.capabilities.cuda_available,
        "mps": toolchain.capabilities.mps_available,
        "whisper_installed": toolchain.capabilities.whisper_installed,
        "cookies": cookies,
    }
