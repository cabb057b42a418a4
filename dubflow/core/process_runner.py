"""
Safe child-process execution for external tools (yt-dlp, ffmpeg, whisper).

- Argument arrays only; shell=True is never used
- stdout/stderr streamed as trimmed, non-empty lines to callbacks
- Cooperative cancellation polled on an interval
- Per-invocation timeout that terminates the process
"""

import collections
import subprocess
import threading
import time
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from dubflow.core.constants import CANCEL_POLL_INTERVAL_SEC, OUTPUT_TAIL_LINES

logger = logging.getLogger(__name__)

_TERMINATE_GRACE_SEC = 3


@dataclass
class CommandResult:
    args: list
    returncode: int
    stdout_lines: list = field(default_factory=list)
    stderr_lines: list = field(default_factory=list)

    @property
    def stdout(self) -> str:
        return "\n".join(self.stdout_lines)

    @property
    def stderr(self) -> str:
        return "\n".join(self.stderr_lines)


class CommandError(Exception):
    """Non-zero exit. Carries the trailing output of both streams."""

    def __init__(self, args: list, returncode: int, stdout_tail: list, stderr_tail: list):
        self.args_list = list(args)
        self.returncode = returncode
        self.stdout_tail = list(stdout_tail)
        self.stderr_tail = list(stderr_tail)
        tail = self.stderr_tail or self.stdout_tail
        detail = " | ".join(tail[-3:]) if tail else "no output"
        super().__init__(f"{Path(str(args[0])).name} exited with code {returncode}: {detail}")

    @property
    def output_excerpt(self) -> str:
        return "\n".join(self.stderr_tail + self.stdout_tail)


class CommandTimeout(Exception):
    def __init__(self, args: list, timeout: float):
        self.args_list = list(args)
        self.timeout = timeout
        super().__init__(f"{Path(str(args[0])).name} timed out after {timeout:.0f}s")


class CommandCanceled(Exception):
    def __init__(self, args: list):
        self.args_list = list(args)
        super().__init__(f"{Path(str(args[0])).name} canceled")


def _pump(stream, sink: list, tail: collections.deque,
          callback: Optional[Callable[[str], None]]):
    for raw in iter(stream.readline, ''):
        line = raw.strip()
        if not line:
            continue
        sink.append(line)
        tail.append(line)
        if callback:
            try:
                callback(line)
            except Exception as e:
                logger.warning("Line callback raised: %s", e)
    stream.close()


def _terminate(proc: subprocess.Popen):
    proc.terminate()
    try:
        proc.wait(timeout=_TERMINATE_GRACE_SEC)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def run_command(args: list[str],
                cwd: Path | None = None,
                env: dict | None = None,
                on_stdout_line: Optional[Callable[[str], None]] = None,
                on_stderr_line: Optional[Callable[[str], None]] = None,
                cancel_token=None,
                timeout: float | None = None) -> CommandResult:
    """
    Run a command to completion. Raises CommandError, CommandTimeout or
    CommandCanceled; FileNotFoundError propagates when the binary is missing.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Command args must be a list/tuple, not a string")
    args = [str(a) for a in args]

    logger.debug("Running command: %s", ' '.join(args))
    if cancel_token is not None and cancel_token.is_canceled():
        raise CommandCanceled(args)

    proc = subprocess.Popen(
        args,
        cwd=str(cwd) if cwd else None,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
        shell=False,
    )

    stdout_lines: list = []
    stderr_lines: list = []
    stdout_tail = collections.deque(maxlen=OUTPUT_TAIL_LINES)
    stderr_tail = collections.deque(maxlen=OUTPUT_TAIL_LINES)
    readers = [
        threading.Thread(target=_pump, args=(proc.stdout, stdout_lines, stdout_tail, on_stdout_line),
                         daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, stderr_lines, stderr_tail, on_stderr_line),
                         daemon=True),
    ]
    for reader in readers:
        reader.start()

    deadline = time.monotonic() + timeout if timeout else None
    outcome = None
    while True:
        try:
            proc.wait(timeout=CANCEL_POLL_INTERVAL_SEC)
            break
        except subprocess.TimeoutExpired:
            pass
        if cancel_token is not None and cancel_token.is_canceled():
            outcome = "canceled"
        elif deadline is not None and time.monotonic() >= deadline:
            outcome = "timeout"
        if outcome:
            logger.warning("Terminating %s (%s)", args[0], outcome)
            _terminate(proc)
            break

    for reader in readers:
        reader.join(timeout=_TERMINATE_GRACE_SEC)

    if outcome == "canceled":
        raise CommandCanceled(args)
    if outcome == "timeout":
        raise CommandTimeout(args, timeout)
    if proc.returncode != 0:
        raise CommandError(args, proc.returncode, list(stdout_tail), list(stderr_tail))

    return CommandResult(args=args, returncode=proc.returncode,
                         stdout_lines=stdout_lines, stderr_lines=stderr_lines)
