#!/usr/bin/env python3
"""
Tests for child-process execution and toolchain helpers.
Uses the running interpreter as a portable child process.
"""

import sys
import time
import threading
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from dubflow.core.cancellation import CancelToken
from dubflow.core.process_runner import (
    run_command, CommandError, CommandTimeout, CommandCanceled,
)
from dubflow.core.toolchain import Capabilities, Toolchain, select_whisper_device


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class TestRunCommand(unittest.TestCase):

    def test_streams_trimmed_lines(self):
        seen = []
        result = run_command(
            _python("import sys\nprint('  one  ')\nprint('')\nprint('two')\n"
                    "print('err', file=sys.stderr)"),
            on_stdout_line=seen.append,
        )
        self.assertEqual(result.returncode, 0)
        self.assertEqual(result.stdout_lines, ["one", "two"])
        self.assertEqual(result.stderr_lines, ["err"])
        self.assertEqual(seen, ["one", "two"])

    def test_string_args_rejected(self):
        with self.assertRaises(TypeError):
            run_command("echo hi")

    def test_nonzero_exit(self):
        with self.assertRaises(CommandError) as ctx:
            run_command(_python("import sys\nprint('bad input', file=sys.stderr)\nsys.exit(3)"))
        self.assertEqual(ctx.exception.returncode, 3)
        self.assertEqual(ctx.exception.stderr_tail, ["bad input"])
        self.assertIn("bad input", str(ctx.exception))

    def test_tail_is_bounded(self):
        code = "import sys\nfor i in range(50): print(i)\nsys.exit(1)"
        with self.assertRaises(CommandError) as ctx:
            run_command(_python(code))
        self.assertEqual(len(ctx.exception.stdout_tail), 12)
        self.assertEqual(ctx.exception.stdout_tail[-1], "49")

    def test_timeout(self):
        started = time.monotonic()
        with self.assertRaises(CommandTimeout):
            run_command(_python("import time\ntime.sleep(30)"), timeout=0.5)
        self.assertLess(time.monotonic() - started, 10)

    def test_cancel(self):
        token = CancelToken("t")
        timer = threading.Timer(0.3, token.cancel)
        timer.start()
        try:
            with self.assertRaises(CommandCanceled):
                run_command(_python("import time\ntime.sleep(30)"), cancel_token=token)
        finally:
            timer.cancel()

    def test_precanceled_token_never_spawns(self):
        token = CancelToken("t")
        token.cancel()
        with self.assertRaises(CommandCanceled):
            run_command(["definitely-not-a-real-binary"], cancel_token=token)

    def test_missing_binary(self):
        with self.assertRaises(FileNotFoundError):
            run_command(["definitely-not-a-real-binary-xyz"])


class TestToolchain(unittest.TestCase):

    def test_device_selection(self):
        self.assertEqual(select_whisper_device(Capabilities(cuda_available=True), "base"), "cuda")
        self.assertEqual(select_whisper_device(Capabilities(), "large"), "cpu")
        mps = Capabilities(mps_available=True)
        self.assertEqual(select_whisper_device(mps, "base"), "cpu")
        self.assertEqual(select_whisper_device(mps, "medium"), "mps")

    def test_missing_tools(self):
        toolchain = Toolchain(ytdlp_path="", ffmpeg_path="/usr/bin/ffmpeg", python_path="")
        self.assertEqual(toolchain.missing(), ["yt-dlp", "python"])


if __name__ == "__main__":
    unittest.main()
