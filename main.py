#!/usr/bin/env python3
"""
DubFlow v1.0.0. Main entry point.
Queues video URLs and drives them through the dubbing pipeline.
"""

import sys
import os
import logging
import traceback
from pathlib import Path
from datetime import datetime

import click

# ── Ensure Homebrew paths are in PATH ────────────────────────────────
# Shells started from launchers do not always source the user profile,
# so Homebrew's bin directories can be missing from PATH. yt-dlp and
# ffmpeg usually live there.
HOMEBREW_PATHS = [
    "/opt/homebrew/bin",          # Apple Silicon default
    "/opt/homebrew/sbin",
    "/usr/local/bin",             # Intel Mac default
    "/usr/local/sbin",
    os.path.expanduser("~/.local/bin"),
]

current_path = os.environ.get("PATH", "")
for p in HOMEBREW_PATHS:
    if os.path.isdir(p) and p not in current_path:
        current_path = p + os.pathsep + current_path
os.environ["PATH"] = current_path

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dubflow.core.constants import (  # noqa: E402
    APP_NAME, APP_VERSION, LOG_DIR, SEGMENTATION_STRATEGIES,
)

# ── Logging setup (writes to ~/.dubflow/logs/) ────────────────────────
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_FILE = LOG_DIR / "dubflow.log"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.FileHandler(LOG_FILE, encoding="utf-8"),
    ],
)
logger = logging.getLogger("dubflow")


def check_prerequisites(toolchain):
    """Exit with an install hint when yt-dlp or ffmpeg is missing."""
    hints = {
        "yt-dlp": "yt-dlp (install with: brew install yt-dlp)",
        "ffmpeg": "ffmpeg (install with: brew install ffmpeg)",
        "python": "python3 with openai-whisper (pip install openai-whisper)",
    }
    missing = [hints[name] for name in toolchain.missing()]
    if missing:
        logger.error("Missing tools. PATH = %s", os.environ.get("PATH", ""))
        click.echo("Missing required tools:\n\n" + "\n".join(missing), err=True)
        sys.exit(1)

    logger.info("yt-dlp found at: %s", toolchain.ytdlp_path)
    logger.info("ffmpeg found at: %s", toolchain.ffmpeg_path)


class Services:
    """Process-wide wiring: one database, one engine, one queue scheduler."""

    def __init__(self, probe: bool = True):
        from dubflow.core.config import AppConfig
        from dubflow.core.db_sqlite import Database
        from dubflow.core.providers import ChatCompletionsTranslator, HttpSpeechSynthesizer
        from dubflow.core.queue_scheduler import QueueScheduler
        from dubflow.core.task_engine import TaskEngine
        from dubflow.core.toolchain import resolve_toolchain

        self.config = AppConfig()
        self.db = Database(self.config.data_root / "app.db")
        self.toolchain = resolve_toolchain(probe=probe)
        translator = ChatCompletionsTranslator(
            api_key=self.config.get('translate_api_key') or os.environ.get("OPENAI_API_KEY", ""),
            base_url=self.config.get('translate_base_url'),
            model=self.config.get('translate_model'),
        )
        synthesizer = HttpSpeechSynthesizer(
            api_key=self.config.get('tts_api_key') or os.environ.get("OPENAI_API_KEY", ""),
            output_dir=self.config.data_root / "cache" / "tts",
            base_url=self.config.get('tts_base_url'),
            model=self.config.get('tts_model'),
            voice=self.config.get('tts_voice'),
        )
        self.engine = TaskEngine(self.db, self.config, self.toolchain, translator, synthesizer)
        self.scheduler = QueueScheduler(
            self.db, self.engine,
            failure_threshold=self.config.get('failure_pause_threshold'),
            stale_timeout_ms=self.config.get('stale_timeout_ms'),
        )
        self.engine.events.log.subscribe(
            lambda e: logger.info("[%s] %s: %s", e.task_id[:8], e.stage, e.message))

    def close(self):
        self.scheduler.stop_processing()
        self.db.close()


def _echo_plan(plan):
    if not plan.actions:
        click.echo("No recovery actions available.")
        return
    click.echo(f"Recovery plan (from stage: {plan.from_stage or '-'}):")
    for action in plan.actions:
        click.echo(f"  - {action.action}: {action.label}. {action.reason}")
        if action.segment_ids:
            click.echo(f"      segments: {', '.join(action.segment_ids)}")


def _wait_for_engine(services: Services, task_id: str):
    services.engine.wait_until_idle()
    task = services.db.get_task(task_id)
    click.echo(f"Task {task_id}: {task.status}")
    if task.error_code:
        click.echo(f"  {task.error_code}: {task.error_message}", err=True)
        _echo_plan(services.engine.get_recovery_plan(task_id))


@click.group()
@click.version_option(APP_VERSION, prog_name=APP_NAME)
@click.pass_context
def cli(ctx: click.Context):
    """Resumable video dubbing pipeline."""
    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("PATH: %s", os.environ.get("PATH", ""))
    logger.info("=" * 60)
    ctx.ensure_object(dict)


@cli.command()
@click.argument("urls", nargs=-1, required=True)
@click.option("--target-language", default=None, help="Language to dub into.")
@click.option("--strategy", type=click.Choice(SEGMENTATION_STRATEGIES), default=None,
              help="Segmentation strategy for translation and speech.")
@click.option("--priority", type=int, default=0, show_default=True)
def run(urls: tuple, target_language: str | None, strategy: str | None, priority: int):
    """Queue URLs and process them until the queue drains or pauses."""
    services = Services()
    try:
        check_prerequisites(services.toolchain)
        for url in urls:
            task = services.db.create_task(
                url,
                target_language=target_language or services.config.target_language,
                whisper_model=services.config.get('whisper_model'),
                translate_provider=services.config.get('translate_provider'),
                translate_model_id=services.config.get('translate_model'),
                tts_provider=services.config.get('tts_provider'),
                tts_model_id=services.config.get('tts_model'),
                tts_voice=services.config.get('tts_voice'),
                segmentation_strategy=strategy or services.config.segmentation_strategy,
                segmentation_options=services.config.segmentation_options(),
            )
            services.scheduler.enqueue_task(task.id, priority=priority)
            click.echo(f"Queued {url} as {task.id}")

        services.scheduler.start_processing()
        services.scheduler.wait_until_drained()
        snapshot = services.scheduler.get_snapshot()
        click.echo(f"Completed: {len(snapshot.completed)}  Failed: {len(snapshot.failed)}"
                   f"  Waiting: {len(snapshot.waiting)}")
        if snapshot.paused:
            click.echo("Queue paused after repeated failures.", err=True)
    finally:
        services.close()


@cli.command()
@click.argument("task_id")
@click.argument("segment_ids", nargs=-1)
def retry(task_id: str, segment_ids: tuple):
    """Retry failed segments of a task (all failed segments if none given)."""
    services = Services(probe=False)
    try:
        ids = list(segment_ids) or [s.id for s in services.db.list_failed_segments(task_id)]
        result = services.engine.retry_segments(task_id, ids)
        if not result.accepted:
            raise click.ClickException(result.reason or "Retry rejected")
        _wait_for_engine(services, task_id)
    finally:
        services.close()


@cli.command()
@click.argument("task_id")
def resume(task_id: str):
    """Resume a task from its latest checkpoint."""
    services = Services(probe=False)
    try:
        result = services.engine.resume_from_checkpoint(task_id)
        if not result.accepted:
            raise click.ClickException(result.reason or "Resume rejected")
        _wait_for_engine(services, task_id)
    finally:
        services.close()


@cli.command()
@click.argument("task_id")
def plan(task_id: str):
    """Show recovery suggestions for a failed task."""
    services = Services(probe=False)
    try:
        _echo_plan(services.engine.get_recovery_plan(task_id))
    finally:
        services.close()


@cli.command()
def queue():
    """Show the queue snapshot."""
    services = Services(probe=False)
    try:
        # raw view: reconciling here would requeue work owned by a running `dubflow run`
        snapshot = services.scheduler.queue.get_snapshot(paused=services.scheduler.is_paused())
        for label, entries in (("Waiting", snapshot.waiting), ("Running", snapshot.running),
                               ("Completed", snapshot.completed), ("Failed", snapshot.failed)):
            click.echo(f"{label} ({len(entries)})")
            for entry in entries:
                suffix = f"  {entry.last_error_code}" if entry.last_error_code else ""
                click.echo(f"  [{entry.queue_index}] {entry.task_id}  p={entry.priority}{suffix}")
    finally:
        services.close()


@cli.command()
def doctor():
    """Print tool versions and runtime capabilities."""
    from dubflow.core.toolchain import get_diagnostics

    services = Services()
    try:
        cookies = services.config.get('ytdlp_cookies_file')
        report = get_diagnostics(services.toolchain, Path(cookies) if cookies else None)
        for key, value in report.items():
            click.echo(f"{key}: {value}")
    finally:
        services.close()


def main():
    try:
        cli(obj={})
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        logger.critical("Fatal error: %s\n%s", error_msg, traceback.format_exc())
        click.echo(f"Error: {error_msg}\nCheck logs at: {LOG_FILE}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
