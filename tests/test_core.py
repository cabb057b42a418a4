#!/usr/bin/env python3
"""
Unit tests for DubFlow core modules.
Tests cover: error codes, segmentation, configuration, database, events, cancellation.
"""

import sys
import json
import tempfile
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from dubflow.core.constants import (
    TaskStatus, Stage, SegmentStatus, StageRunStatus, ArtifactType, ErrorCode,
    SegmentationStrategy, RETRYABLE_ERRORS, MAX_ERROR_MESSAGE_LEN,
    DEFAULT_TTS_CONCURRENCY, MAX_TTS_CONCURRENCY, MIN_STALE_TIMEOUT_MS,
    stage_error_code,
)
from dubflow.core.error_codes import (
    PipelineError, SegmentIntegrityError, TaskCanceled, is_retryable, truncate_message,
)
from dubflow.core.segmentation import (
    segment, budget_for, estimate_duration_sec, normalize_whitespace,
    assert_segment_integrity, TextSegment,
)
from dubflow.core.config import AppConfig
from dubflow.core.cancellation import CancelToken
from dubflow.core.events import EventChannel, StatusEvent


class TestErrorCodes(unittest.TestCase):
    """Test error code classification."""

    def test_retryable_errors(self):
        for code in (ErrorCode.NETWORK, ErrorCode.RATE_LIMITED, ErrorCode.COMMAND_TIMEOUT):
            self.assertIn(code, RETRYABLE_ERRORS)
            self.assertTrue(is_retryable(code))

    def test_non_retryable_errors(self):
        for code in (ErrorCode.SEGMENT_INTEGRITY, ErrorCode.PROVIDER_AUTH,
                     ErrorCode.CONFIG_INVALID, ErrorCode.TOOL_MISSING):
            self.assertFalse(is_retryable(code))

    def test_pipeline_error_auto_retryable(self):
        err = PipelineError(ErrorCode.NETWORK, "test")
        self.assertTrue(err.retryable)

        err = PipelineError(ErrorCode.PROVIDER_AUTH, "test")
        self.assertFalse(err.retryable)

        err = PipelineError(ErrorCode.NETWORK, "test", retryable=False)
        self.assertFalse(err.retryable)

    def test_integrity_error_never_retryable(self):
        err = SegmentIntegrityError("lost text")
        self.assertEqual(err.code, ErrorCode.SEGMENT_INTEGRITY)
        self.assertFalse(err.retryable)

    def test_stage_error_code(self):
        self.assertEqual(stage_error_code(Stage.TRANSLATING), "E_TRANSLATING_FAILED")
        self.assertEqual(stage_error_code(Stage.MERGING), ErrorCode.MERGING_FAILED)

    def test_truncate_message(self):
        self.assertIsNone(truncate_message(None))
        self.assertEqual(len(truncate_message("x" * 5000)), MAX_ERROR_MESSAGE_LEN)
        self.assertEqual(truncate_message("short"), "short")

    def test_task_canceled_message(self):
        self.assertIn("abc", str(TaskCanceled("abc")))


class TestSegmentation(unittest.TestCase):
    """Test the three segmentation strategies and the integrity check."""

    def test_empty_input(self):
        self.assertEqual(segment(""), [])
        self.assertEqual(segment("   \n  "), [])

    def test_punctuation_packs_clauses(self):
        text = "第一句话，第二句话。第三句话！"
        result = segment(text, SegmentationStrategy.PUNCTUATION)
        self.assertEqual(len(result), 1)
        self.assertEqual(result[0].text, text)
        self.assertEqual(result[0].index, 0)

    def test_punctuation_respects_budget(self):
        clause = "a" * 30 + "，"
        text = clause * 5
        result = segment(text, SegmentationStrategy.PUNCTUATION, {'max_chars_per_segment': 40})
        self.assertEqual(len(result), 5)
        for chunk in result:
            self.assertLessEqual(len(chunk.text), 40)

    def test_mixed_punctuation_scenario(self):
        options = {'max_chars_per_segment': 5}
        result = segment("A, B. C! D", SegmentationStrategy.PUNCTUATION, options)
        limit = budget_for(SegmentationStrategy.PUNCTUATION, options)
        for chunk in result:
            self.assertLessEqual(len(chunk.text), limit)
        self.assertEqual(normalize_whitespace(" ".join(c.text for c in result)), "A, B. C! D")

    def test_budget_floor(self):
        self.assertEqual(budget_for(SegmentationStrategy.PUNCTUATION,
                                    {'max_chars_per_segment': 5}), 40)
        self.assertEqual(budget_for(SegmentationStrategy.SENTENCE,
                                    {'target_segment_length': 5}), 60)
        self.assertEqual(budget_for(SegmentationStrategy.DURATION,
                                    {'target_duration_sec': 1}), 30)

    def test_budget_defaults(self):
        self.assertEqual(budget_for(SegmentationStrategy.PUNCTUATION), 220)
        self.assertEqual(budget_for(SegmentationStrategy.SENTENCE), 260)
        self.assertEqual(budget_for(SegmentationStrategy.DURATION, {'target_duration_sec': 10}), 40)

    def test_long_run_is_hard_split(self):
        text = "x" * 500
        result = segment(text, SegmentationStrategy.PUNCTUATION, {'max_chars_per_segment': 100})
        self.assertEqual([len(c.text) for c in result], [100] * 5)

    def test_sentence_joins_with_space(self):
        text = "One short line!\nAnother short line?\nA third one."
        result = segment(text, SegmentationStrategy.SENTENCE)
        self.assertEqual(len(result), 1)
        self.assertEqual(result[0].text, "One short line! Another short line? A third one.")

    def test_duration_strategy_bounds(self):
        text = "，".join(["word " * 6] * 10)
        result = segment(text, SegmentationStrategy.DURATION, {'target_duration_sec': 8})
        self.assertGreater(len(result), 1)
        for chunk in result:
            self.assertLessEqual(len(chunk.text), 32)

    def test_leading_punctuation_kept(self):
        text = "，，开头是标点，然后是文字。"
        result = segment(text)
        assert_segment_integrity(text, result)
        self.assertTrue(result[0].text.startswith("，，"))

    def test_unknown_strategy_falls_back(self):
        result = segment("alpha, beta", "nonsense")
        self.assertEqual(result[0].text, "alpha, beta")

    def test_indices_dense_and_ids_unique(self):
        text = "\n".join(f"line number {i} of the transcript" for i in range(20))
        result = segment(text, SegmentationStrategy.PUNCTUATION, {'max_chars_per_segment': 40})
        self.assertEqual([c.index for c in result], list(range(len(result))))
        self.assertEqual(len({c.id for c in result}), len(result))
        assert_segment_integrity(text, result)

    def test_duration_estimate(self):
        self.assertEqual(estimate_duration_sec("a"), 1)
        self.assertEqual(estimate_duration_sec("a" * 9), 3)

    def test_integrity_failure(self):
        chunks = [TextSegment(id="1", index=0, text="hello", estimated_duration_sec=2)]
        with self.assertRaises(SegmentIntegrityError):
            assert_segment_integrity("hello world", chunks)

    def test_normalize_whitespace(self):
        self.assertEqual(normalize_whitespace("  a \n\t b  "), "a b")


class TestConfig(unittest.TestCase):
    """Test configuration defaults and validation."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "config.json"

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_defaults(self):
        config = AppConfig(self.path)
        self.assertEqual(config.segmentation_strategy, SegmentationStrategy.PUNCTUATION)
        self.assertEqual(config.tts_concurrency, DEFAULT_TTS_CONCURRENCY)
        self.assertEqual(config.retry_attempts(Stage.TRANSLATING), 2)
        self.assertEqual(config.retry_attempts(Stage.EXTRACTING), 1)

    def test_clamping(self):
        config = AppConfig(self.path)
        config.update({
            'tts_concurrency': 99,
            'max_chars_per_segment': 3,
            'stale_timeout_ms': 10,
            'segmentation_strategy': 'bogus',
            'retry_policy': {'translate': 0, 'tts': 'x'},
        })
        self.assertEqual(config.tts_concurrency, MAX_TTS_CONCURRENCY)
        self.assertEqual(config.get('max_chars_per_segment'), 40)
        self.assertEqual(config.get('stale_timeout_ms'), MIN_STALE_TIMEOUT_MS)
        self.assertEqual(config.segmentation_strategy, SegmentationStrategy.PUNCTUATION)
        self.assertEqual(config.retry_attempts(Stage.TRANSLATING), 1)
        self.assertEqual(config.retry_attempts(Stage.SYNTHESIZING), 2)

    def test_persist_and_reload(self):
        config = AppConfig(self.path)
        config.set('target_language', 'ja')
        reloaded = AppConfig(self.path)
        self.assertEqual(reloaded.target_language, 'ja')

    def test_update_without_persist(self):
        config = AppConfig(self.path)
        config.update({'retry_base_delay_ms': 0}, persist=False)
        self.assertEqual(config.get('retry_base_delay_ms'), 0)
        self.assertFalse(self.path.exists())

    def test_corrupt_file_uses_defaults(self):
        self.path.write_text("{not json")
        config = AppConfig(self.path)
        self.assertEqual(config.target_language, 'zh')

    def test_comparable_snapshot_prefers_task_values(self):
        from dubflow.core.models_sqlite import Task
        config = AppConfig(self.path)
        task = Task(id="t1", source_url="u", target_language="fr",
                    segmentation_strategy=SegmentationStrategy.SENTENCE,
                    segmentation_options=json.dumps({'target_segment_length': 120}))
        snapshot = config.comparable_snapshot(task)
        self.assertEqual(snapshot['target_language'], 'fr')
        self.assertEqual(snapshot['segmentation_strategy'], SegmentationStrategy.SENTENCE)
        self.assertEqual(snapshot['segmentation_options']['target_segment_length'], 120)

    def test_comparable_snapshot_per_stage(self):
        from dubflow.core.constants import Stage
        config = AppConfig(self.path)
        translating = config.comparable_snapshot(stage=Stage.TRANSLATING)
        synthesizing = config.comparable_snapshot(stage=Stage.SYNTHESIZING)
        self.assertNotIn('tts_voice', translating)
        self.assertEqual(synthesizing['tts_voice'], config.get('tts_voice'))

        config.set('tts_voice', 'echo')
        self.assertEqual(config.comparable_snapshot(stage=Stage.TRANSLATING), translating)
        self.assertNotEqual(config.comparable_snapshot(stage=Stage.SYNTHESIZING), synthesizing)


class TestDatabase(unittest.TestCase):
    """Test SQLite database operations."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.tmpdir.name) / "app.db"
        from dubflow.core.db_sqlite import Database
        self.db = Database(self.db_path)

    def tearDown(self):
        self.db.close()
        self.tmpdir.cleanup()

    def test_create_task(self):
        task = self.db.create_task("https://example.com/v", target_language="en")
        self.assertIsNotNone(task.id)
        self.assertEqual(task.status, TaskStatus.IDLE)
        fetched = self.db.get_task(task.id)
        self.assertEqual(fetched.target_language, "en")

    def test_segmentation_options_roundtrip(self):
        task = self.db.create_task("u", segmentation_options={'max_chars_per_segment': 80})
        fetched = self.db.get_task(task.id)
        self.assertEqual(fetched.segmentation_options_dict(), {'max_chars_per_segment': 80})

    def test_update_task_status(self):
        task = self.db.create_task("u")
        self.db.update_task_status(task.id, TaskStatus.FAILED, error_code=ErrorCode.TASK_FAILED)
        fetched = self.db.get_task(task.id)
        self.assertEqual(fetched.status, TaskStatus.FAILED)
        self.assertIsNotNone(fetched.completed_at)
        self.db.update_task_status(task.id, TaskStatus.QUEUED)
        self.assertIsNone(self.db.get_task(task.id).completed_at)

    def test_stage_run_retry_count(self):
        task = self.db.create_task("u")
        first = self.db.start_stage_run(task.id, Stage.TRANSLATING)
        self.db.finish_stage_run(first.id, StageRunStatus.FAILED, error_code="E_X",
                                 error_message="boom")
        second = self.db.start_stage_run(task.id, Stage.TRANSLATING)
        self.assertEqual(first.retry_count, 0)
        self.assertEqual(second.retry_count, 1)
        runs = self.db.list_stage_runs(task.id)
        self.assertEqual(runs[0].status, StageRunStatus.FAILED)
        self.assertIsNotNone(runs[0].duration_ms)

    def test_segments_lifecycle(self):
        task = self.db.create_task("u")
        chunks = [TextSegment(id=f"s{i}", index=i, text=t, estimated_duration_sec=1)
                  for i, t in enumerate(["one", "two", "three"])]
        self.db.replace_segments(task.id, Stage.TRANSLATING, chunks)
        self.db.mark_segment_running("s0")
        self.db.mark_segment_success("s0", "uno")
        self.db.mark_segment_running("s1")
        self.db.mark_segment_failed("s1", ErrorCode.TRANSLATE_SEGMENT_FAILED, "timeout")

        segs = self.db.list_segments(task.id, Stage.TRANSLATING)
        self.assertEqual([s.status for s in segs],
                         [SegmentStatus.SUCCESS, SegmentStatus.FAILED, SegmentStatus.PENDING])
        self.assertEqual(segs[0].result_text, "uno")
        self.assertEqual(segs[1].retry_count, 1)
        self.assertEqual([s.id for s in self.db.list_failed_segments(task.id)], ["s1"])

        self.db.mark_segment_failed("s1", ErrorCode.TRANSLATE_SEGMENT_FAILED, "auth",
                                    increment_retry=False)
        self.assertEqual(self.db.get_segment("s1").retry_count, 1)

    def test_replace_segments_drops_old_rows(self):
        task = self.db.create_task("u")
        old = [TextSegment(id="a", index=0, text="a", estimated_duration_sec=1)]
        new = [TextSegment(id="b", index=0, text="b", estimated_duration_sec=1),
               TextSegment(id="c", index=1, text="c", estimated_duration_sec=1)]
        self.db.replace_segments(task.id, Stage.SYNTHESIZING, old)
        self.db.replace_segments(task.id, Stage.SYNTHESIZING, new)
        self.assertEqual([s.id for s in self.db.list_segments(task.id)], ["b", "c"])

    def test_latest_snapshot(self):
        task = self.db.create_task("u")
        self.db.save_snapshot(task.id, Stage.TRANSLATING, "k1", {"n": 1})
        self.db.save_snapshot(task.id, Stage.SYNTHESIZING, "k2", {"n": 2})
        latest = self.db.get_latest_snapshot(task.id)
        self.assertEqual(latest.checkpoint_key, "k2")
        self.assertEqual(latest.payload_dict(), {"n": 2})
        self.assertEqual(self.db.get_latest_snapshot(task.id, Stage.TRANSLATING).checkpoint_key, "k1")
        self.assertEqual(len(self.db.list_snapshots(task.id)), 2)

    def test_artifacts(self):
        task = self.db.create_task("u")
        path = Path(self.tmpdir.name) / "audio.wav"
        path.write_bytes(b"1234")
        self.db.add_artifact(task.id, ArtifactType.AUDIO, path, "audio/wav")
        latest = self.db.get_latest_artifact(task.id, ArtifactType.AUDIO)
        self.assertEqual(latest.file_size, 4)
        self.assertIsNone(self.db.get_latest_artifact(task.id, ArtifactType.VIDEO))


class TestEventsAndCancellation(unittest.TestCase):

    def test_listener_failure_isolated(self):
        channel = EventChannel("status")
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        channel.subscribe(broken)
        unsubscribe = channel.subscribe(received.append)
        channel.emit(StatusEvent(task_id="t", status=TaskStatus.QUEUED))
        self.assertEqual(len(received), 1)

        unsubscribe()
        channel.emit(StatusEvent(task_id="t", status=TaskStatus.COMPLETED))
        self.assertEqual(len(received), 1)

    def test_cancel_token(self):
        token = CancelToken("t")
        self.assertFalse(token.wait(0))
        token.raise_if_canceled()
        token.cancel()
        self.assertTrue(token.is_canceled())
        self.assertTrue(token.wait(5))
        with self.assertRaises(TaskCanceled):
            token.raise_if_canceled()


if __name__ == "__main__":
    unittest.main()
