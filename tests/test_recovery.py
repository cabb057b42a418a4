#!/usr/bin/env python3
"""
Tests for error classification, backoff, checkpoints and recovery plans.
"""

import sys
import tempfile
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from dubflow.core.constants import Stage, StageRunStatus, ErrorCode
from dubflow.core.db_sqlite import Database
from dubflow.core.recovery import (
    CheckpointStore, RecoveryPlanner, RecoveryActionType,
    classify_error, error_category, backoff_delay_ms, config_hash, is_compatible,
    normalize_stage_name,
)
from dubflow.core.segmentation import TextSegment


class TestClassification(unittest.TestCase):

    def test_transient_codes(self):
        self.assertEqual(classify_error(ErrorCode.NETWORK, ""), "retryable")
        self.assertEqual(classify_error(ErrorCode.PROVIDER_TIMEOUT, ""), "retryable")
        self.assertEqual(classify_error(ErrorCode.RATE_LIMITED, "slow down"), "retryable")

    def test_integrity_is_fatal(self):
        self.assertEqual(classify_error(ErrorCode.SEGMENT_INTEGRITY, "timeout"), "fatal")

    def test_permission_markers(self):
        self.assertEqual(error_category("E_PROVIDER_FAILED", "HTTP 401 Unauthorized"),
                         "permission")
        self.assertEqual(error_category(ErrorCode.PROVIDER_AUTH, ""), "permission")
        self.assertEqual(classify_error("E_X", "403 forbidden"), "fatal")

    def test_config_markers(self):
        self.assertEqual(error_category("E_X", "unsupported voice id"), "config")
        self.assertEqual(classify_error(ErrorCode.CONFIG_INVALID, ""), "fatal")

    def test_unknown_defaults_to_retryable(self):
        self.assertEqual(classify_error("E_SOMETHING", "provider hiccup"), "retryable")
        self.assertEqual(classify_error(None, None), "retryable")

    def test_backoff(self):
        self.assertEqual(backoff_delay_ms(1, 1000, 15000), 1000)
        self.assertEqual(backoff_delay_ms(2, 1000, 15000), 2000)
        self.assertEqual(backoff_delay_ms(3, 1000, 15000), 4000)
        self.assertEqual(backoff_delay_ms(10, 1000, 15000), 15000)
        self.assertEqual(backoff_delay_ms(3, 0, 15000), 0)

    def test_normalize_stage_name(self):
        self.assertEqual(normalize_stage_name("translate"), Stage.TRANSLATING)
        self.assertEqual(normalize_stage_name("TTS"), Stage.SYNTHESIZING)
        self.assertEqual(normalize_stage_name("merging"), Stage.MERGING)
        self.assertIsNone(normalize_stage_name("bogus"))
        self.assertIsNone(normalize_stage_name(None))

    def test_config_hash_is_order_independent(self):
        self.assertEqual(config_hash({"a": 1, "b": 2}), config_hash({"b": 2, "a": 1}))
        self.assertNotEqual(config_hash({"a": 1}), config_hash({"a": 2}))

    def test_is_compatible(self):
        snapshot = {"target_language": "zh"}
        payload = {"configSnapshot": snapshot, "configHash": config_hash(snapshot)}
        self.assertTrue(is_compatible(payload, {"target_language": "zh"}))
        self.assertFalse(is_compatible(payload, {"target_language": "ja"}))
        self.assertTrue(is_compatible(payload, None))
        # older payloads without a stored hash
        self.assertTrue(is_compatible({"configSnapshot": snapshot}, snapshot))


class RecoveryTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db = Database(Path(self.tmpdir.name) / "app.db")
        self.store = CheckpointStore(self.db)
        self.task = self.db.create_task("https://example.com/v")
        self.snapshot = {"target_language": "zh", "segmentation_strategy": "punctuation"}
        chunks = [TextSegment(id=f"seg-{i}", index=i, text=f"text {i}", estimated_duration_sec=2)
                  for i in range(3)]
        self.db.replace_segments(self.task.id, Stage.TRANSLATING, chunks)

    def tearDown(self):
        self.db.close()
        self.tmpdir.cleanup()

    def _fail_translate_run(self, segment_id: str, message: str, code: str = None):
        self.db.mark_segment_success("seg-0", "译文 0")
        self.store.save_segment_checkpoint(self.task.id, Stage.TRANSLATING, "seg-0",
                                           self.snapshot)
        self.db.mark_segment_failed(segment_id, code or ErrorCode.TRANSLATE_SEGMENT_FAILED,
                                    message)
        run = self.db.start_stage_run(self.task.id, Stage.TRANSLATING)
        self.db.finish_stage_run(run.id, StageRunStatus.FAILED,
                                 error_code=ErrorCode.TRANSLATING_FAILED, error_message=message)
        self.store.save_failure_checkpoint(self.task.id, Stage.TRANSLATING, self.snapshot)


class TestCheckpointStore(RecoveryTestCase):

    def test_segment_checkpoint_payload(self):
        self.db.mark_segment_success("seg-0", "done")
        snap = self.store.save_segment_checkpoint(self.task.id, Stage.TRANSLATING, "seg-0",
                                                  self.snapshot)
        payload = snap.payload_dict()
        self.assertEqual(payload["stageName"], Stage.TRANSLATING)
        self.assertEqual(payload["checkpointSegmentId"], "seg-0")
        self.assertEqual(payload["successfulSegmentIds"], ["seg-0"])
        self.assertEqual(payload["failedSegmentIds"], [])
        self.assertEqual(payload["configHash"], config_hash(self.snapshot))
        self.assertTrue(snap.checkpoint_key.startswith("translating:seg-0:"))

    def test_latest_checkpoint_wins(self):
        self.db.mark_segment_success("seg-0", "a")
        self.store.save_segment_checkpoint(self.task.id, Stage.TRANSLATING, "seg-0", self.snapshot)
        self.db.mark_segment_success("seg-1", "b")
        self.store.save_segment_checkpoint(self.task.id, Stage.TRANSLATING, "seg-1", self.snapshot)
        latest = self.store.get_latest(self.task.id)
        self.assertEqual(latest.payload_dict()["checkpointSegmentId"], "seg-1")
        self.assertEqual(latest.payload_dict()["successfulSegmentIds"], ["seg-0", "seg-1"])

    def test_failure_checkpoint_lists_failed(self):
        self._fail_translate_run("seg-1", "connection reset")
        payload = self.store.get_latest(self.task.id).payload_dict()
        self.assertEqual(payload["failedSegmentIds"], ["seg-1"])
        self.assertEqual(payload["checkpointSegmentId"], "seg-0")


class TestRecoveryPlanner(RecoveryTestCase):

    def test_empty_plan(self):
        planner = RecoveryPlanner(self.db)
        plan = planner.create_plan(self.task.id)
        self.assertEqual(plan.actions, [])
        self.assertIsNone(plan.from_stage)

    def test_transient_failure_plan(self):
        self._fail_translate_run("seg-1", "network timeout")
        plan = RecoveryPlanner(self.db).create_plan(self.task.id, current_config=self.snapshot)

        self.assertEqual(plan.from_stage, Stage.TRANSLATING)
        self.assertEqual([s.id for s in plan.failed_segments], ["seg-1"])
        retry = plan.actions[0]
        self.assertEqual(retry.action, RecoveryActionType.RETRY_FAILED_SEGMENTS)
        self.assertEqual(retry.segment_ids, ["seg-1"])
        self.assertTrue(plan.has_action(RecoveryActionType.WAIT_AND_RETRY))
        self.assertTrue(plan.has_action(RecoveryActionType.RESUME_FROM_CHECKPOINT))
        self.assertFalse(plan.has_action(RecoveryActionType.CHECK_PERMISSIONS))

    def test_permission_failure_plan(self):
        self._fail_translate_run("seg-2", "401 invalid api key")
        plan = RecoveryPlanner(self.db).create_plan(self.task.id, current_config=self.snapshot)
        self.assertTrue(plan.has_action(RecoveryActionType.RETRY_FAILED_SEGMENTS))
        self.assertTrue(plan.has_action(RecoveryActionType.CHECK_PERMISSIONS))
        self.assertFalse(plan.has_action(RecoveryActionType.WAIT_AND_RETRY))

    def test_config_failure_plan(self):
        self._fail_translate_run("seg-1", "voice not supported in range")
        plan = RecoveryPlanner(self.db).create_plan(self.task.id, current_config=self.snapshot)
        self.assertTrue(plan.has_action(RecoveryActionType.FIX_CONFIG))

    def test_changed_config_suggests_restart(self):
        self._fail_translate_run("seg-1", "network timeout")
        changed = dict(self.snapshot, target_language="ja")
        plan = RecoveryPlanner(self.db).create_plan(self.task.id, current_config=changed)
        self.assertFalse(plan.has_action(RecoveryActionType.RESUME_FROM_CHECKPOINT))
        self.assertTrue(plan.has_action(RecoveryActionType.RESTART_STAGE))

    def test_config_provider_used(self):
        self._fail_translate_run("seg-1", "network timeout")
        seen = []

        def provider(task, stage):
            seen.append(stage)
            return self.snapshot

        plan = RecoveryPlanner(self.db, config_provider=provider).create_plan(self.task.id)
        self.assertTrue(plan.has_action(RecoveryActionType.RESUME_FROM_CHECKPOINT))
        self.assertEqual(seen, [Stage.TRANSLATING])

    def test_checkpoint_past_failed_stage_not_offered(self):
        self.store.save_failure_checkpoint(self.task.id, Stage.SYNTHESIZING, self.snapshot)
        run = self.db.start_stage_run(self.task.id, Stage.TRANSLATING)
        self.db.finish_stage_run(run.id, StageRunStatus.FAILED,
                                 error_code=ErrorCode.TRANSLATING_FAILED, error_message="boom")
        plan = RecoveryPlanner(self.db).create_plan(self.task.id, current_config=self.snapshot)
        self.assertFalse(plan.has_action(RecoveryActionType.RESUME_FROM_CHECKPOINT))
        self.assertFalse(plan.has_action(RecoveryActionType.RESTART_STAGE))


if __name__ == "__main__":
    unittest.main()
