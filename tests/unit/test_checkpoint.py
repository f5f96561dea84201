"""
断点存储单元测试 (unittest)
"""

import unittest
from datetime import datetime, timezone

from conftest import create_temp_dir, remove_temp_dir

from cdc_replicator.models.position import SubscriptionState, SubscriptionStatus
from cdc_replicator.storage.checkpoint import CheckpointStore, shadow_key


class TestCheckpointStore(unittest.TestCase):
    """断点存储测试"""

    def setUp(self):
        self.temp_dir = create_temp_dir()
        self.store = CheckpointStore(self.temp_dir / "checkpoints.db")

    def tearDown(self):
        self.store.close()
        remove_temp_dir(self.temp_dir)

    def test_no_checkpoint(self):
        self.assertIsNone(self.store.load_checkpoint("s", "customers"))
        self.assertEqual(self.store.load_checkpoints("s"), {})

    def test_commit_progress(self):
        captured = datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.store.commit_progress("s", "customers", 10, captured)

        checkpoint = self.store.load_checkpoint("s", "customers")
        self.assertEqual(checkpoint.sequence_number, 10)
        self.assertEqual(checkpoint.capture_timestamp, captured)
        self.assertFalse(checkpoint.snapshot_completed)

    def test_checkpoint_never_decreases(self):
        """测试断点单调不减"""
        self.store.commit_progress("s", "customers", 10)
        self.store.commit_progress("s", "customers", 5)
        self.assertEqual(self.store.load_checkpoint("s", "customers").sequence_number, 10)

    def test_checkpoints_per_table(self):
        self.store.commit_progress("s", "customers", 3)
        self.store.commit_progress("s", "orders", 8)
        self.store.commit_progress("other", "customers", 99)

        checkpoints = self.store.load_checkpoints("s")
        self.assertEqual(
            {table: cp.sequence_number for table, cp in checkpoints.items()},
            {"customers": 3, "orders": 8},
        )

    def test_snapshot_completed_kept_on_progress(self):
        """测试推进断点不会清除快照完成标记"""
        self.store.mark_snapshot_completed("s", "customers", 4)
        self.store.commit_progress("s", "customers", 6)

        checkpoint = self.store.load_checkpoint("s", "customers")
        self.assertTrue(checkpoint.snapshot_completed)
        self.assertEqual(checkpoint.sequence_number, 6)

    def test_shadow_rows(self):
        """测试影子镜像与断点一起推进"""
        alice_key, bob_key = shadow_key([1]), shadow_key([2])
        self.store.mark_snapshot_completed(
            "s", "customers", 0, {alice_key: {"id": 1, "name": "Alice"}}
        )
        self.assertEqual(self.store.load_shadow("s", "customers"), {alice_key: {"id": 1, "name": "Alice"}})

        self.store.commit_progress(
            "s", "customers", 2,
            shadow_changes=[(alice_key, None), (bob_key, {"id": 2, "name": "Bob"})],
        )
        self.assertEqual(self.store.load_shadow("s", "customers"), {bob_key: {"id": 2, "name": "Bob"}})

    def test_clear_subscription(self):
        self.store.mark_snapshot_completed("s", "customers", 0, {shadow_key([1]): {"id": 1}})
        self.store.commit_progress("s", "customers", 5)

        self.store.clear_subscription("s")

        self.assertIsNone(self.store.load_checkpoint("s", "customers"))
        self.assertEqual(self.store.load_shadow("s", "customers"), {})

    def test_status_persistence(self):
        status = SubscriptionStatus(
            name="s", state=SubscriptionState.STREAMING, last_checkpoint={"customers": 3}
        )
        self.store.save_status(status)

        loaded = self.store.load_status("s")
        self.assertEqual(loaded.state, SubscriptionState.STREAMING)
        self.assertEqual(loaded.last_checkpoint, {"customers": 3})
        self.assertIsNone(self.store.load_status("missing"))

    def test_control_requests(self):
        """测试后写入的控制请求覆盖未处理的请求"""
        self.assertIsNone(self.store.pop_control_request("s"))
        self.store.request_control("s", "pause")
        self.store.request_control("s", "stop")

        self.assertEqual(self.store.pop_control_request("s"), "stop")
        self.assertIsNone(self.store.pop_control_request("s"))

    def test_reopen_keeps_data(self):
        self.store.commit_progress("s", "customers", 12)
        reopened = CheckpointStore(self.temp_dir / "checkpoints.db")
        self.assertEqual(reopened.load_checkpoint("s", "customers").sequence_number, 12)


if __name__ == "__main__":
    unittest.main()
