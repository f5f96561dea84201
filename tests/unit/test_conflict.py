"""
冲突检测与解决单元测试 (unittest)
"""

import unittest
from datetime import datetime
from decimal import Decimal

from cdc_replicator.config import ConfigError
from cdc_replicator.core.conflict import (
    ConflictResolver,
    Outcome,
    classify,
    load_resolver,
    values_equal,
)
from cdc_replicator.errors import ApplyConflictError, ApplyFailure
from cdc_replicator.models.event import ChangeEvent, OperationType
from cdc_replicator.models.mapping import ConflictResolution, TableRef

COLUMNS = ["id", "name", "email"]

ALICE = {"id": 1, "name": "Alice", "email": "a@x.com"}
ALICE_NEW = {"id": 1, "name": "Alice", "email": "alice@x.com"}
ALICE_EDITED = {"id": 1, "name": "Alice", "email": "edited@target.com"}


def prefer_target_email(conflict, event, incoming):
    """测试用自定义解析函数：保留目标端的 email"""
    merged = dict(incoming)
    merged["email"] = conflict.target_row["email"]
    return merged


class TestValuesEqual(unittest.TestCase):

    def test_numeric_types(self):
        self.assertTrue(values_equal(Decimal("10.50"), 10.5))
        self.assertTrue(values_equal(1, "1"))
        self.assertFalse(values_equal(1, 2))

    def test_none(self):
        self.assertTrue(values_equal(None, None))
        self.assertFalse(values_equal(None, ""))

    def test_datetime_and_string(self):
        self.assertTrue(values_equal(datetime(2026, 1, 1, 10, 30), "2026-01-01 10:30:00"))

    def test_bytes_and_hex(self):
        """二进制列在日志中以十六进制保存"""
        self.assertTrue(values_equal(b"\x01\xff", "01ff"))


class TestClassify(unittest.TestCase):
    """目标行比对测试"""

    def test_insert(self):
        self.assertEqual(classify(OperationType.INSERT, None, ALICE, None, COLUMNS), Outcome.APPLY)
        self.assertEqual(classify(OperationType.INSERT, None, ALICE, ALICE, COLUMNS), Outcome.NOOP)
        self.assertEqual(
            classify(OperationType.INSERT, None, ALICE, ALICE_EDITED, COLUMNS), Outcome.CONFLICT
        )

    def test_update(self):
        self.assertEqual(
            classify(OperationType.UPDATE, ALICE, ALICE_NEW, ALICE, COLUMNS), Outcome.APPLY
        )
        # 重放：目标已是变更后的状态
        self.assertEqual(
            classify(OperationType.UPDATE, ALICE, ALICE_NEW, ALICE_NEW, COLUMNS), Outcome.NOOP
        )
        self.assertEqual(
            classify(OperationType.UPDATE, ALICE, ALICE_NEW, ALICE_EDITED, COLUMNS), Outcome.CONFLICT
        )
        self.assertEqual(
            classify(OperationType.UPDATE, ALICE, ALICE_NEW, None, COLUMNS), Outcome.CONFLICT
        )

    def test_delete(self):
        self.assertEqual(classify(OperationType.DELETE, ALICE, None, ALICE, COLUMNS), Outcome.APPLY)
        self.assertEqual(classify(OperationType.DELETE, ALICE, None, None, COLUMNS), Outcome.NOOP)
        self.assertEqual(
            classify(OperationType.DELETE, ALICE, None, ALICE_EDITED, COLUMNS), Outcome.CONFLICT
        )


class TestConflictResolver(unittest.TestCase):
    """冲突策略测试"""

    def setUp(self):
        self.event = ChangeEvent(
            subscription_id="s",
            table=TableRef(table_name="customers"),
            operation=OperationType.UPDATE,
            before_image=ALICE,
            after_image=ALICE_NEW,
            source_sequence_number=7,
        )
        self.conflict = ApplyConflictError("customers", (1,), 7, ALICE_EDITED)

    def test_source_wins(self):
        decision = ConflictResolver(ConflictResolution.SOURCE_WINS).resolve(
            self.conflict, self.event, ALICE_NEW
        )
        self.assertTrue(decision.apply)
        self.assertIsNone(decision.row)

    def test_target_wins(self):
        decision = ConflictResolver(ConflictResolution.TARGET_WINS).resolve(
            self.conflict, self.event, ALICE_NEW
        )
        self.assertFalse(decision.apply)

    def test_custom_returns_row(self):
        resolver = ConflictResolver(ConflictResolution.CUSTOM, custom=prefer_target_email)
        decision = resolver.resolve(self.conflict, self.event, ALICE_NEW)
        self.assertTrue(decision.apply)
        self.assertEqual(decision.row["email"], "edited@target.com")

    def test_custom_raises(self):
        """自定义解析函数异常转换为 ApplyFailure"""
        def broken(conflict, event, incoming):
            raise KeyError("updated_at")

        resolver = ConflictResolver(ConflictResolution.CUSTOM, custom=broken)
        with self.assertRaises(ApplyFailure) as cm:
            resolver.resolve(self.conflict, self.event, ALICE_NEW)
        self.assertEqual(cm.exception.sequence_number, 7)

    def test_custom_requires_function(self):
        with self.assertRaises(ConfigError):
            ConflictResolver(ConflictResolution.CUSTOM)


class TestLoadResolver(unittest.TestCase):

    def test_load(self):
        resolver = load_resolver(f"{__name__}:prefer_target_email")
        self.assertIs(resolver, prefer_target_email)

    def test_missing_module(self):
        with self.assertRaises(ConfigError):
            load_resolver("cdc_no_such_module:resolve")

    def test_missing_function(self):
        with self.assertRaises(ConfigError):
            load_resolver("cdc_replicator.core.conflict:no_such_function")


if __name__ == "__main__":
    unittest.main()
