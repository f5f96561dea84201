"""
JournalingConnection 单元测试 (unittest)
"""

import json
import sqlite3
import unittest

from cdc_replicator.core.journal import (
    JOURNAL_TABLE,
    LOG_STATE_TABLE,
    JournalingConnection,
    decode_image,
    encode_image,
    purge_journal,
)


class TestJournalingConnection(unittest.TestCase):
    """变更日志记录测试"""

    def setUp(self):
        self.in_memory_db = sqlite3.connect(":memory:")
        self.in_memory_db.row_factory = sqlite3.Row
        self.in_memory_db.execute("""
            CREATE TABLE customers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT
            )
        """)
        self.in_memory_db.commit()

    def tearDown(self):
        self.in_memory_db.close()

    def _journal(self):
        return self.in_memory_db.execute(
            f"SELECT * FROM {JOURNAL_TABLE} ORDER BY seq"
        ).fetchall()

    def test_journal_tables_created(self):
        """测试自动创建日志表和轮转状态表"""
        JournalingConnection(self.in_memory_db)
        names = {
            row[0] for row in self.in_memory_db.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )
        }
        self.assertIn(JOURNAL_TABLE, names)
        self.assertIn(LOG_STATE_TABLE, names)

    def test_insert_records_after_image(self):
        """测试 INSERT 记录变更后镜像"""
        conn = JournalingConnection(self.in_memory_db, enabled_tables=["customers"])
        conn.execute(
            "INSERT INTO customers (name, email) VALUES (?, ?)",
            ("Alice", "a@x.com")
        )
        conn.commit()

        rows = self._journal()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["operation"], "INSERT")
        self.assertIsNone(rows[0]["before_image"])
        after = json.loads(rows[0]["after_image"])
        self.assertEqual(after, {"id": 1, "name": "Alice", "email": "a@x.com"})

    def test_update_records_both_images(self):
        """测试 UPDATE 记录前后镜像，并跳过 SET 子句的参数"""
        conn = JournalingConnection(self.in_memory_db)
        conn.execute("INSERT INTO customers (name, email) VALUES (?, ?)", ("Alice", "a@x.com"))
        conn.execute("INSERT INTO customers (name, email) VALUES (?, ?)", ("Bob", "b@x.com"))
        conn.commit()

        conn.execute("UPDATE customers SET email = ? WHERE name = ?", ("alice@x.com", "Alice"))
        conn.commit()

        rows = self._journal()
        self.assertEqual(len(rows), 3)
        update = rows[2]
        self.assertEqual(update["operation"], "UPDATE")
        self.assertEqual(json.loads(update["before_image"])["email"], "a@x.com")
        self.assertEqual(json.loads(update["after_image"])["email"], "alice@x.com")

    def test_update_primary_key_records_update(self):
        """测试修改 INTEGER PRIMARY KEY 的 UPDATE 记录为一条 UPDATE，后镜像位于新键"""
        conn = JournalingConnection(self.in_memory_db, enabled_tables=["customers"])
        conn.execute("INSERT INTO customers (name, email) VALUES (?, ?)", ("Alice", "a@x.com"))
        conn.commit()

        conn.execute("UPDATE customers SET id = 5 WHERE id = 1")
        conn.commit()

        rows = self._journal()
        self.assertEqual([r["operation"] for r in rows], ["INSERT", "UPDATE"])
        self.assertEqual(json.loads(rows[1]["before_image"])["id"], 1)
        self.assertEqual(
            json.loads(rows[1]["after_image"]),
            {"id": 5, "name": "Alice", "email": "a@x.com"},
        )

    def test_update_primary_key_multiple_rows(self):
        """测试一条语句移动多行时每行的前后镜像一一对应"""
        conn = JournalingConnection(self.in_memory_db)
        conn.executemany("INSERT INTO customers (name) VALUES (?)", [("Alice",), ("Bob",)])
        conn.commit()

        conn.execute("UPDATE customers SET id = id + 10")
        conn.commit()

        updates = [r for r in self._journal() if r["operation"] == "UPDATE"]
        pairs = sorted(
            (json.loads(r["before_image"])["id"], json.loads(r["after_image"])["id"])
            for r in updates
        )
        self.assertEqual(pairs, [(1, 11), (2, 12)])

    def test_update_primary_key_after_rollback(self):
        """测试回滚撤销临时触发器后仍能追踪键的变化"""
        conn = JournalingConnection(self.in_memory_db)
        conn.execute("INSERT INTO customers (name) VALUES (?)", ("Alice",))
        conn.commit()
        conn.execute("UPDATE customers SET id = 3 WHERE id = 1")
        conn.rollback()

        conn.execute("UPDATE customers SET id = 7 WHERE id = 1")
        conn.commit()

        rows = self._journal()
        self.assertEqual([r["operation"] for r in rows], ["INSERT", "UPDATE"])
        self.assertEqual(json.loads(rows[1]["after_image"])["id"], 7)

    def test_delete_records_each_row(self):
        """测试 DELETE 为每个受影响行记录一条日志"""
        conn = JournalingConnection(self.in_memory_db)
        conn.executemany(
            "INSERT INTO customers (name) VALUES (?)",
            [("Alice",), ("Bob",), ("Carol",)]
        )
        conn.commit()

        conn.execute("DELETE FROM customers WHERE id >= ?", (2,))
        conn.commit()

        deletes = [r for r in self._journal() if r["operation"] == "DELETE"]
        self.assertEqual(len(deletes), 2)
        self.assertEqual(
            sorted(json.loads(r["before_image"])["name"] for r in deletes),
            ["Bob", "Carol"],
        )
        self.assertTrue(all(r["after_image"] is None for r in deletes))

    def test_transaction_shares_txid(self):
        """测试同一事务的日志共享 txid，不同事务不同"""
        conn = JournalingConnection(self.in_memory_db)
        conn.execute("INSERT INTO customers (name) VALUES (?)", ("Alice",))
        conn.execute("INSERT INTO customers (name) VALUES (?)", ("Bob",))
        conn.commit()
        conn.execute("INSERT INTO customers (name) VALUES (?)", ("Carol",))
        conn.commit()

        txids = [r["txid"] for r in self._journal()]
        self.assertEqual(txids[0], txids[1])
        self.assertNotEqual(txids[1], txids[2])

    def test_rollback_discards_journal(self):
        """测试回滚同时撤销业务数据和日志"""
        conn = JournalingConnection(self.in_memory_db)
        conn.execute("INSERT INTO customers (name) VALUES (?)", ("Alice",))
        conn.rollback()

        self.assertEqual(len(self._journal()), 0)
        count = self.in_memory_db.execute("SELECT COUNT(*) FROM customers").fetchone()[0]
        self.assertEqual(count, 0)

    def test_enabled_tables_filter(self):
        """测试只记录指定表"""
        self.in_memory_db.execute("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT)")
        self.in_memory_db.commit()
        conn = JournalingConnection(self.in_memory_db, enabled_tables=["customers"])

        conn.execute("INSERT INTO customers (name) VALUES (?)", ("Alice",))
        conn.execute("INSERT INTO notes (body) VALUES (?)", ("hello",))
        conn.commit()

        tables = [r["table_name"] for r in self._journal()]
        self.assertEqual(tables, ["customers"])

    def test_select_not_journaled(self):
        conn = JournalingConnection(self.in_memory_db)
        conn.execute("SELECT * FROM customers").fetchall()
        self.assertEqual(len(self._journal()), 0)

    def test_context_manager_commits(self):
        """测试上下文管理器正常退出时提交"""
        with JournalingConnection(self.in_memory_db) as conn:
            conn.execute("INSERT INTO customers (name) VALUES (?)", ("Alice",))

        count = self.in_memory_db.execute("SELECT COUNT(*) FROM customers").fetchone()[0]
        self.assertEqual(count, 1)
        self.assertEqual(len(self._journal()), 1)


class TestPurgeJournal(unittest.TestCase):
    """日志轮转测试"""

    def setUp(self):
        self.db = sqlite3.connect(":memory:")
        self.db.execute("CREATE TABLE customers (id INTEGER PRIMARY KEY, name TEXT)")
        self.db.commit()
        self.conn = JournalingConnection(self.db)
        for name in ("Alice", "Bob", "Carol"):
            self.conn.execute("INSERT INTO customers (name) VALUES (?)", (name,))
        self.conn.commit()

    def tearDown(self):
        self.db.close()

    def test_purge_records_state(self):
        """测试轮转删除日志并记录每张表的清理位置"""
        deleted = purge_journal(self.db, 2)
        self.assertEqual(deleted, 2)

        remaining = self.db.execute(f"SELECT seq FROM {JOURNAL_TABLE}").fetchall()
        self.assertEqual([r[0] for r in remaining], [3])

        purged = self.db.execute(
            f"SELECT purged_through FROM {LOG_STATE_TABLE} WHERE table_name = 'customers'"
        ).fetchone()[0]
        self.assertEqual(purged, 2)

    def test_purge_position_never_decreases(self):
        purge_journal(self.db, 2)
        purge_journal(self.db, 1)
        purged = self.db.execute(
            f"SELECT purged_through FROM {LOG_STATE_TABLE} WHERE table_name = 'customers'"
        ).fetchone()[0]
        self.assertEqual(purged, 2)

    def test_sequence_not_reused_after_purge(self):
        """测试清理后序列号继续递增"""
        purge_journal(self.db, 3)
        self.conn.execute("INSERT INTO customers (name) VALUES (?)", ("Dave",))
        self.conn.commit()
        seq = self.db.execute(f"SELECT seq FROM {JOURNAL_TABLE}").fetchone()[0]
        self.assertEqual(seq, 4)


class TestImageEncoding(unittest.TestCase):

    def test_binary_encoded_as_hex(self):
        payload = encode_image({"id": 1, "avatar": b"\x01\xff"})
        self.assertEqual(decode_image(payload), {"id": 1, "avatar": "01ff"})

    def test_none_image(self):
        self.assertIsNone(encode_image(None))
        self.assertIsNone(decode_image(None))


if __name__ == "__main__":
    unittest.main()
