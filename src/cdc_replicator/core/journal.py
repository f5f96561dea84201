"""
源端变更日志 - 拦截 SQLite 写入并在同一事务中追加日志记录

变更日志是基于日志捕获模式的数据源:
    _cdc_change_log  自增 seq 即源端序列号，删除后不会复用
    _cdc_log_state   日志轮转记录，每张表已清理到的最大 seq
"""

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Union

from cdc_replicator.utils.logging import get_logger
from cdc_replicator.utils.sql_parser import parse_sql, split_where

logger = get_logger(__name__)

JOURNAL_TABLE = "_cdc_change_log"
LOG_STATE_TABLE = "_cdc_log_state"

JOURNAL_DDL = f"""
CREATE TABLE IF NOT EXISTS {JOURNAL_TABLE} (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    txid TEXT,
    schema_name TEXT,
    table_name TEXT NOT NULL,
    operation TEXT NOT NULL CHECK(operation IN ('INSERT', 'UPDATE', 'DELETE')),
    before_image TEXT,
    after_image TEXT,
    captured_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_{JOURNAL_TABLE}_table
    ON {JOURNAL_TABLE}(table_name, seq);
CREATE TABLE IF NOT EXISTS {LOG_STATE_TABLE} (
    table_name TEXT PRIMARY KEY,
    purged_through INTEGER NOT NULL DEFAULT 0,
    purged_at TEXT
);
"""

_ROWID = "__cdc_rowid"
_ROWID_MOVES = "_cdc_rowid_moves"


def encode_image(image: Optional[Dict[str, Any]]) -> Optional[str]:
    """行镜像序列化为 JSON（二进制列编码为十六进制字符串）"""
    if image is None:
        return None
    return json.dumps(image, default=_json_default, ensure_ascii=False)


def decode_image(payload: Optional[str]) -> Optional[Dict[str, Any]]:
    if not payload:
        return None
    return json.loads(payload)


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def ensure_journal(conn: sqlite3.Connection) -> None:
    """确保变更日志表存在"""
    conn.executescript(JOURNAL_DDL)


def purge_journal(conn: sqlite3.Connection, through_seq: int) -> int:
    """
    日志轮转：删除 seq <= through_seq 的日志

    同时记录每张表被清理到的位置，捕获端据此判断断点之后是否出现缺口。

    返回:
        删除的日志条数
    """
    ensure_journal(conn)
    now = datetime.now(timezone.utc).isoformat()
    with conn:
        rows = conn.execute(f"""
            SELECT table_name, MAX(seq) FROM {JOURNAL_TABLE}
            WHERE seq <= ?
            GROUP BY table_name
        """, (through_seq,)).fetchall()
        for table_name, max_seq in rows:
            conn.execute(f"""
                INSERT INTO {LOG_STATE_TABLE} (table_name, purged_through, purged_at)
                VALUES (?, ?, ?)
                ON CONFLICT(table_name) DO UPDATE SET
                    purged_through = MAX(purged_through, excluded.purged_through),
                    purged_at = excluded.purged_at
            """, (table_name, max_seq, now))
        cursor = conn.execute(
            f"DELETE FROM {JOURNAL_TABLE} WHERE seq <= ?", (through_seq,)
        )
    deleted = cursor.rowcount
    logger.info("journal_purged", through_seq=through_seq, deleted=deleted)
    return deleted


class JournalingConnection:
    """
    记录变更日志的 SQLite 连接包装器

    拦截 execute 系列操作，将 INSERT/UPDATE/DELETE 影响的每一行写入变更日志。
    日志记录和业务数据在同一事务中写入，回滚时一并撤销。
    同一事务内的日志共享一个 txid。

    限制: 依赖 ROWID 定位行，不支持 WITHOUT ROWID 表。
    UPDATE 修改 ROWID（例如 INTEGER PRIMARY KEY）时由临时触发器记录新旧 ROWID 的对应关系。

    示例:
        ```python
        raw_conn = sqlite3.connect("/data/source.db")
        conn = JournalingConnection(raw_conn, enabled_tables=["customers"])

        conn.execute(
            "INSERT INTO customers (name, email) VALUES (?, ?)",
            ("Alice", "a@x.com")
        )
        conn.commit()
        ```
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        enabled_tables: Optional[List[str]] = None
    ):
        self._conn = conn
        self._enabled_tables = set(enabled_tables or [])
        self._session = uuid.uuid4().hex[:12]
        self._tx_counter = 0
        self._txid: Optional[str] = None
        ensure_journal(self._conn)
        self._conn.execute(
            f"CREATE TEMP TABLE IF NOT EXISTS {_ROWID_MOVES} (old_rowid INTEGER, new_rowid INTEGER)"
        )
        self._move_triggers: Set[str] = set()

    @property
    def raw(self) -> sqlite3.Connection:
        """底层连接"""
        return self._conn

    def _should_journal(self, table_name: Optional[str]) -> bool:
        if not table_name or table_name.startswith("_cdc_"):
            return False
        if not self._enabled_tables:
            return True
        return table_name in self._enabled_tables

    def _current_txid(self) -> str:
        if self._txid is None:
            self._tx_counter += 1
            self._txid = f"{self._session}-{self._tx_counter}"
        return self._txid

    def execute(
        self,
        sql: str,
        parameters: Union[Sequence[Any], Dict[str, Any]] = ()
    ) -> sqlite3.Cursor:
        """
        执行 SQL，写操作自动记录变更日志

        对于 INSERT/UPDATE/DELETE:
        1. 开启事务（若尚未开启）
        2. UPDATE/DELETE 先读取受影响行的变更前镜像
        3. 执行业务 SQL，读取变更后镜像
        4. 追加变更日志
        """
        operation, table_name = parse_sql(sql)

        if operation and self._should_journal(table_name):
            return self._execute_with_journal(sql, parameters, operation, table_name)

        return self._conn.execute(sql, parameters)

    def executemany(
        self,
        sql: str,
        seq_of_parameters: List[Union[Sequence[Any], Dict[str, Any]]]
    ) -> sqlite3.Cursor:
        """批量执行 SQL，逐条记录变更日志"""
        operation, table_name = parse_sql(sql)

        if operation and self._should_journal(table_name):
            cursor = self._conn.cursor()
            for params in seq_of_parameters:
                cursor = self._execute_with_journal(sql, params, operation, table_name)
            return cursor

        return self._conn.executemany(sql, seq_of_parameters)

    def _execute_with_journal(
        self,
        sql: str,
        parameters: Union[Sequence[Any], Dict[str, Any]],
        operation: str,
        table_name: str
    ) -> sqlite3.Cursor:
        if operation == "UPDATE":
            self._track_rowid_moves(table_name)
        if not self._conn.in_transaction and self._conn.isolation_level is not None:
            self._conn.execute("BEGIN IMMEDIATE")

        before_rows: Dict[int, Dict[str, Any]] = {}
        if operation in ("UPDATE", "DELETE"):
            before_rows = self._select_matching(sql, parameters, table_name)
        if operation == "UPDATE":
            self._conn.execute(f"DELETE FROM temp.{_ROWID_MOVES}")

        cursor = self._conn.execute(sql, parameters)

        after_rows: Dict[int, Dict[str, Any]] = {}
        moves: Dict[int, int] = {}
        if operation == "INSERT":
            after_rows = self._select_inserted(cursor, table_name)
        elif operation == "UPDATE":
            moves = self._rowid_moves()
            after_rows = self._select_rowids(
                table_name, [moves.get(rowid, rowid) for rowid in before_rows]
            )

        txid = self._current_txid()
        if operation == "INSERT":
            for image in after_rows.values():
                self._append(txid, table_name, operation, None, image)
        elif operation == "UPDATE":
            for rowid, before in before_rows.items():
                after = after_rows.get(moves.get(rowid, rowid))
                if after is None:
                    # 行在同一语句中被其他触发器删除
                    logger.warning("journal_update_row_missing", table=table_name, rowid=rowid)
                    self._append(txid, table_name, "DELETE", before, None)
                    continue
                self._append(txid, table_name, operation, before, after)
        else:
            for before in before_rows.values():
                self._append(txid, table_name, operation, before, None)

        return cursor

    def _track_rowid_moves(self, table_name: str) -> None:
        """为表创建记录 ROWID 变化的临时触发器（每个连接一次）"""
        if table_name in self._move_triggers:
            return
        self._conn.execute(f"""
            CREATE TEMP TRIGGER IF NOT EXISTS "{_ROWID_MOVES}_{table_name}"
            AFTER UPDATE ON "{table_name}"
            WHEN old.rowid <> new.rowid
            BEGIN
                INSERT INTO {_ROWID_MOVES} (old_rowid, new_rowid) VALUES (old.rowid, new.rowid);
            END
        """)
        self._move_triggers.add(table_name)

    def _rowid_moves(self) -> Dict[int, int]:
        cursor = self._conn.execute(f"SELECT old_rowid, new_rowid FROM temp.{_ROWID_MOVES}")
        return {row[0]: row[1] for row in cursor.fetchall()}

    def _select_matching(
        self,
        sql: str,
        parameters: Union[Sequence[Any], Dict[str, Any]],
        table_name: str
    ) -> Dict[int, Dict[str, Any]]:
        """按原语句的 WHERE 条件读取受影响的行"""
        where_clause, preceding = split_where(sql)
        select_sql = f'SELECT rowid AS {_ROWID}, * FROM "{table_name}"'
        params: Union[Sequence[Any], Dict[str, Any]] = parameters
        if where_clause:
            select_sql += f" WHERE {where_clause}"
            if not isinstance(parameters, dict):
                params = tuple(parameters)[preceding:]
        else:
            params = () if not isinstance(parameters, dict) else parameters

        cursor = self._conn.execute(select_sql, params)
        return self._rows_by_rowid(cursor)

    def _select_inserted(
        self,
        cursor: sqlite3.Cursor,
        table_name: str
    ) -> Dict[int, Dict[str, Any]]:
        """根据 lastrowid 和 rowcount 定位新插入的行"""
        last = cursor.lastrowid
        count = cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0
        if not last or count == 0:
            return {}
        return self._select_rowids(table_name, list(range(last - count + 1, last + 1)))

    def _select_rowids(self, table_name: str, rowids: List[int]) -> Dict[int, Dict[str, Any]]:
        if not rowids:
            return {}
        placeholders = ",".join("?" * len(rowids))
        cursor = self._conn.execute(
            f'SELECT rowid AS {_ROWID}, * FROM "{table_name}" WHERE rowid IN ({placeholders})',
            rowids,
        )
        return self._rows_by_rowid(cursor)

    @staticmethod
    def _rows_by_rowid(cursor: sqlite3.Cursor) -> Dict[int, Dict[str, Any]]:
        columns = [desc[0] for desc in cursor.description]
        result: Dict[int, Dict[str, Any]] = {}
        for row in cursor.fetchall():
            image = dict(zip(columns, tuple(row)))
            rowid = image.pop(_ROWID)
            result[rowid] = image
        return result

    def _append(
        self,
        txid: str,
        table_name: str,
        operation: str,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]]
    ) -> None:
        self._conn.execute(f"""
            INSERT INTO {JOURNAL_TABLE}
                (txid, schema_name, table_name, operation,
                 before_image, after_image, captured_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            txid,
            None,
            table_name,
            operation,
            encode_image(before),
            encode_image(after),
            datetime.now(timezone.utc).isoformat(),
        ))

    # ========================================================================
    # 委托给底层连接的方法
    # ========================================================================

    def commit(self) -> None:
        self._conn.commit()
        self._txid = None

    def rollback(self) -> None:
        self._conn.rollback()
        self._txid = None
        # 事务内创建的临时触发器随回滚撤销
        self._move_triggers.clear()

    def close(self) -> None:
        self._conn.close()

    def cursor(self) -> sqlite3.Cursor:
        return self._conn.cursor()

    @contextmanager
    def transaction(self) -> Iterator["JournalingConnection"]:
        """事务上下文管理器"""
        try:
            yield self
            self.commit()
        except Exception:
            self.rollback()
            raise

    def __enter__(self) -> "JournalingConnection":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
