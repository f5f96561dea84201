"""
SQLite 数据存储连接器
"""

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiosqlite

from cdc_replicator.core.journal import JOURNAL_TABLE, LOG_STATE_TABLE, decode_image
from cdc_replicator.datastores.base import (
    BaseDatastore,
    DatastoreSession,
    JournalEntry,
    JournalState,
)
from cdc_replicator.errors import DatastoreConnectionError
from cdc_replicator.models.datastore import DatastoreDescriptor, SQLiteConnection
from cdc_replicator.models.mapping import ColumnDefinition, TableRef, TableSchema
from cdc_replicator.utils.logging import get_logger

logger = get_logger(__name__)


class SQLiteSession(DatastoreSession):
    """
    基于 aiosqlite 的会话

    schema_name 为空或 "main" 时表示主库，其它值指向 ATTACH 的数据库。
    """

    placeholder = "?"

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        cursor = await self._conn.execute(sql, tuple(params))
        rowcount = cursor.rowcount
        await cursor.close()
        return rowcount

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with self._conn.execute(sql, tuple(params)) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    def quote(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def table_sql(self, ref: TableRef) -> str:
        if ref.schema_name and ref.schema_name != "main":
            return f"{self.quote(ref.schema_name)}.{self.quote(ref.table_name)}"
        return self.quote(ref.table_name)

    def _pragma(self, ref: TableRef, pragma: str, argument: str) -> str:
        prefix = ""
        if ref.schema_name and ref.schema_name != "main":
            prefix = f"{self.quote(ref.schema_name)}."
        return f"PRAGMA {prefix}{pragma}({self.quote(argument)})"

    def dead_letter_ddl(self, ref: TableRef) -> List[str]:
        table = self.table_sql(ref)
        index = self.quote(f"uq_{ref.table_name}_event")
        if ref.schema_name and ref.schema_name != "main":
            index = f"{self.quote(ref.schema_name)}.{index}"
        return [
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                subscription_id TEXT NOT NULL,
                table_name TEXT NOT NULL,
                source_sequence_number INTEGER NOT NULL,
                operation TEXT NOT NULL,
                original_event TEXT NOT NULL,
                failure_reason TEXT NOT NULL,
                attempt_count INTEGER NOT NULL,
                first_failed_at TEXT NOT NULL,
                replayed_at TEXT
            )
            """,
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS {index}
                ON {self.quote(ref.table_name)}(subscription_id, table_name, source_sequence_number)
            """,
        ]

    async def describe_table(self, ref: TableRef) -> Optional[TableSchema]:
        """通过 PRAGMA table_info / index_list 读取表结构"""
        info = await self.fetch_all(self._pragma(ref, "table_info", ref.table_name))
        if not info:
            return None

        pk_columns = sorted((row for row in info if row["pk"]), key=lambda r: r["pk"])
        primary_key = [row["name"] for row in pk_columns]
        # INTEGER PRIMARY KEY 是 ROWID 别名，插入时自动分配
        rowid_alias = (
            len(pk_columns) == 1 and str(pk_columns[0]["type"]).upper() == "INTEGER"
        )

        columns = [
            ColumnDefinition(
                name=row["name"],
                type=row["type"] or "",
                nullable=not row["notnull"] and not row["pk"],
                default=row["dflt_value"],
                auto_increment=rowid_alias and bool(row["pk"]),
            )
            for row in info
        ]

        unique_keys: List[List[str]] = []
        for index in await self.fetch_all(self._pragma(ref, "index_list", ref.table_name)):
            if not index["unique"] or index["origin"] == "pk" or index["partial"]:
                continue
            index_columns = await self.fetch_all(self._pragma(ref, "index_info", index["name"]))
            names = [row["name"] for row in sorted(index_columns, key=lambda r: r["seqno"])]
            if names and all(names):
                unique_keys.append(names)

        return TableSchema(
            schema_name=ref.schema_name,
            table_name=ref.table_name,
            primary_key=primary_key,
            columns=columns,
            unique_keys=unique_keys,
        )

    async def _journal_exists(self) -> bool:
        row = await self.fetch_one(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (JOURNAL_TABLE,),
        )
        return row is not None

    async def read_journal(self, ref: TableRef, after_seq: int, limit: int) -> List[JournalEntry]:
        if not await self._journal_exists():
            return []
        rows = await self.fetch_all(f"""
            SELECT seq, txid, operation, before_image, after_image, captured_at
            FROM {JOURNAL_TABLE}
            WHERE table_name = ? AND seq > ?
            ORDER BY seq
            LIMIT ?
        """, (ref.table_name, after_seq, limit))
        return [
            JournalEntry(
                seq=row["seq"],
                txid=row["txid"],
                table=ref,
                operation=row["operation"],
                before_image=decode_image(row["before_image"]),
                after_image=decode_image(row["after_image"]),
                captured_at=datetime.fromisoformat(row["captured_at"]),
            )
            for row in rows
        ]

    async def journal_state(self, ref: TableRef) -> JournalState:
        if not await self._journal_exists():
            return JournalState()
        # AUTOINCREMENT 的高水位，日志被清空后依然有效
        head = await self.fetch_one(
            "SELECT seq FROM sqlite_sequence WHERE name = ?", (JOURNAL_TABLE,)
        )
        purged = await self.fetch_one(
            f"SELECT purged_through FROM {LOG_STATE_TABLE} WHERE table_name = ?",
            (ref.table_name,),
        )
        return JournalState(
            purged_through=purged["purged_through"] if purged else 0,
            head_seq=head["seq"] if head else 0,
        )


class SQLiteDatastore(BaseDatastore):
    """
    SQLite 数据存储

    使用 aiosqlite 维护固定大小的连接池。连接处于自动提交模式，
    事务由 transaction() / consistent_read() 显式开启。
    """

    supports_journal = True

    def __init__(self, descriptor: DatastoreDescriptor):
        super().__init__(descriptor)
        if not isinstance(descriptor.connection, SQLiteConnection):
            raise ValueError("SQLiteDatastore 需要 SQLiteConnection 配置")
        self.conn_config: SQLiteConnection = descriptor.connection
        self._pool: Optional[asyncio.Queue] = None
        self._connections: List[aiosqlite.Connection] = []

    async def connect(self) -> None:
        """打开连接池"""
        pool: asyncio.Queue = asyncio.Queue()
        connections: List[aiosqlite.Connection] = []
        try:
            for _ in range(self.conn_config.pool_size):
                conn = await aiosqlite.connect(
                    self.conn_config.db_path,
                    timeout=self.conn_config.timeout,
                    isolation_level=None,
                )
                conn.row_factory = sqlite3.Row
                connections.append(conn)
                pool.put_nowait(conn)
            await connections[0].execute("PRAGMA journal_mode=WAL")
        except (sqlite3.Error, OSError) as e:
            for conn in connections:
                await conn.close()
            logger.error("sqlite_connect_failed", datastore=self.name, error=str(e))
            raise DatastoreConnectionError(self.name, f"无法打开 SQLite 数据库: {e}") from e

        self._pool = pool
        self._connections = connections
        self._connected = True
        logger.info(
            "sqlite_connected",
            datastore=self.name,
            db_path=self.conn_config.db_path,
            pool_size=len(connections),
        )

    async def disconnect(self) -> None:
        """关闭连接池"""
        for conn in self._connections:
            await conn.close()
        self._connections = []
        self._pool = None
        self._connected = False
        logger.info("sqlite_disconnected", datastore=self.name)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[SQLiteSession]:
        if self._pool is None:
            raise DatastoreConnectionError(self.name, "SQLite 未连接")
        conn = await self._pool.get()
        try:
            yield SQLiteSession(conn)
        finally:
            self._pool.put_nowait(conn)

    @asynccontextmanager
    async def _transaction(self, begin: str) -> AsyncIterator[SQLiteSession]:
        async with self.session() as session:
            await session.execute(begin)
            try:
                yield session
                await session.execute("COMMIT")
            except BaseException:
                try:
                    await session.execute("ROLLBACK")
                except sqlite3.Error as e:
                    logger.warning("sqlite_rollback_failed", datastore=self.name, error=str(e))
                raise

    def transaction(self) -> Any:
        return self._transaction("BEGIN IMMEDIATE")

    def consistent_read(self) -> Any:
        # 第一条 SELECT 建立读快照，之后的读取都基于同一快照
        return self._transaction("BEGIN")
