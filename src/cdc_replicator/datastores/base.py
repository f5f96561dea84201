"""
数据存储连接器抽象基类

连接器同时承担两种角色:
    - 源端: 读取表结构、快照读取、变更日志读取（支持时）、全表读取（轮询比对）
    - 目标端: 事务性行写入、冲突检测所需的行读取、死信表读写
"""

import random
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from cdc_replicator.errors import DatastoreConnectionError
from cdc_replicator.models.datastore import DatastoreDescriptor
from cdc_replicator.models.event import ChangeEvent, DeadLetterRecord, OperationType
from cdc_replicator.models.mapping import TableRef, TableSchema


class JournalEntry(BaseModel):
    """变更日志中的一条记录"""
    seq: int = Field(..., ge=1)
    txid: Optional[str] = None
    table: TableRef
    operation: OperationType
    before_image: Optional[Dict[str, Any]] = None
    after_image: Optional[Dict[str, Any]] = None
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class JournalState(BaseModel):
    """
    某张表的变更日志状态

    属性:
        purged_through: 已被轮转清理到的最大 seq
        head_seq: 当前日志中的最大 seq（全表范围）
    """
    purged_through: int = 0
    head_seq: int = 0


class SnapshotResult(BaseModel):
    """快照读取结果：行数据与同一读事务内取得的日志位置"""
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    journal_seq: Optional[int] = None


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    jitter: bool = True
) -> float:
    """
    计算指数退避延迟

    参数:
        attempt: 第几次失败（从 1 开始）
        base: 基础延迟（秒）
        cap: 延迟上限（秒）
        jitter: 是否加入随机抖动
    """
    delay = base * (2 ** max(attempt - 1, 0))
    if jitter:
        delay += random.uniform(0, base)
    return min(delay, cap)


class DatastoreSession(ABC):
    """
    一次借出的数据库连接

    子类只需实现方言相关的部分（占位符、标识符引用、DDL、表结构读取），
    行级读写和死信表操作在基类中以通用 SQL 实现。
    """

    placeholder = "?"

    @abstractmethod
    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """执行语句，返回影响行数"""
        raise NotImplementedError

    @abstractmethod
    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """执行查询，返回字典列表"""
        raise NotImplementedError

    @abstractmethod
    def quote(self, name: str) -> str:
        """引用标识符"""
        raise NotImplementedError

    @abstractmethod
    def dead_letter_ddl(self, ref: TableRef) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    async def describe_table(self, ref: TableRef) -> Optional[TableSchema]:
        """读取表结构，表不存在时返回 None"""
        raise NotImplementedError

    async def read_journal(self, ref: TableRef, after_seq: int, limit: int) -> List[JournalEntry]:
        """读取 seq > after_seq 的变更日志"""
        raise NotImplementedError("该数据存储不支持变更日志捕获")

    async def journal_state(self, ref: TableRef) -> JournalState:
        raise NotImplementedError("该数据存储不支持变更日志捕获")

    # ------------------------------------------------------------------
    # 通用行操作
    # ------------------------------------------------------------------

    def table_sql(self, ref: TableRef) -> str:
        if ref.schema_name:
            return f"{self.quote(ref.schema_name)}.{self.quote(ref.table_name)}"
        return self.quote(ref.table_name)

    def _where_key(self, key_columns: Sequence[str]) -> str:
        return " AND ".join(f"{self.quote(c)} = {self.placeholder}" for c in key_columns)

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = await self.fetch_all(sql, params)
        return rows[0] if rows else None

    async def fetch_row(
        self,
        ref: TableRef,
        key_columns: Sequence[str],
        key: Sequence[Any]
    ) -> Optional[Dict[str, Any]]:
        """按键读取目标行"""
        sql = f"SELECT * FROM {self.table_sql(ref)} WHERE {self._where_key(key_columns)}"
        return await self.fetch_one(sql, tuple(key))

    async def fetch_rows(
        self,
        ref: TableRef,
        columns: Optional[Sequence[str]] = None,
        order_by: Sequence[str] = ()
    ) -> List[Dict[str, Any]]:
        """读取整张表（快照和轮询比对使用）"""
        select = ", ".join(self.quote(c) for c in columns) if columns else "*"
        sql = f"SELECT {select} FROM {self.table_sql(ref)}"
        if order_by:
            sql += " ORDER BY " + ", ".join(self.quote(c) for c in order_by)
        return await self.fetch_all(sql)

    async def insert_row(self, ref: TableRef, row: Dict[str, Any]) -> None:
        columns = list(row)
        sql = (
            f"INSERT INTO {self.table_sql(ref)} "
            f"({', '.join(self.quote(c) for c in columns)}) "
            f"VALUES ({', '.join(self.placeholder for _ in columns)})"
        )
        await self.execute(sql, tuple(row[c] for c in columns))

    async def update_row(
        self,
        ref: TableRef,
        row: Dict[str, Any],
        key_columns: Sequence[str],
        key: Sequence[Any]
    ) -> int:
        columns = list(row)
        assignments = ", ".join(f"{self.quote(c)} = {self.placeholder}" for c in columns)
        sql = f"UPDATE {self.table_sql(ref)} SET {assignments} WHERE {self._where_key(key_columns)}"
        return await self.execute(sql, tuple(row[c] for c in columns) + tuple(key))

    async def delete_row(self, ref: TableRef, key_columns: Sequence[str], key: Sequence[Any]) -> int:
        sql = f"DELETE FROM {self.table_sql(ref)} WHERE {self._where_key(key_columns)}"
        return await self.execute(sql, tuple(key))

    async def insert_if_absent(
        self,
        ref: TableRef,
        row: Dict[str, Any],
        key_columns: Sequence[str]
    ) -> bool:
        """目标不存在该键时插入，返回是否插入"""
        key = tuple(row.get(c) for c in key_columns)
        if await self.fetch_row(ref, key_columns, key) is not None:
            return False
        await self.insert_row(ref, row)
        return True

    # ------------------------------------------------------------------
    # 死信表
    # ------------------------------------------------------------------

    async def ensure_dead_letter_table(self, ref: TableRef) -> None:
        for statement in self.dead_letter_ddl(ref):
            await self.execute(statement)

    async def insert_dead_letter(self, ref: TableRef, record: DeadLetterRecord) -> bool:
        """
        追加死信记录

        同一 (订阅, 表, 序列号) 只保留一条，崩溃后重放不会产生重复记录。

        返回:
            是否新写入
        """
        event = record.original_event
        table = self.table_sql(ref)
        existing = await self.fetch_one(
            f"SELECT id FROM {table} WHERE subscription_id = {self.placeholder} "
            f"AND table_name = {self.placeholder} AND source_sequence_number = {self.placeholder}",
            (event.subscription_id, event.table.qualified, event.source_sequence_number),
        )
        if existing is not None:
            return False
        await self.execute(
            f"INSERT INTO {table} (subscription_id, table_name, source_sequence_number, "
            f"operation, original_event, failure_reason, attempt_count, first_failed_at) "
            f"VALUES ({', '.join([self.placeholder] * 8)})",
            (
                event.subscription_id,
                event.table.qualified,
                event.source_sequence_number,
                event.operation.value,
                event.to_json(),
                record.failure_reason,
                record.attempt_count,
                record.first_failed_at.isoformat(),
            ),
        )
        return True

    async def list_dead_letters(
        self,
        ref: TableRef,
        subscription: str,
        include_replayed: bool = False
    ) -> List[DeadLetterRecord]:
        """按表和序列号顺序列出死信"""
        sql = (
            f"SELECT id, original_event, failure_reason, attempt_count, first_failed_at, replayed_at "
            f"FROM {self.table_sql(ref)} WHERE subscription_id = {self.placeholder}"
        )
        if not include_replayed:
            sql += " AND replayed_at IS NULL"
        sql += " ORDER BY table_name, source_sequence_number"
        rows = await self.fetch_all(sql, (subscription,))
        return [
            DeadLetterRecord(
                id=row["id"],
                original_event=ChangeEvent.from_json(row["original_event"]),
                failure_reason=row["failure_reason"],
                attempt_count=row["attempt_count"],
                first_failed_at=datetime.fromisoformat(row["first_failed_at"]),
                replayed_at=datetime.fromisoformat(row["replayed_at"]) if row["replayed_at"] else None,
            )
            for row in rows
        ]

    async def mark_dead_letter_replayed(self, ref: TableRef, record_id: int) -> None:
        await self.execute(
            f"UPDATE {self.table_sql(ref)} SET replayed_at = {self.placeholder} "
            f"WHERE id = {self.placeholder}",
            (datetime.now(timezone.utc).isoformat(), record_id),
        )

    async def count_dead_letters(self, ref: TableRef, subscription: str) -> int:
        row = await self.fetch_one(
            f"SELECT COUNT(*) AS cnt FROM {self.table_sql(ref)} "
            f"WHERE subscription_id = {self.placeholder}",
            (subscription,),
        )
        return int(row["cnt"]) if row else 0


class BaseDatastore(ABC):
    """
    数据存储连接器抽象基类

    所有连接器（SQLite、MySQL 等）的基类，定义统一的连接、会话和事务接口。
    """

    # 连接器是否能读取 _cdc_change_log 变更日志
    supports_journal = False

    def __init__(self, descriptor: DatastoreDescriptor):
        self.descriptor = descriptor
        self.name = descriptor.name
        self._connected = False

    @abstractmethod
    async def connect(self) -> None:
        """建立连接（池）"""
        raise NotImplementedError

    @abstractmethod
    async def disconnect(self) -> None:
        """断开连接（池）"""
        raise NotImplementedError

    @abstractmethod
    def session(self) -> AsyncContextManager[DatastoreSession]:
        """借出一个自动提交的会话"""
        raise NotImplementedError

    @abstractmethod
    def transaction(self) -> AsyncContextManager[DatastoreSession]:
        """借出一个会话并开启写事务，正常退出提交，异常退出回滚"""
        raise NotImplementedError

    @abstractmethod
    def consistent_read(self) -> AsyncContextManager[DatastoreSession]:
        """开启一致性读事务（快照读取使用）"""
        raise NotImplementedError

    @property
    def supports_transactions(self) -> bool:
        return self.descriptor.capabilities.supports_transactional_apply

    def is_connected(self) -> bool:
        return self._connected

    async def health_check(self) -> None:
        """
        执行 connection_test_query 检查连接是否可用

        异常:
            DatastoreConnectionError: 检查语句执行失败
        """
        try:
            async with self.session() as session:
                await session.fetch_all(self.descriptor.connection_test_query)
        except Exception as e:
            raise DatastoreConnectionError(self.name, f"健康检查失败: {e}") from e

    async def describe_table(self, ref: TableRef) -> Optional[TableSchema]:
        async with self.session() as session:
            return await session.describe_table(ref)

    async def snapshot(self, ref: TableRef, order_by: Sequence[str] = ()) -> SnapshotResult:
        """
        快照读取

        在同一个一致性读事务中读取表数据和变更日志位置，
        保证快照与之后的增量捕获之间既无缺口也无重复。
        """
        async with self.consistent_read() as session:
            journal_seq: Optional[int] = None
            if self.supports_journal:
                state = await session.journal_state(ref)
                journal_seq = state.head_seq
            rows = await session.fetch_rows(ref, order_by=order_by)
        return SnapshotResult(rows=rows, journal_seq=journal_seq)
