"""
MySQL 数据存储连接器
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import aiomysql
import pymysql

from cdc_replicator.datastores.base import BaseDatastore, DatastoreSession
from cdc_replicator.errors import DatastoreConnectionError
from cdc_replicator.models.datastore import DatastoreDescriptor, MySQLConnection
from cdc_replicator.models.mapping import ColumnDefinition, TableRef, TableSchema
from cdc_replicator.utils.logging import get_logger

logger = get_logger(__name__)


class MySQLSession(DatastoreSession):
    """基于 aiomysql 的会话，schema_name 对应 MySQL 数据库名"""

    placeholder = "%s"

    def __init__(self, conn: aiomysql.Connection, default_schema: str):
        self._conn = conn
        self._default_schema = default_schema

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        async with self._conn.cursor() as cursor:
            return await cursor.execute(sql, tuple(params) or None)

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with self._conn.cursor(aiomysql.DictCursor) as cursor:
            await cursor.execute(sql, tuple(params) or None)
            rows = await cursor.fetchall()
        return list(rows)

    def quote(self, name: str) -> str:
        return "`" + name.replace("`", "``") + "`"

    def dead_letter_ddl(self, ref: TableRef) -> List[str]:
        return [f"""
            CREATE TABLE IF NOT EXISTS {self.table_sql(ref)} (
                id BIGINT AUTO_INCREMENT PRIMARY KEY,
                subscription_id VARCHAR(128) NOT NULL,
                table_name VARCHAR(255) NOT NULL,
                source_sequence_number BIGINT NOT NULL,
                operation VARCHAR(16) NOT NULL,
                original_event LONGTEXT NOT NULL,
                failure_reason TEXT NOT NULL,
                attempt_count INT NOT NULL,
                first_failed_at VARCHAR(64) NOT NULL,
                replayed_at VARCHAR(64) NULL,
                UNIQUE KEY uq_dead_letter_event (subscription_id, table_name, source_sequence_number)
            ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
        """]

    async def describe_table(self, ref: TableRef) -> Optional[TableSchema]:
        """从 information_schema 读取表结构"""
        schema = ref.schema_name or self._default_schema
        rows = await self.fetch_all("""
            SELECT COLUMN_NAME, COLUMN_TYPE, IS_NULLABLE, COLUMN_DEFAULT,
                   EXTRA, CHARACTER_MAXIMUM_LENGTH, COLUMN_KEY
            FROM information_schema.COLUMNS
            WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s
            ORDER BY ORDINAL_POSITION
        """, (schema, ref.table_name))
        if not rows:
            return None

        columns = [
            ColumnDefinition(
                name=row["COLUMN_NAME"],
                type=row["COLUMN_TYPE"],
                length=row["CHARACTER_MAXIMUM_LENGTH"] or None,
                nullable=row["IS_NULLABLE"] == "YES",
                default=row["COLUMN_DEFAULT"],
                auto_increment="auto_increment" in (row["EXTRA"] or "").lower(),
            )
            for row in rows
        ]

        index_rows = await self.fetch_all("""
            SELECT INDEX_NAME, COLUMN_NAME
            FROM information_schema.STATISTICS
            WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s AND NON_UNIQUE = 0
            ORDER BY INDEX_NAME, SEQ_IN_INDEX
        """, (schema, ref.table_name))
        indexes: Dict[str, List[str]] = {}
        for row in index_rows:
            indexes.setdefault(row["INDEX_NAME"], []).append(row["COLUMN_NAME"])

        primary_key = indexes.pop("PRIMARY", [])
        return TableSchema(
            schema_name=ref.schema_name,
            table_name=ref.table_name,
            primary_key=primary_key,
            columns=columns,
            unique_keys=list(indexes.values()),
        )


class MySQLDatastore(BaseDatastore):
    """
    MySQL 数据存储

    使用 aiomysql 连接池。MySQL 源端没有可读取的变更日志，捕获走轮询比对。
    """

    def __init__(self, descriptor: DatastoreDescriptor):
        super().__init__(descriptor)
        if not isinstance(descriptor.connection, MySQLConnection):
            raise ValueError("MySQLDatastore 需要 MySQLConnection 配置")
        self.conn_config: MySQLConnection = descriptor.connection
        self._pool: Optional[aiomysql.Pool] = None

    async def connect(self) -> None:
        """建立 MySQL 连接池"""
        password = self.conn_config.resolve_password()
        if self.conn_config.password_secret and password is None:
            raise DatastoreConnectionError(
                self.name,
                f"密钥 {self.conn_config.password_secret} 未设置",
            )
        try:
            self._pool = await aiomysql.create_pool(
                host=self.conn_config.host,
                port=self.conn_config.port,
                user=self.conn_config.username,
                password=password or "",
                db=self.conn_config.database,
                charset=self.conn_config.charset,
                connect_timeout=self.conn_config.connect_timeout,
                minsize=1,
                maxsize=self.conn_config.pool_size,
                autocommit=True,
            )
        except (pymysql.err.OperationalError, OSError) as e:
            logger.error("mysql_connect_failed", datastore=self.name, error=str(e))
            raise DatastoreConnectionError(self.name, f"无法连接 MySQL: {e}") from e

        self._connected = True
        logger.info(
            "mysql_connected",
            datastore=self.name,
            host=self.conn_config.host,
            database=self.conn_config.database,
        )

    async def disconnect(self) -> None:
        """关闭连接池"""
        if self._pool:
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None
        self._connected = False
        logger.info("mysql_disconnected", datastore=self.name)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[MySQLSession]:
        if self._pool is None:
            raise DatastoreConnectionError(self.name, "MySQL 未连接")
        async with self._pool.acquire() as conn:
            yield MySQLSession(conn, self.conn_config.database)

    @asynccontextmanager
    async def _transaction(self, begin: Optional[str]) -> AsyncIterator[MySQLSession]:
        async with self.session() as session:
            conn = session._conn
            if begin:
                await session.execute(begin)
            else:
                await conn.begin()
            try:
                yield session
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

    def transaction(self) -> Any:
        return self._transaction(None)

    def consistent_read(self) -> Any:
        return self._transaction("START TRANSACTION WITH CONSISTENT SNAPSHOT, READ ONLY")
