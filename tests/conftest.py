"""
测试配置和共享工具 (unittest 兼容)
"""

import asyncio
import shutil
import sqlite3
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from cdc_replicator.core.journal import JournalingConnection
from cdc_replicator.models.sync_config import ReplicationConfig


# ============================================================================
# SQLite 数据库工具
# ============================================================================

CUSTOMERS_DDL = """
    CREATE TABLE IF NOT EXISTS customers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT
    )
"""

TARGET_CUSTOMERS_DDL = """
    CREATE TABLE IF NOT EXISTS customers (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT UNIQUE
    )
"""


def create_temp_dir() -> Path:
    """创建临时目录"""
    return Path(tempfile.mkdtemp(prefix="cdc-test-"))


def remove_temp_dir(path: Path) -> None:
    """删除临时目录（Windows 上文件可能被锁定，忽略失败）"""
    shutil.rmtree(path, ignore_errors=True)


def create_sqlite_connection(db_path: Path) -> sqlite3.Connection:
    """创建启用 WAL 的 SQLite 连接"""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def create_source_db(db_path: Path) -> JournalingConnection:
    """创建带 customers 表的源库，返回记录变更日志的连接"""
    conn = create_sqlite_connection(db_path)
    conn.execute(CUSTOMERS_DDL)
    conn.commit()
    return JournalingConnection(conn, enabled_tables=["customers"])


def create_target_db(db_path: Path) -> None:
    """创建目标库（email 带唯一约束，便于构造应用失败）"""
    conn = create_sqlite_connection(db_path)
    try:
        conn.execute(TARGET_CUSTOMERS_DDL)
        conn.commit()
    finally:
        conn.close()


def read_rows(db_path: Path, table: str = "customers") -> List[Dict[str, Any]]:
    """用独立连接读取整张表"""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    try:
        return [dict(row) for row in conn.execute(f"SELECT * FROM {table} ORDER BY 1")]
    finally:
        conn.close()


def execute_sql(db_path: Path, sql: str, params: tuple = ()) -> None:
    """用独立连接执行一条写语句"""
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


# ============================================================================
# 配置工厂函数
# ============================================================================

def create_test_config_dict(
    source_path: Path,
    target_path: Path,
    checkpoint_path: Path,
    capture_mode: str = "log",
    on_error: str = "route-to-dlq",
    initial_snapshot: bool = True,
    options: Optional[Dict[str, Any]] = None,
    apply_settings: Optional[Dict[str, Any]] = None,
    performance: Optional[Dict[str, Any]] = None,
    shutdown_timeout_seconds: float = 5,
) -> Dict[str, Any]:
    """
    返回 sqlite -> sqlite 的测试配置字典

    options / apply_settings / performance 中的键覆盖订阅和通道的默认值
    """
    return {
        "datastores": [
            {
                "name": "src",
                "type": "sqlite",
                "connection": {"type": "sqlite", "db_path": str(source_path), "pool_size": 2},
                "cdc_settings": {
                    "mode": capture_mode,
                    "poll_interval_seconds": 0.05,
                    "fetch_size": 100,
                },
            },
            {
                "name": "dst",
                "type": "sqlite",
                "connection": {"type": "sqlite", "db_path": str(target_path), "pool_size": 2},
                "cdc_enabled": False,
            },
        ],
        "channels": [
            {
                "name": "customers_channel",
                "source_datastore": "src",
                "target_datastore": "dst",
                "tables": [
                    {
                        "source": {"table": "customers"},
                        "target": {"table": "customers"},
                    }
                ],
                "performance": {"apply_batch_size": 50, "queue_capacity": 100, **(performance or {})},
            }
        ],
        "subscriptions": [
            {
                "name": "customers_subscription",
                "channel": "customers_channel",
                "options": {"initial_snapshot": initial_snapshot, **(options or {})},
                "apply_settings": {
                    "apply_batch_timeout_seconds": 0.05,
                    "retries": {"max_attempts": 5, "backoff_seconds": 0},
                    "on_error": on_error,
                    "dead_letter": {"enabled": True, "table_name": "cdc_dead_letter"},
                    **(apply_settings or {}),
                },
                "shutdown_timeout_seconds": shutdown_timeout_seconds,
            }
        ],
        "checkpoint_db": str(checkpoint_path),
        "log_level": "DEBUG",
    }


def create_test_config(*args: Any, **kwargs: Any) -> ReplicationConfig:
    return ReplicationConfig.model_validate(create_test_config_dict(*args, **kwargs))


def create_test_config_yaml(source_path: Path, target_path: Path, checkpoint_path: Path) -> str:
    """返回最小的测试配置 YAML 字符串"""
    return f"""
datastores:
  - name: src
    type: sqlite
    db_path: "{source_path}"
  - name: dst
    type: sqlite
    db_path: "{target_path}"
    cdc_enabled: false

channels:
  - name: customers_channel
    source_datastore: src
    target_datastore: dst
    tables:
      - source: {{table: customers}}

subscriptions:
  - name: customers_subscription
    channel: customers_channel

checkpoint_db: "{checkpoint_path}"
log_level: "DEBUG"
"""


# ============================================================================
# 异步工具
# ============================================================================

async def no_sleep(_delay: float) -> None:
    """替换重试等待"""
    return None


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float = 10.0,
    interval: float = 0.05,
    message: Optional[str] = None,
) -> None:
    """轮询等待条件成立，超时抛出 AssertionError"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError(message or "等待条件超时")
