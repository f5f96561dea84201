"""
断点持久化存储 - 使用 SQLite 本地存储

保存内容:
    - 表级断点（已提交或已进入死信的最大源端序列号）
    - 轮询捕获的影子镜像（随断点一起推进）
    - 订阅状态快照（供 status 命令在进程之外读取）
    - 运维控制请求（pause/resume/stop，由其它 CLI 进程写入）
"""

import json
import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from cdc_replicator.core.journal import encode_image
from cdc_replicator.models.position import SubscriptionStatus, TableCheckpoint
from cdc_replicator.utils.logging import get_logger

logger = get_logger(__name__)

# 影子镜像变更: (行键, 新镜像)，新镜像为 None 表示删除
ShadowChange = Tuple[str, Optional[Dict[str, Any]]]


def shadow_key(key: Iterable[Any]) -> str:
    """行键序列化为影子表主键"""
    return json.dumps(list(key), default=str, ensure_ascii=False)


class CheckpointStore:
    """
    断点存储管理器

    使用本地 SQLite 数据库存储断点和订阅状态，每次操作打开独立连接。
    """

    def __init__(self, db_path: Union[str, Path] = "checkpoints.db"):
        """
        初始化断点存储

        参数:
            db_path: 存储数据库路径，默认 checkpoints.db
        """
        self.db_path = Path(db_path)
        self._ensure_tables()

    def close(self) -> None:
        """关闭存储（每次操作都使用独立连接，无需释放）"""
        pass

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """获取连接，块结束时提交（异常时回滚）并关闭"""
        with closing(sqlite3.connect(str(self.db_path), timeout=30.0)) as conn:
            conn.row_factory = sqlite3.Row
            with conn:
                yield conn

    def _ensure_tables(self) -> None:
        """确保表结构存在"""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS table_checkpoints (
                    subscription TEXT NOT NULL,
                    table_name TEXT NOT NULL,
                    sequence_number INTEGER NOT NULL DEFAULT 0,
                    capture_timestamp TEXT,
                    committed_at TEXT NOT NULL,
                    snapshot_completed INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (subscription, table_name)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS shadow_rows (
                    subscription TEXT NOT NULL,
                    table_name TEXT NOT NULL,
                    row_key TEXT NOT NULL,
                    row_image TEXT NOT NULL,
                    PRIMARY KEY (subscription, table_name, row_key)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS subscription_status (
                    subscription TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS control_requests (
                    subscription TEXT PRIMARY KEY,
                    action TEXT NOT NULL,
                    requested_at TEXT NOT NULL
                )
            """)

    # ========================================================================
    # 表级断点
    # ========================================================================

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> TableCheckpoint:
        return TableCheckpoint(
            subscription=row["subscription"],
            table=row["table_name"],
            sequence_number=row["sequence_number"],
            capture_timestamp=datetime.fromisoformat(row["capture_timestamp"])
            if row["capture_timestamp"] else None,
            committed_at=datetime.fromisoformat(row["committed_at"]),
            snapshot_completed=bool(row["snapshot_completed"]),
        )

    def load_checkpoint(self, subscription: str, table: str) -> Optional[TableCheckpoint]:
        """
        加载表级断点

        返回:
            TableCheckpoint 或 None（如果无记录）
        """
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT * FROM table_checkpoints
                WHERE subscription = ? AND table_name = ?
            """, (subscription, table)).fetchone()
        return self._row_to_checkpoint(row) if row else None

    def load_checkpoints(self, subscription: str) -> Dict[str, TableCheckpoint]:
        """
        列出订阅的全部表级断点

        返回:
            {table: checkpoint} 字典
        """
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM table_checkpoints WHERE subscription = ?",
                (subscription,),
            ).fetchall()
        return {row["table_name"]: self._row_to_checkpoint(row) for row in rows}

    def _upsert_checkpoint(
        self,
        conn: sqlite3.Connection,
        subscription: str,
        table: str,
        sequence_number: int,
        capture_timestamp: Optional[datetime],
        snapshot_completed: Optional[bool] = None
    ) -> None:
        # 序列号只增不减
        conn.execute("""
            INSERT INTO table_checkpoints
                (subscription, table_name, sequence_number, capture_timestamp,
                 committed_at, snapshot_completed)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(subscription, table_name) DO UPDATE SET
                sequence_number = MAX(sequence_number, excluded.sequence_number),
                capture_timestamp = CASE
                    WHEN excluded.sequence_number >= sequence_number
                    THEN COALESCE(excluded.capture_timestamp, capture_timestamp)
                    ELSE capture_timestamp END,
                committed_at = excluded.committed_at,
                snapshot_completed = CASE
                    WHEN ? IS NULL THEN snapshot_completed
                    ELSE excluded.snapshot_completed END
        """, (
            subscription,
            table,
            sequence_number,
            capture_timestamp.isoformat() if capture_timestamp else None,
            datetime.now(timezone.utc).isoformat(),
            int(bool(snapshot_completed)),
            snapshot_completed,
        ))

    def _apply_shadow_changes(
        self,
        conn: sqlite3.Connection,
        subscription: str,
        table: str,
        changes: Iterable[ShadowChange]
    ) -> None:
        for key, image in changes:
            if image is None:
                conn.execute("""
                    DELETE FROM shadow_rows
                    WHERE subscription = ? AND table_name = ? AND row_key = ?
                """, (subscription, table, key))
            else:
                conn.execute("""
                    INSERT OR REPLACE INTO shadow_rows
                        (subscription, table_name, row_key, row_image)
                    VALUES (?, ?, ?, ?)
                """, (subscription, table, key, encode_image(image)))

    def commit_progress(
        self,
        subscription: str,
        table: str,
        sequence_number: int,
        capture_timestamp: Optional[datetime] = None,
        shadow_changes: Optional[List[ShadowChange]] = None
    ) -> None:
        """
        推进断点（应用端在批次提交或事件进入死信之后调用）

        轮询捕获的影子镜像变更与断点在同一事务中写入，
        保证影子镜像永远不会领先于已确认的断点。
        """
        with self._get_connection() as conn:
            self._upsert_checkpoint(conn, subscription, table, sequence_number, capture_timestamp)
            if shadow_changes:
                self._apply_shadow_changes(conn, subscription, table, shadow_changes)

    def mark_snapshot_completed(
        self,
        subscription: str,
        table: str,
        sequence_number: int,
        shadow_rows: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> None:
        """
        记录快照完成及其一致性断点

        参数:
            sequence_number: 与快照读取同一事务内取得的日志位置（轮询模式为 0）
            shadow_rows: 轮询模式下快照时刻的源表镜像，替换现有影子镜像
        """
        with self._get_connection() as conn:
            if shadow_rows is not None:
                conn.execute(
                    "DELETE FROM shadow_rows WHERE subscription = ? AND table_name = ?",
                    (subscription, table),
                )
                self._apply_shadow_changes(conn, subscription, table, shadow_rows.items())
            self._upsert_checkpoint(
                conn, subscription, table, sequence_number, None, snapshot_completed=True
            )
        logger.info(
            "snapshot_checkpoint_saved",
            subscription=subscription,
            table=table,
            sequence_number=sequence_number,
        )

    def load_shadow(self, subscription: str, table: str) -> Dict[str, Dict[str, Any]]:
        """加载影子镜像 {行键: 行}"""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT row_key, row_image FROM shadow_rows
                WHERE subscription = ? AND table_name = ?
            """, (subscription, table)).fetchall()
        return {row["row_key"]: json.loads(row["row_image"]) for row in rows}

    def clear_subscription(self, subscription: str) -> None:
        """清除订阅的断点和影子镜像（下次启动重新快照）"""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM table_checkpoints WHERE subscription = ?", (subscription,))
            conn.execute("DELETE FROM shadow_rows WHERE subscription = ?", (subscription,))
        logger.warning("checkpoints_cleared", subscription=subscription)

    # ========================================================================
    # 订阅状态与控制请求
    # ========================================================================

    def save_status(self, status: SubscriptionStatus) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO subscription_status (subscription, payload, updated_at)
                VALUES (?, ?, ?)
            """, (
                status.name,
                status.model_dump_json(),
                datetime.now(timezone.utc).isoformat(),
            ))

    def load_status(self, subscription: str) -> Optional[SubscriptionStatus]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT payload FROM subscription_status WHERE subscription = ?",
                (subscription,),
            ).fetchone()
        return SubscriptionStatus.model_validate_json(row["payload"]) if row else None

    def request_control(self, subscription: str, action: str) -> None:
        """写入控制请求，后写入的请求覆盖尚未处理的请求"""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO control_requests (subscription, action, requested_at)
                VALUES (?, ?, ?)
            """, (subscription, action, datetime.now(timezone.utc).isoformat()))

    def pop_control_request(self, subscription: str) -> Optional[str]:
        """取出并删除待处理的控制请求"""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT action FROM control_requests WHERE subscription = ?",
                (subscription,),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM control_requests WHERE subscription = ?", (subscription,))
        return row["action"]
