"""
复制引擎异常定义

每个异常都带有稳定的 kind 字符串，status() 和 CLI 以此报告最具体的错误类型。
"""

from typing import Any, Optional


class ReplicationError(Exception):
    """复制引擎异常基类"""

    kind = "replication_error"
    # 是否可由引擎自动重试
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class DatastoreConnectionError(ReplicationError):
    """数据存储连接失败（瞬时错误，按指数退避重试）"""

    kind = "connection_error"
    retryable = True

    def __init__(self, datastore: str, message: str, attempts: int = 0):
        super().__init__(message, datastore=datastore, attempts=attempts)
        self.datastore = datastore
        self.attempts = attempts


class DatastoreNotFoundError(ReplicationError):
    """注册表中不存在指定名称的数据存储"""

    kind = "not_found"

    def __init__(self, name: str):
        super().__init__(f"数据存储未注册: {name}", name=name)
        self.name = name


class SchemaMismatchError(ReplicationError):
    """表映射与源/目标表结构不兼容（激活前的致命错误）"""

    kind = "schema_mismatch"

    def __init__(self, table: str, problems: list[str]):
        message = f"表映射 {table} 校验失败: " + "; ".join(problems)
        super().__init__(message, table=table, problems=problems)
        self.table = table
        self.problems = problems


class LogGapError(ReplicationError):
    """变更日志已被截断，断点之后的事件不可恢复，需要重新做快照"""

    kind = "log_gap"

    def __init__(self, table: str, checkpoint: int, purged_through: int):
        super().__init__(
            f"表 {table} 的变更日志存在缺口: 断点 {checkpoint}, "
            f"日志已清理至 {purged_through}",
            table=table,
            checkpoint=checkpoint,
            purged_through=purged_through,
        )
        self.table = table
        self.checkpoint = checkpoint
        self.purged_through = purged_through


class ApplyConflictError(ReplicationError):
    """目标行在上次源端写入之后被独立修改"""

    kind = "apply_conflict"

    def __init__(
        self,
        table: str,
        key: tuple,
        sequence_number: int,
        target_row: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            f"表 {table} 主键 {key} 存在冲突 (序列号 {sequence_number})",
            table=table,
            key=key,
            sequence_number=sequence_number,
        )
        self.table = table
        self.key = key
        self.sequence_number = sequence_number
        self.target_row = target_row


class ApplyFailure(ReplicationError):
    """事件应用失败，按订阅的重试策略处理"""

    kind = "apply_failure"
    retryable = True

    def __init__(
        self,
        message: str,
        sequence_number: Optional[int] = None,
        table: Optional[str] = None,
        attempts: int = 0,
    ):
        super().__init__(
            message,
            sequence_number=sequence_number,
            table=table,
            attempts=attempts,
        )
        self.sequence_number = sequence_number
        self.table = table
        self.attempts = attempts


class InvalidTransitionError(ReplicationError):
    """订阅状态机拒绝的非法状态转换"""

    kind = "invalid_transition"

    def __init__(self, subscription: str, state: str, trigger: str):
        super().__init__(
            f"订阅 {subscription} 在 {state} 状态下不允许执行 {trigger}",
            subscription=subscription,
            state=state,
            trigger=trigger,
        )
        self.subscription = subscription
        self.state = state
        self.trigger = trigger


def error_kind(error: BaseException) -> str:
    """返回异常对应的错误类型字符串"""
    if isinstance(error, ReplicationError):
        return error.kind
    return type(error).__name__
