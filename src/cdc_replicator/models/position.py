"""
断点与订阅状态模型
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionState(str, Enum):
    """订阅生命周期状态"""
    CREATED = "created"
    SNAPSHOTTING = "snapshotting"
    STREAMING = "streaming"
    PAUSED = "paused"
    STOPPED = "stopped"
    FAILED = "failed"  # 终态，需人工介入

    @property
    def is_active(self) -> bool:
        """是否持有运行中的捕获/应用管道"""
        return self in (SubscriptionState.SNAPSHOTTING, SubscriptionState.STREAMING)


class TableCheckpoint(BaseModel):
    """
    表级断点

    记录 (订阅, 表) 已提交（或已进入死信）的最大源端序列号。
    只由应用端在批次持久化提交后推进，捕获端读取它以确定恢复位置。

    属性:
        subscription: 订阅名称
        table: 源表限定名
        sequence_number: 已确认的最大序列号
        capture_timestamp: 该序列号对应事件的捕获时间
        committed_at: 断点推进时间
        snapshot_completed: 初始快照是否已完成
    """
    subscription: str = Field(..., description="订阅名称")
    table: str = Field(..., description="源表限定名")
    sequence_number: int = Field(default=0, ge=0, description="已确认的最大序列号")
    capture_timestamp: Optional[datetime] = Field(default=None, description="对应事件的捕获时间")
    committed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="断点推进时间"
    )
    snapshot_completed: bool = Field(default=False, description="初始快照是否完成")

    model_config = ConfigDict(from_attributes=True)

    def advance(self, sequence_number: int, capture_timestamp: Optional[datetime] = None) -> bool:
        """
        推进断点（单调不减）

        返回:
            是否发生了推进
        """
        if sequence_number <= self.sequence_number:
            return False
        self.sequence_number = sequence_number
        if capture_timestamp is not None:
            self.capture_timestamp = capture_timestamp
        self.committed_at = datetime.now(timezone.utc)
        return True


class ErrorInfo(BaseModel):
    """最近一次错误"""
    kind: str = Field(..., description="错误类型")
    message: str = Field(..., description="错误信息")
    checkpoint: Dict[str, int] = Field(default_factory=dict, description="出错时的断点")
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SubscriptionMetrics(BaseModel):
    """订阅运行指标"""
    events_applied: int = Field(default=0, ge=0)
    events_skipped: int = Field(default=0, ge=0)
    events_filtered: int = Field(default=0, ge=0)
    conflicts: int = Field(default=0, ge=0)
    dead_lettered: int = Field(default=0, ge=0)
    batches_committed: int = Field(default=0, ge=0)
    throughput_per_second: float = Field(default=0.0, ge=0)


class SubscriptionStatus(BaseModel):
    """
    订阅状态信息

    status() 返回的数据，暂停/失败时仍反映最后已知的值。
    """
    name: str = Field(..., description="订阅名称")
    state: SubscriptionState = Field(default=SubscriptionState.CREATED)
    last_checkpoint: Dict[str, int] = Field(default_factory=dict, description="各表断点")
    lag_seconds: Optional[float] = Field(default=None, description="捕获延迟（秒）")
    error: Optional[ErrorInfo] = Field(default=None, description="最近一次错误")
    metrics: SubscriptionMetrics = Field(default_factory=SubscriptionMetrics)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def record_error(self, kind: str, message: str) -> None:
        """记录错误及当时的断点"""
        self.error = ErrorInfo(
            kind=kind,
            message=message,
            checkpoint=dict(self.last_checkpoint),
        )
