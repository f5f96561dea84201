"""
变更事件模型 - 表示一次行级数据变更
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from pydantic import BaseModel, Field, model_validator

from cdc_replicator.models.mapping import TableRef


class OperationType(str, Enum):
    """数据库操作类型"""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """
    变更事件对象

    表示源端捕获的单行数据变更，是捕获 -> 通道 -> 应用数据流的基本单元。

    属性:
        subscription_id: 所属订阅
        table: 源表引用
        operation: 操作类型 (INSERT/UPDATE/DELETE)
        before_image: 变更前行数据 (UPDATE/DELETE)
        after_image: 变更后行数据 (INSERT/UPDATE)
        source_transaction_id: 源端事务标识
        source_sequence_number: 源端序列号，同一 (订阅, 表) 内严格递增
        capture_timestamp: 捕获时间

    示例:
        ```python
        event = ChangeEvent(
            subscription_id="customers_subscription",
            table=TableRef(table_name="customers"),
            operation=OperationType.INSERT,
            after_image={"id": 1, "name": "Alice", "email": "a@x.com"},
            source_sequence_number=42,
        )
        ```
    """
    subscription_id: str = Field(..., min_length=1, description="订阅名称")
    table: TableRef = Field(..., description="源表")
    operation: OperationType = Field(..., description="操作类型")
    before_image: Optional[Dict[str, Any]] = Field(default=None, description="变更前数据")
    after_image: Optional[Dict[str, Any]] = Field(default=None, description="变更后数据")
    source_transaction_id: Optional[str] = Field(default=None, description="源端事务标识")
    source_sequence_number: int = Field(..., ge=1, description="源端序列号")
    capture_timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="捕获时间"
    )

    @model_validator(mode="after")
    def validate_images(self) -> "ChangeEvent":
        """验证前后镜像与操作类型一致"""
        if self.operation in (OperationType.INSERT, OperationType.UPDATE):
            if self.after_image is None:
                raise ValueError(f"{self.operation.value} 操作必须提供 after_image")
        if self.operation == OperationType.DELETE and self.before_image is None:
            raise ValueError("DELETE 操作必须提供 before_image")
        return self

    @property
    def row_image(self) -> Dict[str, Any]:
        """用于定位行的镜像（DELETE 取前镜像，其余取后镜像）"""
        if self.operation == OperationType.DELETE:
            return self.before_image or {}
        return self.after_image or {}

    def key(self, columns: Sequence[str]) -> tuple:
        """提取行键"""
        image = self.row_image
        return tuple(image.get(col) for col in columns)

    def to_json(self) -> str:
        """序列化为 JSON（用于死信存储）"""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, payload: str) -> "ChangeEvent":
        return cls.model_validate_json(payload)


class ApplyBatch(BaseModel):
    """
    应用批次 - 由应用引擎构造，事务性消费后丢弃
    """
    batch_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="批次标识")
    events: list[ChangeEvent] = Field(default_factory=list, description="事件列表")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="批次创建时间"
    )

    def __len__(self) -> int:
        return len(self.events)

    def is_empty(self) -> bool:
        return len(self.events) == 0

    def append(self, event: ChangeEvent) -> None:
        self.events.append(event)

    def highest_sequences(self) -> Dict[TableRef, int]:
        """各表在本批次中的最大序列号"""
        result: Dict[TableRef, int] = {}
        for event in self.events:
            current = result.get(event.table, 0)
            if event.source_sequence_number > current:
                result[event.table] = event.source_sequence_number
        return result


class DeadLetterRecord(BaseModel):
    """
    死信记录

    保存在目标端死信表中，只追加、不自动删除，由运维人员管理。
    保留原始序列号，便于之后按序人工重放。
    """
    id: Optional[int] = Field(default=None, description="死信表主键")
    original_event: ChangeEvent = Field(..., description="原始事件")
    failure_reason: str = Field(..., description="失败原因")
    attempt_count: int = Field(..., ge=0, description="已尝试次数")
    first_failed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="首次失败时间"
    )
    replayed_at: Optional[datetime] = Field(default=None, description="重放成功时间")

    @property
    def subscription_id(self) -> str:
        return self.original_event.subscription_id

    @property
    def table(self) -> TableRef:
        return self.original_event.table

    @property
    def source_sequence_number(self) -> int:
        return self.original_event.source_sequence_number
