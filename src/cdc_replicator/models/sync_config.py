"""
复制配置模型 - 使用 Pydantic 进行配置验证

对应原模板中的数据存储 YAML、通道 XML、订阅 XML 和订阅应用设置 XML。
"""

import os
import re
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, Field, field_validator, model_validator

from cdc_replicator.models.base import ConfigModel
from cdc_replicator.models.datastore import DatastoreDescriptor
from cdc_replicator.models.mapping import ConflictResolution, TableMapping, TableRef, TableSchema


class ApplyMode(str, Enum):
    """应用模式"""
    TRANSACTION = "transaction"
    ROW = "row"


class OnError(str, Enum):
    """重试耗尽后的处理方式"""
    STOP = "stop"
    SKIP = "skip"
    ROUTE_TO_DLQ = "route-to-dlq"


class LogFormat(str, Enum):
    """日志输出格式"""
    CONSOLE = "console"
    JSON = "json"


class RetryPolicy(ConfigModel):
    """
    应用重试策略

    属性:
        max_attempts: 最大尝试次数（含首次），默认 5
        backoff_seconds: 首次重试前的等待（秒）
        backoff_multiplier: 退避倍数，1.0 表示固定间隔
        max_backoff_seconds: 单次等待上限（秒）
    """
    max_attempts: int = Field(default=5, ge=1, description="最大尝试次数")
    backoff_seconds: float = Field(default=10.0, ge=0, description="重试间隔（秒）")
    backoff_multiplier: float = Field(default=1.0, ge=1.0, description="退避倍数")
    max_backoff_seconds: float = Field(default=300.0, ge=0, description="最大重试间隔（秒）")

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次失败后的等待时间"""
        delay = self.backoff_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_backoff_seconds)


class DeadLetterSettings(ConfigModel):
    """目标端死信表配置"""

    enabled: bool = Field(default=True)
    table_name: str = Field(default="cdc_dead_letter", min_length=1)
    schema_name: Optional[str] = Field(default=None)

    @property
    def ref(self) -> TableRef:
        return TableRef(schema_name=self.schema_name, table_name=self.table_name)


class ApplySettings(ConfigModel):
    """
    订阅应用设置

    属性:
        apply_batch_size: 每批次事件数（为空时使用通道的性能设置）
        apply_batch_timeout_seconds: 未满批次的最长等待（秒）
        transactional_apply: 整批原子提交
        retries: 重试策略
        on_error: 重试耗尽后的处理方式
        dead_letter: 死信表配置
        metrics_enabled: 是否统计指标
        log_level: 订阅日志级别
    """
    apply_batch_size: Optional[int] = Field(default=None, ge=1, le=100000)
    apply_batch_timeout_seconds: float = Field(default=5.0, gt=0)
    transactional_apply: bool = Field(default=True)
    retries: RetryPolicy = Field(default_factory=RetryPolicy)
    on_error: OnError = Field(default=OnError.STOP)
    dead_letter: DeadLetterSettings = Field(default_factory=DeadLetterSettings)
    metrics_enabled: bool = Field(default=True)
    log_level: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def validate_dead_letter(self) -> "ApplySettings":
        if self.on_error == OnError.ROUTE_TO_DLQ and not self.dead_letter.enabled:
            raise ValueError("onError=route-to-dlq 需要启用 deadLetter")
        return self


class ChannelPerformance(ConfigModel):
    """通道性能设置"""

    apply_batch_size: int = Field(default=500, ge=1, le=100000)
    latency_tolerance_seconds: float = Field(default=5.0, gt=0)
    queue_capacity: int = Field(default=1000, ge=1)


class ChannelConfig(ConfigModel):
    """
    复制通道

    绑定一个源数据存储、一个目标数据存储和一组表映射。
    """
    name: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("name", "channelName", "channel_name"),
    )
    description: Optional[str] = Field(default=None)
    source_datastore: str = Field(..., min_length=1)
    target_datastore: str = Field(..., min_length=1)
    tables: List[TableMapping] = Field(..., min_length=1)
    performance: ChannelPerformance = Field(default_factory=ChannelPerformance)

    @model_validator(mode="after")
    def validate_tables_unique(self) -> "ChannelConfig":
        sources = [t.source_ref.qualified for t in self.tables]
        if len(sources) != len(set(sources)):
            raise ValueError(f"通道 {self.name} 中存在重复的源表映射")
        targets = [t.target_ref.qualified for t in self.tables]
        if len(targets) != len(set(targets)):
            raise ValueError(f"通道 {self.name} 中存在重复的目标表映射")
        return self

    @model_validator(mode="after")
    def validate_distinct_datastores(self) -> "ChannelConfig":
        if self.source_datastore == self.target_datastore:
            raise ValueError(f"通道 {self.name} 的源和目标不能是同一个数据存储")
        return self


class SubscriptionTable(ConfigModel):
    """订阅包含的表（可选地限制列）"""

    schema_name: Optional[str] = Field(default=None)
    table_name: str = Field(..., min_length=1)
    columns: List[str] = Field(default_factory=list)

    @property
    def ref(self) -> TableRef:
        return TableRef(schema_name=self.schema_name, table_name=self.table_name)


class SubscriptionOptions(ConfigModel):
    """
    订阅选项

    属性:
        initial_snapshot: 开始 CDC 前是否做初始快照
        apply_mode: transaction | row
        conflict_resolution: 默认冲突策略（表级选项可覆盖）
        custom_resolver: custom 策略使用的解析函数，格式 "module:function"
        enabled: 是否启用
    """
    initial_snapshot: bool = Field(default=True)
    apply_mode: ApplyMode = Field(default=ApplyMode.TRANSACTION)
    conflict_resolution: ConflictResolution = Field(default=ConflictResolution.SOURCE_WINS)
    custom_resolver: Optional[str] = Field(default=None)
    enabled: bool = Field(default=True)

    @field_validator("custom_resolver")
    @classmethod
    def validate_resolver_path(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and ":" not in v:
            raise ValueError("custom_resolver 格式必须为 module:function")
        return v


class SubscriptionConfig(ConfigModel):
    """订阅配置"""

    name: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("name", "subscriptionName", "subscription_name"),
    )
    channel: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("channel", "channelRef", "channel_ref"),
    )
    source_datastore: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("source_datastore", "sourceDatastore", "sourceDatastoreRef"),
    )
    target_datastore: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("target_datastore", "targetDatastore", "targetDatastoreRef"),
    )
    tables: List[SubscriptionTable] = Field(default_factory=list)
    options: SubscriptionOptions = Field(default_factory=SubscriptionOptions)
    apply_settings: ApplySettings = Field(default_factory=ApplySettings)
    shutdown_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("channel", mode="before")
    @classmethod
    def normalize_channel(cls, v: Any) -> Any:
        """原模板写法 channelRef: {channelName: ...}"""
        if isinstance(v, dict):
            return v.get("channelName") or v.get("channel_name") or v.get("name")
        return v

    @property
    def transactional(self) -> bool:
        """整批事务提交（applyMode=row 时总是逐行提交）"""
        return (
            self.options.apply_mode == ApplyMode.TRANSACTION
            and self.apply_settings.transactional_apply
        )


class NotificationSettings(ConfigModel):
    """告警通知配置"""

    console: bool = Field(default=False)
    webhook_url: Optional[str] = Field(default=None)


class ReplicationConfig(ConfigModel):
    """
    复制配置根对象

    属性:
        datastores: 数据存储描述列表
        table_definitions: 表结构定义（可选，缺省时从数据库读取）
        channels: 通道列表
        subscriptions: 订阅列表
        checkpoint_db: 本地断点库路径
        log_level: 日志级别
        log_format: 日志格式 (console/json)
        notifications: 告警通知配置
    """
    datastores: List[DatastoreDescriptor] = Field(..., min_length=1)
    table_definitions: List[TableSchema] = Field(default_factory=list)
    channels: List[ChannelConfig] = Field(default_factory=list)
    subscriptions: List[SubscriptionConfig] = Field(default_factory=list)
    checkpoint_db: str = Field(default="checkpoints.db")
    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default=LogFormat.CONSOLE)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if v.upper() not in valid_levels:
            raise ValueError(f"日志级别必须是以下之一: {valid_levels}")
        return v.upper()

    @model_validator(mode="after")
    def validate_names_unique(self) -> "ReplicationConfig":
        for label, names in (
            ("数据存储", [d.name for d in self.datastores]),
            ("通道", [c.name for c in self.channels]),
            ("订阅", [s.name for s in self.subscriptions]),
        ):
            if len(names) != len(set(names)):
                raise ValueError(f"{label}名称必须唯一")
        return self

    @model_validator(mode="after")
    def validate_references(self) -> "ReplicationConfig":
        datastores = {d.name: d for d in self.datastores}
        for channel in self.channels:
            for ref in (channel.source_datastore, channel.target_datastore):
                if ref not in datastores:
                    raise ValueError(f"通道 {channel.name} 引用了未定义的数据存储 {ref}")
            if not datastores[channel.source_datastore].cdc_enabled:
                raise ValueError(
                    f"通道 {channel.name} 的源 {channel.source_datastore} 未启用 CDC"
                )

        channels = {c.name: c for c in self.channels}
        for sub in self.subscriptions:
            channel = channels.get(sub.channel)
            if channel is None:
                raise ValueError(f"订阅 {sub.name} 引用了未定义的通道 {sub.channel}")
            if sub.source_datastore and sub.source_datastore != channel.source_datastore:
                raise ValueError(f"订阅 {sub.name} 的源数据存储与通道不一致")
            if sub.target_datastore and sub.target_datastore != channel.target_datastore:
                raise ValueError(f"订阅 {sub.name} 的目标数据存储与通道不一致")

            mapped = {t.source_ref.qualified for t in channel.tables}
            for table in sub.tables:
                if table.ref.qualified not in mapped:
                    raise ValueError(
                        f"订阅 {sub.name} 包含通道未映射的表 {table.ref.qualified}"
                    )

            uses_custom = sub.options.conflict_resolution == ConflictResolution.CUSTOM or any(
                t.options.conflict_resolution == ConflictResolution.CUSTOM
                for t in channel.tables
            )
            if uses_custom and not sub.options.custom_resolver:
                raise ValueError(f"订阅 {sub.name} 使用 custom 冲突策略但未配置 custom_resolver")
        return self

    def get_datastore(self, name: str) -> Optional[DatastoreDescriptor]:
        for datastore in self.datastores:
            if datastore.name == name:
                return datastore
        return None

    def get_channel(self, name: str) -> Optional[ChannelConfig]:
        for channel in self.channels:
            if channel.name == name:
                return channel
        return None

    def get_subscription(self, name: str) -> Optional[SubscriptionConfig]:
        for sub in self.subscriptions:
            if sub.name == name:
                return sub
        return None

    def get_table_definition(self, datastore: str, ref: TableRef) -> Optional[TableSchema]:
        """查找配置中的表结构定义"""
        for definition in self.table_definitions:
            if definition.datastore not in (None, datastore):
                continue
            if definition.table_name != ref.table_name:
                continue
            if ref.schema_name and definition.schema_name not in (None, ref.schema_name):
                continue
            return definition
        return None


def expand_env_vars(value: Any) -> Any:
    """
    递归展开值中的环境变量

    支持格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}
    """
    if isinstance(value, str):
        # 匹配 ${VAR} 或 ${VAR:-default}
        pattern = r'\$\{([^}:-]+)(?::-([^}]*))?\}'

        def replacer(match: "re.Match[str]") -> str:
            var_name = match.group(1)
            default_val = match.group(2)
            env_value = os.getenv(var_name)
            if env_value is None:
                if default_val is not None:
                    return default_val
                raise ValueError(f"环境变量 {var_name} 未设置且无默认值")
            return env_value

        result: Any = re.sub(pattern, replacer, value)
        return result
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value
