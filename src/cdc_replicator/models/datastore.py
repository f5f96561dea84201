"""
数据存储描述模型 - 逻辑数据存储名称到连接参数和能力的映射
"""

import os
import re
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import AliasChoices, Field, field_validator, model_validator

from cdc_replicator.models.base import ConfigModel


class DatastoreKind(str, Enum):
    """数据存储类别"""
    RELATIONAL = "relational"
    QUEUE = "queue"


class DatastoreType(str, Enum):
    """数据存储类型（决定使用哪个连接器）"""
    SQLITE = "sqlite"
    MYSQL = "mysql"


class CaptureMode(str, Enum):
    """捕获模式"""
    AUTO = "auto"          # 根据能力自动选择
    LOG = "log"            # 基于变更日志
    POLLING = "polling"    # 基于影子表比对的轮询


# 原模板中的写法
_CAPTURE_MODE_ALIASES = {
    "log_based": CaptureMode.LOG,
    "trigger_based": CaptureMode.POLLING,
}

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")

# 原模板把连接参数直接写在数据存储顶层
_CONNECTION_KEYS = {
    "db_path", "dbPath", "timeout", "pool_size", "poolSize",
    "host", "port", "database", "user", "username",
    "password_secret", "passwordSecret", "charset", "connect_timeout", "connectTimeout",
}


def _reject_inline_password(data: Any) -> Any:
    """配置中不允许出现明文密码"""
    if isinstance(data, dict) and "password" in data:
        raise ValueError("禁止在配置中内联密码，请使用 password_secret 引用密钥")
    return data


class SQLiteConnection(ConfigModel):
    """SQLite 连接配置"""

    type: Literal["sqlite"] = Field(default="sqlite", description="连接类型")
    db_path: str = Field(..., min_length=1, description="数据库文件路径")
    timeout: float = Field(default=5.0, gt=0, description="加锁等待超时（秒）")
    pool_size: int = Field(default=4, ge=1, le=32, description="连接池大小")

    def describe(self) -> str:
        return self.db_path


class MySQLConnection(ConfigModel):
    """MySQL 连接配置"""

    type: Literal["mysql"] = Field(default="mysql", description="连接类型")
    host: str = Field(..., description="主机地址")
    port: int = Field(default=3306, ge=1, le=65535, description="端口")
    database: str = Field(..., description="数据库名")
    username: str = Field(
        ...,
        validation_alias=AliasChoices("username", "user"),
        description="用户名",
    )
    password_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("password_secret", "passwordSecret"),
        description="保存密码的环境变量名",
    )
    charset: str = Field(default="utf8mb4", description="字符集")
    pool_size: int = Field(default=5, ge=1, le=50, description="连接池大小")
    connect_timeout: float = Field(default=10.0, gt=0, description="连接超时（秒）")

    @model_validator(mode="before")
    @classmethod
    def reject_password(cls, data: Any) -> Any:
        return _reject_inline_password(data)

    def resolve_password(self) -> Optional[str]:
        """在连接时从环境变量解析密码"""
        if not self.password_secret:
            return None
        return os.getenv(self.password_secret)

    def describe(self) -> str:
        return f"{self.host}:{self.port}/{self.database}"


class Capabilities(ConfigModel):
    """
    数据存储能力标记

    属性:
        supports_log_cdc: 是否支持基于变更日志的捕获（None 表示由连接器决定）
        supports_transactional_apply: 是否支持事务性应用
    """
    supports_log_cdc: Optional[bool] = Field(default=None)
    supports_transactional_apply: bool = Field(default=True)


class CaptureSettings(ConfigModel):
    """源端捕获配置"""

    mode: CaptureMode = Field(default=CaptureMode.AUTO, description="捕获模式")
    poll_interval_seconds: float = Field(default=1.0, gt=0, description="轮询间隔（秒）")
    fetch_size: int = Field(default=500, ge=1, le=10000, description="单次读取的日志条数")

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v: Any) -> Any:
        if isinstance(v, str) and v.lower() in _CAPTURE_MODE_ALIASES:
            return _CAPTURE_MODE_ALIASES[v.lower()]
        return v


class DatastoreDescriptor(ConfigModel):
    """
    数据存储描述

    属性:
        name: 逻辑名称（全局唯一）
        kind: 类别 (relational/queue)
        type: 类型 (sqlite/mysql)
        connection: 连接配置（按 type 区分）
        capabilities: 能力标记
        cdc_enabled: 是否允许作为捕获源
        cdc_settings: 捕获配置
        connection_test_query: 健康检查语句
    """
    name: str = Field(..., min_length=1, description="逻辑名称")
    kind: DatastoreKind = Field(default=DatastoreKind.RELATIONAL, description="类别")
    type: DatastoreType = Field(..., description="类型")
    connection: Union[SQLiteConnection, MySQLConnection] = Field(
        ..., discriminator="type", description="连接配置"
    )
    capabilities: Capabilities = Field(default_factory=Capabilities)
    cdc_enabled: bool = Field(default=True, description="是否允许作为捕获源")
    cdc_settings: CaptureSettings = Field(default_factory=CaptureSettings)
    connection_test_query: str = Field(default="SELECT 1", description="健康检查语句")
    notes: Optional[str] = Field(default=None, description="备注")

    @model_validator(mode="before")
    @classmethod
    def reject_password(cls, data: Any) -> Any:
        return _reject_inline_password(data)

    @model_validator(mode="before")
    @classmethod
    def lift_flat_connection(cls, data: Any) -> Any:
        """没有 connection 段时从顶层收集连接参数"""
        if isinstance(data, dict) and "connection" not in data and "type" in data:
            data = dict(data)
            connection = {k: data.pop(k) for k in list(data) if k in _CONNECTION_KEYS}
            connection["type"] = data["type"]
            data["connection"] = connection
        return data

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not _NAME_PATTERN.match(v):
            raise ValueError("数据存储名称只能包含字母、数字、下划线、点和连字符")
        return v

    @model_validator(mode="after")
    def validate_connection_type(self) -> "DatastoreDescriptor":
        if self.connection.type != self.type.value:
            raise ValueError(
                f"连接配置类型 {self.connection.type} 与数据存储类型 {self.type.value} 不一致"
            )
        return self
