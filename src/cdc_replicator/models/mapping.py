"""
表结构与表映射模型
"""

from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from cdc_replicator.models.base import ConfigModel


class TypeFamily(str, Enum):
    """列类型族，用于源/目标类型兼容性判断"""
    INTEGER = "integer"
    DECIMAL = "decimal"
    TEXT = "text"
    TEMPORAL = "temporal"
    BINARY = "binary"
    BOOLEAN = "boolean"
    OTHER = "other"


# 按前缀匹配，先匹配者优先
_TYPE_PREFIXES: list[tuple[str, TypeFamily]] = [
    ("TINYINT(1)", TypeFamily.BOOLEAN),
    ("BOOL", TypeFamily.BOOLEAN),
    ("BIGINT", TypeFamily.INTEGER),
    ("SMALLINT", TypeFamily.INTEGER),
    ("MEDIUMINT", TypeFamily.INTEGER),
    ("TINYINT", TypeFamily.INTEGER),
    ("INT", TypeFamily.INTEGER),
    ("SERIAL", TypeFamily.INTEGER),
    ("DECIMAL", TypeFamily.DECIMAL),
    ("NUMERIC", TypeFamily.DECIMAL),
    ("REAL", TypeFamily.DECIMAL),
    ("DOUBLE", TypeFamily.DECIMAL),
    ("FLOAT", TypeFamily.DECIMAL),
    ("VARCHAR", TypeFamily.TEXT),
    ("CHAR", TypeFamily.TEXT),
    ("NCHAR", TypeFamily.TEXT),
    ("NVARCHAR", TypeFamily.TEXT),
    ("TEXT", TypeFamily.TEXT),
    ("CLOB", TypeFamily.TEXT),
    ("JSON", TypeFamily.TEXT),
    ("ENUM", TypeFamily.TEXT),
    ("TIMESTAMP", TypeFamily.TEMPORAL),
    ("DATETIME", TypeFamily.TEMPORAL),
    ("DATE", TypeFamily.TEMPORAL),
    ("TIME", TypeFamily.TEMPORAL),
    ("YEAR", TypeFamily.TEMPORAL),
    ("BLOB", TypeFamily.BINARY),
    ("BINARY", TypeFamily.BINARY),
    ("VARBINARY", TypeFamily.BINARY),
]

# 允许的跨族映射（源族 -> 目标族）
_COMPATIBLE_FAMILIES: dict[TypeFamily, set[TypeFamily]] = {
    TypeFamily.INTEGER: {TypeFamily.INTEGER, TypeFamily.DECIMAL, TypeFamily.TEXT, TypeFamily.BOOLEAN},
    TypeFamily.DECIMAL: {TypeFamily.DECIMAL, TypeFamily.TEXT},
    TypeFamily.TEXT: {TypeFamily.TEXT},
    TypeFamily.TEMPORAL: {TypeFamily.TEMPORAL, TypeFamily.TEXT},
    TypeFamily.BINARY: {TypeFamily.BINARY},
    TypeFamily.BOOLEAN: {TypeFamily.BOOLEAN, TypeFamily.INTEGER, TypeFamily.TEXT},
}


def type_family(type_name: str) -> TypeFamily:
    """根据列类型名判断类型族"""
    normalized = type_name.strip().upper()
    if not normalized:
        return TypeFamily.OTHER
    for prefix, family in _TYPE_PREFIXES:
        if normalized.startswith(prefix):
            return family
    return TypeFamily.OTHER


def families_compatible(source: TypeFamily, target: TypeFamily) -> bool:
    """判断源类型族能否写入目标类型族（OTHER 视为兼容，由目标库自行转换）"""
    if TypeFamily.OTHER in (source, target):
        return True
    return target in _COMPATIBLE_FAMILIES.get(source, {source})


class TableRef(BaseModel):
    """表引用 (schema, table)"""

    model_config = ConfigDict(frozen=True)

    schema_name: Optional[str] = Field(default=None, description="模式/数据库名")
    table_name: str = Field(..., min_length=1, description="表名")

    @property
    def qualified(self) -> str:
        """限定名 schema.table（无 schema 时仅表名）"""
        if self.schema_name:
            return f"{self.schema_name}.{self.table_name}"
        return self.table_name

    @classmethod
    def parse(cls, value: str) -> "TableRef":
        """从 "schema.table" 或 "table" 解析"""
        if "." in value:
            schema, table = value.split(".", 1)
            return cls(schema_name=schema, table_name=table)
        return cls(table_name=value)

    def __str__(self) -> str:
        return self.qualified


class ColumnDefinition(ConfigModel):
    """列定义"""

    name: str = Field(..., min_length=1)
    type: str = Field(default="TEXT")
    length: Optional[int] = Field(default=None, ge=1)
    nullable: bool = Field(default=True)
    default: Optional[Any] = Field(default=None)
    auto_increment: bool = Field(default=False)

    @property
    def family(self) -> TypeFamily:
        return type_family(self.type)

    @property
    def has_default(self) -> bool:
        return self.default is not None or self.auto_increment


class TableSchema(ConfigModel):
    """
    表结构定义

    对应原表定义文件中的 datastoreRef / schemaName / tableName / primaryKey / columns。
    未在配置中提供时由连接器从在线数据库中读取。
    """
    datastore: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("datastore", "datastoreRef", "datastore_ref"),
    )
    schema_name: Optional[str] = Field(default=None)
    table_name: str = Field(..., min_length=1)
    primary_key: list[str] = Field(default_factory=list)
    columns: list[ColumnDefinition] = Field(..., min_length=1)
    unique_keys: list[list[str]] = Field(default_factory=list)

    @field_validator("primary_key", mode="before")
    @classmethod
    def normalize_primary_key(cls, v: Any) -> Any:
        """主键既可写成列名列表，也可写成 {name: ...} 列表"""
        if isinstance(v, str):
            return [v]
        if isinstance(v, list):
            return [item["name"] if isinstance(item, dict) else item for item in v]
        return v

    @model_validator(mode="after")
    def validate_keys(self) -> "TableSchema":
        names = set(self.column_names)
        if len(names) != len(self.columns):
            raise ValueError(f"表 {self.table_name} 存在重复列名")
        missing = [c for c in self.primary_key if c not in names]
        for key in self.unique_keys:
            missing.extend(c for c in key if c not in names)
        if missing:
            raise ValueError(f"表 {self.table_name} 的键引用了不存在的列: {missing}")
        return self

    @property
    def ref(self) -> TableRef:
        return TableRef(schema_name=self.schema_name, table_name=self.table_name)

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> Optional[ColumnDefinition]:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def unique_column_sets(self) -> list[tuple[str, ...]]:
        """主键和所有唯一键（列集合）"""
        keys = []
        if self.primary_key:
            keys.append(tuple(self.primary_key))
        keys.extend(tuple(k) for k in self.unique_keys)
        return keys


class ConflictResolution(str, Enum):
    """冲突解决策略"""
    SOURCE_WINS = "source-wins"
    TARGET_WINS = "target-wins"
    CUSTOM = "custom"


class ColumnMap(ConfigModel):
    """列映射（目标列默认与源列同名）"""

    source_column: str = Field(..., min_length=1)
    target_column: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def set_default_target(self) -> "ColumnMap":
        if self.target_column is None:
            self.target_column = self.source_column
        return self


class TableEndpoint(ConfigModel):
    """映射的一端 (schema, table)"""

    schema_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("schema", "schema_name", "schemaName"),
    )
    table_name: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("table", "table_name", "tableName"),
    )

    def to_ref(self) -> TableRef:
        return TableRef(schema_name=self.schema_name, table_name=self.table_name)


class TableOptions(ConfigModel):
    """
    表级选项

    属性:
        capture: 是否捕获该表变更
        apply: 是否将变更应用到目标
        initial_snapshot: 启动时是否做初始快照
        conflict_resolution: 冲突策略（为空时使用订阅级配置）
    """
    capture: bool = Field(default=True)
    apply: bool = Field(default=True)
    initial_snapshot: bool = Field(default=True)
    conflict_resolution: Optional[ConflictResolution] = Field(default=None)


class TableMapping(ConfigModel):
    """
    表映射配置

    属性:
        source: 源表
        target: 目标表（默认与源表相同）
        column_mappings: 有序列映射，为空表示按源表全部列同名映射
        options: 表级选项
    """
    source: TableEndpoint
    target: Optional[TableEndpoint] = Field(default=None)
    column_mappings: list[ColumnMap] = Field(default_factory=list)
    options: TableOptions = Field(default_factory=TableOptions)

    @model_validator(mode="after")
    def set_default_target(self) -> "TableMapping":
        if self.target is None:
            self.target = self.source.model_copy()
        return self

    @property
    def source_ref(self) -> TableRef:
        return self.source.to_ref()

    @property
    def target_ref(self) -> TableRef:
        return (self.target or self.source).to_ref()


class ValidatedMapping(BaseModel):
    """
    校验通过的表映射（不可变）

    属性:
        mapping: 原始映射配置
        source_schema: 源表结构
        target_schema: 目标表结构
        column_pairs: (源列, 目标列) 有序对
        source_key: 源端行键列
        target_key: 与源端行键对应的目标列
        conflict_resolution: 生效的冲突策略
    """
    model_config = ConfigDict(frozen=True)

    mapping: TableMapping
    source_schema: TableSchema
    target_schema: TableSchema
    column_pairs: tuple[tuple[str, str], ...]
    source_key: tuple[str, ...]
    target_key: tuple[str, ...]
    conflict_resolution: ConflictResolution = ConflictResolution.SOURCE_WINS

    @property
    def source_ref(self) -> TableRef:
        return self.mapping.source_ref

    @property
    def target_ref(self) -> TableRef:
        return self.mapping.target_ref

    @property
    def capture_enabled(self) -> bool:
        return self.mapping.options.capture

    @property
    def apply_enabled(self) -> bool:
        return self.mapping.options.apply

    @property
    def initial_snapshot(self) -> bool:
        return self.mapping.options.initial_snapshot

    @property
    def source_columns(self) -> list[str]:
        return [s for s, _ in self.column_pairs]

    @property
    def target_columns(self) -> list[str]:
        return [t for _, t in self.column_pairs]
