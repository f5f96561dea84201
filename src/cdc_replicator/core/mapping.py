"""
表映射校验与行转换

映射在加载时（激活前）完成校验，应用时不再做结构检查。
"""

from typing import Any, Dict, List, Optional, Sequence

from cdc_replicator.errors import SchemaMismatchError
from cdc_replicator.models.mapping import (
    ConflictResolution,
    TableMapping,
    TableSchema,
    ValidatedMapping,
    families_compatible,
)
from cdc_replicator.utils.logging import get_logger

logger = get_logger(__name__)


def _source_key(schema: TableSchema) -> tuple[str, ...]:
    """源端行键：主键，没有主键时取第一个唯一键"""
    keys = schema.unique_column_sets()
    return keys[0] if keys else ()


def validate_mapping(
    mapping: TableMapping,
    source_schema: TableSchema,
    target_schema: TableSchema,
    default_conflict: ConflictResolution = ConflictResolution.SOURCE_WINS,
    columns: Optional[Sequence[str]] = None,
) -> ValidatedMapping:
    """
    校验表映射

    参数:
        mapping: 表映射配置
        source_schema: 源表结构
        target_schema: 目标表结构
        default_conflict: 订阅级冲突策略（表级选项优先）
        columns: 订阅限定的源列子集（为空表示不限制）

    返回:
        不可变的 ValidatedMapping

    异常:
        SchemaMismatchError: 列不存在、类型不兼容、必填列未映射、
            或启用应用时源主键无法对应目标唯一约束
    """
    table = mapping.source_ref.qualified
    problems: List[str] = []

    if mapping.column_mappings:
        pairs = [(m.source_column, m.target_column or m.source_column) for m in mapping.column_mappings]
    else:
        pairs = [(name, name) for name in source_schema.column_names]

    source_key = _source_key(source_schema)

    if columns:
        wanted = set(columns)
        unknown = wanted - set(source_schema.column_names)
        if unknown:
            problems.append(f"订阅列不存在于源表: {sorted(unknown)}")
        # 行键列始终保留
        pairs = [(s, t) for s, t in pairs if s in wanted or s in source_key]

    for source_column, target_column in pairs:
        source_col = source_schema.column(source_column)
        target_col = target_schema.column(target_column)
        if source_col is None:
            problems.append(f"源列 {source_column} 不存在")
        if target_col is None:
            problems.append(f"目标列 {target_column} 不存在于 {target_schema.ref.qualified}")
        if source_col is None or target_col is None:
            continue
        if not families_compatible(source_col.family, target_col.family):
            problems.append(
                f"列 {source_column} ({source_col.type}) 无法写入 "
                f"{target_column} ({target_col.type})"
            )

    targets = [t for _, t in pairs]
    duplicates = sorted({t for t in targets if targets.count(t) > 1})
    if duplicates:
        problems.append(f"多个源列映射到同一目标列: {duplicates}")

    mapped_targets = set(targets)
    for col in target_schema.columns:
        if col.name in mapped_targets or col.nullable or col.has_default:
            continue
        problems.append(f"目标列 {col.name} 不可为空且没有默认值，但未被映射")

    if not source_key:
        problems.append("源表没有主键或唯一键，无法定位目标行")

    pair_map = dict(pairs)
    unmapped_key = [c for c in source_key if c not in pair_map]
    if unmapped_key:
        problems.append(f"源主键列未被映射: {unmapped_key}")

    if problems:
        raise SchemaMismatchError(table, problems)

    target_key = tuple(pair_map[c] for c in source_key)
    unique = any(
        set(key) <= set(target_key) for key in target_schema.unique_column_sets()
    )
    if not unique:
        logger.warning(
            "mapping_key_not_unique",
            table=table,
            target=target_schema.ref.qualified,
            target_key=list(target_key),
        )
        if mapping.options.apply:
            raise SchemaMismatchError(table, [
                f"源主键映射到目标列 {list(target_key)}，但目标表没有对应的唯一约束，"
                "重复应用无法去重"
            ])

    return ValidatedMapping(
        mapping=mapping,
        source_schema=source_schema,
        target_schema=target_schema,
        column_pairs=tuple(pairs),
        source_key=source_key,
        target_key=target_key,
        conflict_resolution=mapping.options.conflict_resolution or default_conflict,
    )


class RowMapper:
    """
    行转换器

    按 ValidatedMapping 的列对把源行转换为目标行。
    """

    def __init__(self, mapping: ValidatedMapping):
        self.mapping = mapping
        self._pairs = mapping.column_pairs

    def to_target(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """
        转换单行数据

        源行中未映射的列被丢弃，缺失的映射列不出现在结果中。
        """
        if row is None:
            return None
        return {target: row[source] for source, target in self._pairs if source in row}

    def transform_batch(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [self.to_target(row) or {} for row in rows]

    def source_key(self, row: Dict[str, Any]) -> tuple:
        return tuple(row.get(c) for c in self.mapping.source_key)

    def target_key(self, row: Dict[str, Any]) -> tuple:
        """从源行中提取目标行键"""
        return self.source_key(row)

    def project_target(self, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """只保留目标行中被映射的列（冲突比较使用）"""
        if row is None:
            return None
        return {t: row.get(t) for t in self.mapping.target_columns}
