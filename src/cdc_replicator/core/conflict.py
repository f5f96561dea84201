"""
冲突检测与解决

冲突: 目标行在上次源端写入之后被独立修改。
策略通过配置选择（source-wins / target-wins / custom），
custom 委托给注入的解析函数。
"""

import importlib
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Union

from cdc_replicator.config import ConfigError
from cdc_replicator.errors import ApplyConflictError, ApplyFailure
from cdc_replicator.models.event import ChangeEvent, OperationType
from cdc_replicator.models.mapping import ConflictResolution
Row = Dict[str, Any]

# 自定义解析函数: (冲突, 事件, 源端映射后的行) -> 要写入的行 / True 应用源端 / False 或 None 丢弃
CustomResolver = Callable[[ApplyConflictError, ChangeEvent, Optional[Row]], Union[Row, bool, None]]


class Outcome(str, Enum):
    """目标行与事件比对的结果"""
    APPLY = "apply"          # 目标与上次源端写入一致，正常应用
    NOOP = "noop"            # 目标已经是事件之后的状态（重放）
    CONFLICT = "conflict"    # 目标被独立修改


def _normalize(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    return value


def values_equal(left: Any, right: Any) -> bool:
    """
    比较源端和目标端的列值

    不同驱动返回的类型不同（Decimal/float、datetime/字符串、bytes/十六进制），
    按数值或字符串形式比较。
    """
    if left is None or right is None:
        return left is None and right is None
    if left == right:
        return True
    left, right = _normalize(left), _normalize(right)
    if left == right:
        return True
    if isinstance(left, (int, float, Decimal)) or isinstance(right, (int, float, Decimal)):
        try:
            return Decimal(str(left)) == Decimal(str(right))
        except InvalidOperation:
            return False
    try:
        return datetime.fromisoformat(str(left)) == datetime.fromisoformat(str(right))
    except ValueError:
        return False


def rows_equal(left: Optional[Row], right: Optional[Row], columns: Sequence[str]) -> bool:
    if left is None or right is None:
        return left is None and right is None
    return all(values_equal(left.get(c), right.get(c)) for c in columns)


def classify(
    operation: OperationType,
    before: Optional[Row],
    after: Optional[Row],
    target: Optional[Row],
    columns: Sequence[str]
) -> Outcome:
    """
    根据目标行当前值判断事件如何应用

    参数:
        before / after: 映射到目标列后的前后镜像
        target: 目标行当前值（不存在为 None）
        columns: 参与比较的目标列
    """
    if operation == OperationType.INSERT:
        if target is None:
            return Outcome.APPLY
        if rows_equal(target, after, columns):
            return Outcome.NOOP
        return Outcome.CONFLICT

    if operation == OperationType.UPDATE:
        if target is None:
            return Outcome.CONFLICT
        if rows_equal(target, after, columns):
            return Outcome.NOOP
        if before is None or rows_equal(target, before, columns):
            return Outcome.APPLY
        return Outcome.CONFLICT

    # DELETE
    if target is None:
        return Outcome.NOOP
    if rows_equal(target, before, columns):
        return Outcome.APPLY
    return Outcome.CONFLICT


@dataclass
class ConflictDecision:
    """
    冲突解决结果

    属性:
        apply: 是否写入
        row: 要写入的行（None 且 apply 时表示按事件原样应用）
    """
    apply: bool
    row: Optional[Row] = None


def load_resolver(path: str) -> CustomResolver:
    """
    按 "module:function" 加载自定义解析函数

    异常:
        ConfigError: 模块或函数不存在
    """
    module_name, _, attr = path.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"无法导入冲突解析模块 {module_name}: {e}") from e
    resolver = getattr(module, attr, None)
    if not callable(resolver):
        raise ConfigError(f"冲突解析函数不存在或不可调用: {path}")
    return resolver


class ConflictResolver:
    """
    冲突解决器

    示例:
        ```python
        def prefer_newer(conflict, event, incoming):
            target = conflict.target_row or {}
            return incoming if incoming["updated_at"] >= target.get("updated_at", "") else None

        resolver = ConflictResolver(ConflictResolution.CUSTOM, custom=prefer_newer)
        ```
    """

    def __init__(
        self,
        policy: ConflictResolution,
        custom: Optional[CustomResolver] = None
    ):
        if policy == ConflictResolution.CUSTOM and custom is None:
            raise ConfigError("custom 冲突策略需要提供解析函数")
        self.policy = policy
        self._custom = custom

    def resolve(
        self,
        conflict: ApplyConflictError,
        event: ChangeEvent,
        incoming: Optional[Row]
    ) -> ConflictDecision:
        """
        解决冲突

        异常:
            ApplyFailure: 自定义解析函数抛出异常
        """
        if self.policy == ConflictResolution.SOURCE_WINS:
            return ConflictDecision(apply=True)
        if self.policy == ConflictResolution.TARGET_WINS:
            return ConflictDecision(apply=False)

        custom = self._custom
        if custom is None:
            raise ConfigError("custom 冲突策略需要提供解析函数")
        try:
            result = custom(conflict, event, incoming)
        except Exception as e:
            raise ApplyFailure(
                f"自定义冲突解析失败: {e}",
                sequence_number=event.source_sequence_number,
                table=event.table.qualified,
            ) from e

        if isinstance(result, dict):
            return ConflictDecision(apply=True, row=result)
        return ConflictDecision(apply=bool(result))
