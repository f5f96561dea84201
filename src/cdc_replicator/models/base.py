"""
配置模型基类
"""

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from cdc_replicator.utils.logging import get_logger

logger = get_logger(__name__)


class ConfigModel(BaseModel):
    """
    所有配置模型的基类

    - 字段名使用 snake_case，同时接受原 XML 模板中的 camelCase 写法
    - 未知字段只记录警告，不会导致加载失败（便于配置向前兼容）
    """

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    @model_validator(mode="after")
    def warn_unknown_fields(self) -> "ConfigModel":
        """未知字段告警"""
        if self.model_extra:
            logger.warning(
                "unknown_config_fields",
                model=type(self).__name__,
                fields=sorted(self.model_extra),
            )
        return self
