"""
CDC 复制引擎

从源数据存储的变更日志（或轮询比对）捕获行级变更，
经有界通道批量、事务性地应用到目标数据存储，
支持初始快照、断点续传、冲突解决和死信重放。
"""

from typing import Any

__version__ = "0.1.0"

# 延迟导入，避免循环依赖
__all__ = [
    "ReplicationService",
    "SubscriptionController",
    "JournalingConnection",
    "ReplicationConfig",
    "ChangeEvent",
    "load_config",
]


def __getattr__(name: str) -> Any:
    """延迟加载核心类"""
    if name == "ReplicationService":
        from cdc_replicator.core.runner import ReplicationService
        return ReplicationService
    elif name == "SubscriptionController":
        from cdc_replicator.core.controller import SubscriptionController
        return SubscriptionController
    elif name == "JournalingConnection":
        from cdc_replicator.core.journal import JournalingConnection
        return JournalingConnection
    elif name == "ReplicationConfig":
        from cdc_replicator.models.sync_config import ReplicationConfig
        return ReplicationConfig
    elif name == "ChangeEvent":
        from cdc_replicator.models.event import ChangeEvent
        return ChangeEvent
    elif name == "load_config":
        from cdc_replicator.config import load_config
        return load_config
    raise AttributeError(f"module 'cdc_replicator' has no attribute '{name}'")
