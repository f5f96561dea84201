"""
数据存储注册表 - 逻辑名称到连接句柄的解析
"""

import asyncio
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel

from cdc_replicator.config import ConfigError
from cdc_replicator.datastores.base import BaseDatastore, backoff_delay
from cdc_replicator.datastores.mysql_store import MySQLDatastore
from cdc_replicator.datastores.sqlite_store import SQLiteDatastore
from cdc_replicator.errors import DatastoreConnectionError, DatastoreNotFoundError
from cdc_replicator.models.datastore import (
    CaptureMode,
    DatastoreDescriptor,
    DatastoreType,
)
from cdc_replicator.utils.logging import get_logger

logger = get_logger(__name__)

_CONNECTORS: Dict[DatastoreType, Type[BaseDatastore]] = {
    DatastoreType.SQLITE: SQLiteDatastore,
    DatastoreType.MYSQL: MySQLDatastore,
}


def create_datastore(descriptor: DatastoreDescriptor) -> BaseDatastore:
    """按数据存储类型创建连接器"""
    connector = _CONNECTORS.get(descriptor.type)
    if connector is None:
        raise ConfigError(f"不支持的数据存储类型: {descriptor.type}")
    return connector(descriptor)


class RegistryAction(str, Enum):
    REGISTERED = "registered"
    REPLACED = "replaced"
    UNREGISTERED = "unregistered"


class RegistryEvent(BaseModel):
    """注册表变更事件（供订阅控制器热加载）"""
    action: RegistryAction
    name: str


RegistryListener = Callable[[RegistryEvent], None]


class DatastoreHandle:
    """
    数据存储句柄

    持有描述和（延迟建立的）连接器。首次 acquire() 时才连接，
    同一句柄上的并发连接由锁串行化，连接成功后的查询可以并行。
    """

    def __init__(
        self,
        descriptor: DatastoreDescriptor,
        factory: Callable[[DatastoreDescriptor], BaseDatastore] = create_datastore,
        connect_attempts: int = 5,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 30.0,
    ):
        self.descriptor = descriptor
        self.name = descriptor.name
        self._factory = factory
        self._connect_attempts = connect_attempts
        self._backoff_seconds = backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._datastore: Optional[BaseDatastore] = None
        self._lock = asyncio.Lock()
        self._retired = False

    @property
    def is_connected(self) -> bool:
        return self._datastore is not None and self._datastore.is_connected()

    @property
    def supports_log_cdc(self) -> bool:
        """描述和连接器都支持变更日志时才可使用日志捕获"""
        declared = self.descriptor.capabilities.supports_log_cdc
        if declared is False:
            return False
        return _CONNECTORS[self.descriptor.type].supports_journal

    @property
    def supports_transactional_apply(self) -> bool:
        return self.descriptor.capabilities.supports_transactional_apply

    def capture_mode(self) -> CaptureMode:
        """生效的捕获模式"""
        requested = self.descriptor.cdc_settings.mode
        if requested == CaptureMode.POLLING:
            return CaptureMode.POLLING
        if self.supports_log_cdc:
            return CaptureMode.LOG
        if requested == CaptureMode.LOG:
            logger.warning("log_capture_unsupported", datastore=self.name, fallback="polling")
        return CaptureMode.POLLING

    async def acquire(self) -> BaseDatastore:
        """
        获取已连接的连接器

        连接后执行 connection_test_query 健康检查。
        连接失败按指数退避重试，尝试次数耗尽后抛出 DatastoreConnectionError。
        已被替换或注销的句柄不再建立连接。
        """
        current = self._datastore
        if current is not None and current.is_connected():
            return current

        async with self._lock:
            if self._retired:
                raise DatastoreConnectionError(self.name, "数据存储已被替换或注销")
            current = self._datastore
            if current is not None and current.is_connected():
                return current

            datastore = self._factory(self.descriptor)
            attempt = 0
            while True:
                attempt += 1
                try:
                    await datastore.connect()
                    await datastore.health_check()
                    break
                except DatastoreConnectionError as e:
                    if datastore.is_connected():
                        await datastore.disconnect()
                    if attempt >= self._connect_attempts:
                        logger.error(
                            "datastore_connect_exhausted",
                            datastore=self.name,
                            attempts=attempt,
                            error=e.message,
                        )
                        raise DatastoreConnectionError(self.name, e.message, attempts=attempt) from e
                    delay = backoff_delay(attempt, self._backoff_seconds, self._max_backoff_seconds)
                    logger.warning(
                        "datastore_connect_retry",
                        datastore=self.name,
                        attempt=attempt,
                        delay=round(delay, 2),
                        error=e.message,
                    )
                    await asyncio.sleep(delay)

            self._datastore = datastore
            return datastore

    async def close(self) -> None:
        async with self._lock:
            if self._datastore is not None:
                await self._datastore.disconnect()
                self._datastore = None

    async def retire(self) -> None:
        """句柄被替换或注销：关闭连接，之后的 acquire() 直接失败"""
        self._retired = True
        await self.close()


class DatastoreRegistry:
    """
    数据存储注册表

    register / resolve 都不做网络 I/O，连接在句柄首次使用时建立。

    示例:
        ```python
        registry = DatastoreRegistry()
        registry.register(config.get_datastore("iidr-source"))
        datastore = await registry.resolve("iidr-source").acquire()
        ```
    """

    def __init__(
        self,
        factory: Callable[[DatastoreDescriptor], BaseDatastore] = create_datastore,
        connect_attempts: int = 5,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 30.0,
    ):
        self._factory = factory
        self._connect_attempts = connect_attempts
        self._backoff_seconds = backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._handles: Dict[str, DatastoreHandle] = {}
        self._listeners: List[RegistryListener] = []

    @classmethod
    def from_descriptors(
        cls,
        descriptors: Iterable[DatastoreDescriptor],
        **kwargs: object,
    ) -> "DatastoreRegistry":
        registry = cls(**kwargs)  # type: ignore[arg-type]
        for descriptor in descriptors:
            registry.register(descriptor)
        return registry

    def _new_handle(self, descriptor: DatastoreDescriptor) -> DatastoreHandle:
        return DatastoreHandle(
            descriptor,
            factory=self._factory,
            connect_attempts=self._connect_attempts,
            backoff_seconds=self._backoff_seconds,
            max_backoff_seconds=self._max_backoff_seconds,
        )

    def register(self, descriptor: DatastoreDescriptor) -> DatastoreHandle:
        """注册数据存储，名称重复时抛出 ConfigError"""
        if descriptor.name in self._handles:
            raise ConfigError(f"数据存储名称重复: {descriptor.name}")
        handle = self._new_handle(descriptor)
        self._handles[descriptor.name] = handle
        logger.info(
            "datastore_registered",
            datastore=descriptor.name,
            type=descriptor.type.value,
            endpoint=descriptor.connection.describe(),
        )
        self._emit(RegistryEvent(action=RegistryAction.REGISTERED, name=descriptor.name))
        return handle

    def resolve(self, name: str) -> DatastoreHandle:
        handle = self._handles.get(name)
        if handle is None:
            raise DatastoreNotFoundError(name)
        return handle

    async def replace(self, descriptor: DatastoreDescriptor) -> DatastoreHandle:
        """用新描述替换已注册的数据存储（旧句柄的连接被关闭）"""
        old = self.resolve(descriptor.name)
        handle = self._new_handle(descriptor)
        self._handles[descriptor.name] = handle
        logger.info("datastore_replaced", datastore=descriptor.name)
        # 先通知订阅者，再关闭旧连接
        self._emit(RegistryEvent(action=RegistryAction.REPLACED, name=descriptor.name))
        await old.retire()
        return handle

    async def unregister(self, name: str) -> None:
        handle = self.resolve(name)
        del self._handles[name]
        logger.info("datastore_unregistered", datastore=name)
        self._emit(RegistryEvent(action=RegistryAction.UNREGISTERED, name=name))
        await handle.retire()

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        """
        订阅注册表变更事件

        返回:
            取消订阅函数
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: RegistryEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def names(self) -> List[str]:
        return list(self._handles)

    def __contains__(self, name: object) -> bool:
        return name in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    async def close(self) -> None:
        """关闭所有已连接的句柄"""
        for handle in self._handles.values():
            await handle.close()
