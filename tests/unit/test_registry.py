"""
数据存储注册表单元测试 (unittest)
"""

import unittest
from unittest import IsolatedAsyncioTestCase
from unittest.mock import AsyncMock, MagicMock

from cdc_replicator.config import ConfigError
from cdc_replicator.core.registry import DatastoreRegistry, RegistryAction
from cdc_replicator.errors import DatastoreConnectionError, DatastoreNotFoundError
from cdc_replicator.models.datastore import CaptureMode, DatastoreDescriptor


def _descriptor(name="src", **extra):
    values = {"name": name, "type": "sqlite", "db_path": f"{name}.db"}
    values.update(extra)
    return DatastoreDescriptor.model_validate(values)


def _mock_datastore(failures=0, unhealthy=0):
    """创建 Mock 连接器，前 failures 次 connect 失败，之后前 unhealthy 次健康检查失败"""
    datastore = MagicMock()
    state = {"connected": False, "calls": 0, "checks": 0}

    async def connect():
        state["calls"] += 1
        if state["calls"] <= failures:
            raise DatastoreConnectionError("src", "connection refused")
        state["connected"] = True

    async def health_check():
        state["checks"] += 1
        if state["checks"] <= unhealthy:
            raise DatastoreConnectionError("src", "健康检查失败: database is locked")

    async def disconnect():
        state["connected"] = False

    datastore.connect = AsyncMock(side_effect=connect)
    datastore.health_check = AsyncMock(side_effect=health_check)
    datastore.disconnect = AsyncMock(side_effect=disconnect)
    datastore.is_connected = MagicMock(side_effect=lambda: state["connected"])
    return datastore


class TestDatastoreRegistry(IsolatedAsyncioTestCase):
    """注册表测试"""

    async def test_register_and_resolve(self):
        registry = DatastoreRegistry()
        handle = registry.register(_descriptor())

        self.assertIs(registry.resolve("src"), handle)
        self.assertIn("src", registry)
        self.assertEqual(registry.names(), ["src"])
        # 注册不建立连接
        self.assertFalse(handle.is_connected)

    async def test_duplicate_name(self):
        registry = DatastoreRegistry()
        registry.register(_descriptor())
        with self.assertRaises(ConfigError):
            registry.register(_descriptor())

    async def test_resolve_unknown(self):
        registry = DatastoreRegistry()
        with self.assertRaises(DatastoreNotFoundError) as cm:
            registry.resolve("missing")
        self.assertEqual(cm.exception.kind, "not_found")

    async def test_acquire_retries_with_backoff(self):
        """测试连接失败按退避重试"""
        datastore = _mock_datastore(failures=2)
        registry = DatastoreRegistry(factory=lambda d: datastore, backoff_seconds=0.001)
        handle = registry.register(_descriptor())

        acquired = await handle.acquire()

        self.assertIs(acquired, datastore)
        self.assertEqual(datastore.connect.await_count, 3)
        # 已连接时直接复用
        await handle.acquire()
        self.assertEqual(datastore.connect.await_count, 3)

    async def test_acquire_exhausted(self):
        datastore = _mock_datastore(failures=10)
        registry = DatastoreRegistry(
            factory=lambda d: datastore, connect_attempts=3, backoff_seconds=0.001
        )
        handle = registry.register(_descriptor())

        with self.assertRaises(DatastoreConnectionError) as cm:
            await handle.acquire()
        self.assertEqual(cm.exception.attempts, 3)
        self.assertEqual(cm.exception.kind, "connection_error")

    async def test_acquire_retries_failed_health_check(self):
        """测试健康检查失败时断开连接并重试"""
        datastore = _mock_datastore(unhealthy=1)
        registry = DatastoreRegistry(factory=lambda d: datastore, backoff_seconds=0.001)
        handle = registry.register(_descriptor())

        acquired = await handle.acquire()

        self.assertIs(acquired, datastore)
        self.assertEqual(datastore.connect.await_count, 2)
        self.assertEqual(datastore.health_check.await_count, 2)
        datastore.disconnect.assert_awaited_once()
        self.assertTrue(handle.is_connected)

    async def test_replaced_handle_cannot_reconnect(self):
        """测试被替换的旧句柄不再建立连接"""
        datastores = [_mock_datastore(), _mock_datastore()]
        registry = DatastoreRegistry(factory=lambda d: datastores.pop(0))
        old = registry.register(_descriptor())
        await old.acquire()

        new = await registry.replace(_descriptor(notes="moved"))

        self.assertFalse(old.is_connected)
        with self.assertRaises(DatastoreConnectionError):
            await old.acquire()
        # 新句柄不受影响
        self.assertTrue((await new.acquire()).is_connected())
        self.assertEqual(datastores, [])

    async def test_unregistered_handle_cannot_reconnect(self):
        registry = DatastoreRegistry(factory=lambda d: _mock_datastore())
        handle = registry.register(_descriptor())
        await registry.unregister("src")

        with self.assertRaises(DatastoreConnectionError):
            await handle.acquire()

    async def test_listeners(self):
        """测试注册表变更事件"""
        datastore = _mock_datastore()
        registry = DatastoreRegistry(factory=lambda d: datastore)
        events = []
        unsubscribe = registry.subscribe(events.append)

        registry.register(_descriptor())
        await registry.resolve("src").acquire()
        await registry.replace(_descriptor(notes="moved"))
        await registry.unregister("src")
        unsubscribe()
        registry.register(_descriptor())

        self.assertEqual(
            [e.action for e in events],
            [RegistryAction.REGISTERED, RegistryAction.REPLACED, RegistryAction.UNREGISTERED],
        )
        # 替换时旧连接被关闭
        datastore.disconnect.assert_awaited()
        self.assertIn("src", registry)

    async def test_capture_mode(self):
        registry = DatastoreRegistry()
        auto = registry.register(_descriptor("auto"))
        polling = registry.register(_descriptor("poll", cdc_settings={"mode": "polling"}))
        disabled = registry.register(
            _descriptor("nolog", capabilities={"supports_log_cdc": False}, cdc_settings={"mode": "log"})
        )

        self.assertEqual(auto.capture_mode(), CaptureMode.LOG)
        self.assertEqual(polling.capture_mode(), CaptureMode.POLLING)
        # 声明不支持日志捕获时回退到轮询
        self.assertEqual(disabled.capture_mode(), CaptureMode.POLLING)


if __name__ == "__main__":
    unittest.main()
