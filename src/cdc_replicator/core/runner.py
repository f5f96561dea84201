"""
复制服务 - 从配置组装注册表、表映射和订阅控制器，并在前台运行订阅
"""

import asyncio
import signal
from typing import Dict, List, Optional

from cdc_replicator.config import ConfigError
from cdc_replicator.core.controller import SubscriptionController
from cdc_replicator.core.mapping import validate_mapping
from cdc_replicator.core.registry import DatastoreRegistry
from cdc_replicator.errors import InvalidTransitionError, SchemaMismatchError
from cdc_replicator.models.event import DeadLetterRecord
from cdc_replicator.models.mapping import TableRef, TableSchema, ValidatedMapping
from cdc_replicator.models.position import SubscriptionState, SubscriptionStatus
from cdc_replicator.models.sync_config import ChannelConfig, ReplicationConfig, SubscriptionConfig
from cdc_replicator.storage.checkpoint import CheckpointStore
from cdc_replicator.utils.logging import get_logger
from cdc_replicator.utils.notifier import NotifierManager, build_notifier

logger = get_logger(__name__)

CONTROL_ACTIONS = ("pause", "resume", "stop")


class ReplicationService:
    """
    复制服务

    示例:
        ```python
        config = load_config("config.yaml")
        service = ReplicationService(config)
        try:
            status = await service.run_subscription("customers_subscription")
        finally:
            await service.close()
        ```
    """

    def __init__(
        self,
        config: ReplicationConfig,
        store: Optional[CheckpointStore] = None,
        registry: Optional[DatastoreRegistry] = None,
        notifier: Optional[NotifierManager] = None
    ):
        self.config = config
        self.store = store or CheckpointStore(config.checkpoint_db)
        self.registry = registry or DatastoreRegistry.from_descriptors(config.datastores)
        self.notifier = notifier or build_notifier(config.notifications)
        self._controllers: Dict[str, SubscriptionController] = {}

    def subscription(self, name: str) -> SubscriptionConfig:
        subscription = self.config.get_subscription(name)
        if subscription is None:
            raise ConfigError(f"订阅不存在: {name}")
        return subscription

    def channel(self, subscription: SubscriptionConfig) -> ChannelConfig:
        channel = self.config.get_channel(subscription.channel)
        if channel is None:
            raise ConfigError(f"订阅 {subscription.name} 引用的通道不存在: {subscription.channel}")
        return channel

    # ========================================================================
    # 表结构与映射
    # ========================================================================

    async def resolve_schema(self, datastore: str, ref: TableRef) -> TableSchema:
        """
        获取表结构：优先使用配置中的 table_definitions，否则从数据库读取

        异常:
            SchemaMismatchError: 表不存在
        """
        schema = self.config.get_table_definition(datastore, ref)
        if schema is not None:
            return schema
        handle = self.registry.resolve(datastore)
        store = await handle.acquire()
        schema = await store.describe_table(ref)
        if schema is None:
            raise SchemaMismatchError(ref.qualified, [f"数据存储 {datastore} 中不存在该表"])
        return schema

    async def build_mappings(self, subscription: SubscriptionConfig) -> List[ValidatedMapping]:
        """
        校验订阅选择的表映射

        异常:
            SchemaMismatchError: 任一映射校验失败
        """
        channel = self.channel(subscription)
        selected = {t.ref.qualified: t for t in subscription.tables}
        validated = []

        for table_mapping in channel.tables:
            source_ref = table_mapping.source_ref
            selection = selected.get(source_ref.qualified)
            if selected and selection is None:
                continue
            source_schema = await self.resolve_schema(channel.source_datastore, source_ref)
            target_schema = await self.resolve_schema(
                channel.target_datastore, table_mapping.target_ref
            )
            validated.append(validate_mapping(
                table_mapping,
                source_schema,
                target_schema,
                default_conflict=subscription.options.conflict_resolution,
                columns=selection.columns if selection and selection.columns else None,
            ))
        return validated

    async def validate(self) -> Dict[str, Optional[str]]:
        """
        校验所有订阅的表映射

        返回:
            {订阅名: 错误信息或 None}
        """
        results: Dict[str, Optional[str]] = {}
        for subscription in self.config.subscriptions:
            try:
                await self.build_mappings(subscription)
            except SchemaMismatchError as e:
                results[subscription.name] = e.message
            else:
                results[subscription.name] = None
        return results

    async def controller(self, name: str, with_mappings: bool = True) -> SubscriptionController:
        """
        获取订阅控制器

        参数:
            name: 订阅名称
            with_mappings: 是否校验表映射（reset 等不访问数据存储的操作不需要）
        """
        controller = self._controllers.get(name)
        if controller is not None and (controller.mappings or not with_mappings):
            return controller
        subscription = self.subscription(name)
        channel = self.channel(subscription)
        mappings = await self.build_mappings(subscription) if with_mappings else []
        if controller is not None:
            await controller.close()
        controller = SubscriptionController(
            subscription,
            channel,
            mappings,
            self.registry,
            self.store,
            notifier=self.notifier,
        )
        self._controllers[name] = controller
        return controller

    # ========================================================================
    # 运维操作
    # ========================================================================

    def status(self, name: str) -> SubscriptionStatus:
        """读取订阅最近持久化的状态"""
        self.subscription(name)
        controller = self._controllers.get(name)
        if controller is not None:
            return controller.status()
        return self.store.load_status(name) or SubscriptionStatus(name=name)

    def request_control(self, name: str, action: str) -> None:
        """向运行中的订阅进程发送 pause/resume/stop 请求"""
        self.subscription(name)
        if action not in CONTROL_ACTIONS:
            raise ValueError(f"不支持的控制请求: {action}")
        self.store.request_control(name, action)
        logger.info("control_requested", subscription=name, action=action)

    async def reset(self, name: str, clear_checkpoints: bool = False) -> SubscriptionStatus:
        controller = await self.controller(name, with_mappings=False)
        return await controller.reset(clear_checkpoints)

    async def list_dead_letters(
        self,
        name: str,
        include_replayed: bool = False
    ) -> List[DeadLetterRecord]:
        subscription = self.subscription(name)
        channel = self.channel(subscription)
        handle = self.registry.resolve(channel.target_datastore)
        datastore = await handle.acquire()
        ref = subscription.apply_settings.dead_letter.ref
        async with datastore.session() as session:
            await session.ensure_dead_letter_table(ref)
            return await session.list_dead_letters(ref, name, include_replayed)

    async def replay_dead_letters(self, name: str) -> int:
        controller = await self.controller(name)
        return await controller.replay_dead_letters()

    # ========================================================================
    # 前台运行
    # ========================================================================

    async def run_subscription(
        self,
        name: str,
        until_caught_up: bool = False,
        control_interval: float = 0.5
    ) -> SubscriptionStatus:
        """
        在前台运行订阅直到停止、失败或收到 SIGINT/SIGTERM

        参数:
            name: 订阅名称
            until_caught_up: 追平源端（一段时间内没有新事件）后自动停止
            control_interval: 轮询控制请求和持久化状态的间隔（秒）

        返回:
            最终状态
        """
        controller = await self.controller(name)
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop, stop_event)
        idle_threshold = self._idle_threshold(controller)

        # 清除上个进程遗留的控制请求
        self.store.pop_control_request(name)

        try:
            status = await self._start_interruptible(controller, stop_event, control_interval)
            while status.state not in (SubscriptionState.FAILED, SubscriptionState.STOPPED):
                action = self.store.pop_control_request(name)
                if action == "stop":
                    break
                if action is not None:
                    await self._handle_control(controller, action)

                if until_caught_up and controller.state == SubscriptionState.STREAMING:
                    engine = controller.engine
                    if engine is not None and engine.idle_seconds >= idle_threshold:
                        logger.info("subscription_caught_up", subscription=name)
                        break

                status = controller.status()
                self.store.save_status(status)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=control_interval)
                except asyncio.TimeoutError:
                    continue
                logger.info("shutdown_signal_received", subscription=name)
                break
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            if controller.state not in (
                SubscriptionState.FAILED, SubscriptionState.STOPPED, SubscriptionState.CREATED
            ):
                await controller.stop()

        return controller.status()

    async def _start_interruptible(
        self,
        controller: SubscriptionController,
        stop_event: asyncio.Event,
        control_interval: float
    ) -> SubscriptionStatus:
        """启动订阅，快照期间同样响应停止信号和 stop 控制请求"""
        start = asyncio.create_task(controller.start(), name=f"start:{controller.name}")
        while True:
            done, _ = await asyncio.wait({start}, timeout=control_interval)
            if done:
                return start.result()

            action = self.store.pop_control_request(controller.name)
            if action is not None and action != "stop":
                await self._handle_control(controller, action)
            if stop_event.is_set() or action == "stop":
                logger.info("stop_requested_during_start", subscription=controller.name)
                try:
                    await controller.stop()
                except InvalidTransitionError as e:
                    # 启动已经失败，由 start 返回 Failed 状态
                    logger.info("stop_skipped", subscription=controller.name, reason=e.message)
                status = await start
                if status.state.is_active:
                    # stop 先于 start 拿到锁
                    status = await controller.stop()
                return status

    async def _handle_control(self, controller: SubscriptionController, action: str) -> None:
        try:
            if action == "pause":
                await controller.pause()
            elif action == "resume":
                await controller.resume()
            else:
                logger.warning("control_request_unknown", subscription=controller.name, action=action)
        except InvalidTransitionError as e:
            logger.warning(
                "control_request_rejected",
                subscription=controller.name,
                action=action,
                error=e.message,
            )

    def _idle_threshold(self, controller: SubscriptionController) -> float:
        source = self.registry.resolve(controller.source_datastore)
        poll = source.descriptor.cdc_settings.poll_interval_seconds
        return poll * 2 + controller.subscription.apply_settings.apply_batch_timeout_seconds + 0.5

    @staticmethod
    def _install_signal_handlers(
        loop: asyncio.AbstractEventLoop,
        stop_event: asyncio.Event
    ) -> List[signal.Signals]:
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError) as e:
                # Windows 或非主线程事件循环
                logger.debug("signal_handler_unavailable", signal=sig.name, error=str(e))
                continue
            installed.append(sig)
        return installed

    async def close(self) -> None:
        """关闭所有控制器和数据存储连接"""
        for controller in self._controllers.values():
            await controller.close()
        self._controllers.clear()
        await self.registry.close()
        self.store.close()
