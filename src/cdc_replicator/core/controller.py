"""
订阅控制器 - 订阅生命周期状态机

状态:
    Created -> Snapshotting -> Streaming <-> Paused
    任意非终态 --stop--> Stopped
    任意非终态 --致命错误--> Failed（需人工 reset）

controller 负责组装管道（捕获引擎 -> 通道 -> 应用引擎），
在暂停、恢复、停止和数据存储热更新时拆装管道。
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional, Set

from cdc_replicator.config import ConfigError
from cdc_replicator.core.apply import ApplyEngine
from cdc_replicator.core.capture import CaptureEngine
from cdc_replicator.core.channel import Channel
from cdc_replicator.core.conflict import CustomResolver, load_resolver
from cdc_replicator.core.registry import DatastoreRegistry, RegistryAction, RegistryEvent
from cdc_replicator.core.snapshot import InitialSnapshot
from cdc_replicator.errors import InvalidTransitionError, LogGapError, error_kind
from cdc_replicator.models.mapping import ValidatedMapping
from cdc_replicator.models.position import SubscriptionState, SubscriptionStatus
from cdc_replicator.models.sync_config import ChannelConfig, SubscriptionConfig
from cdc_replicator.storage.checkpoint import CheckpointStore
from cdc_replicator.utils.logging import bound_context, get_logger, set_log_level
from cdc_replicator.utils.notifier import NotifierManager

logger = get_logger(__name__)

S = SubscriptionState

_NON_TERMINAL: FrozenSet[SubscriptionState] = frozenset(
    {S.CREATED, S.SNAPSHOTTING, S.STREAMING, S.PAUSED, S.STOPPED}
)

# 触发器 -> {当前状态: 允许的目标状态}
TRANSITIONS: Dict[str, Dict[SubscriptionState, FrozenSet[SubscriptionState]]] = {
    "start": {
        S.CREATED: frozenset({S.SNAPSHOTTING, S.STREAMING}),
        S.STOPPED: frozenset({S.SNAPSHOTTING, S.STREAMING}),
    },
    "complete": {S.SNAPSHOTTING: frozenset({S.STREAMING})},
    "pause": {S.STREAMING: frozenset({S.PAUSED})},
    "resume": {S.PAUSED: frozenset({S.STREAMING})},
    "stop": {state: frozenset({S.STOPPED}) for state in _NON_TERMINAL},
    "fail": {state: frozenset({S.FAILED}) for state in _NON_TERMINAL},
    "reset": {S.FAILED: frozenset({S.STOPPED})},
}


def allowed_targets(state: SubscriptionState, trigger: str) -> FrozenSet[SubscriptionState]:
    """返回 state 下 trigger 允许到达的状态（不允许时为空集合）"""
    return TRANSITIONS.get(trigger, {}).get(state, frozenset())


class SubscriptionController:
    """
    订阅控制器

    示例:
        ```python
        controller = SubscriptionController(subscription, channel, mappings, registry, store)
        await controller.start()
        await controller.pause()
        await controller.resume()
        await controller.stop()
        print(controller.status().state)
        ```
    """

    def __init__(
        self,
        subscription: SubscriptionConfig,
        channel_config: ChannelConfig,
        mappings: List[ValidatedMapping],
        registry: DatastoreRegistry,
        store: CheckpointStore,
        notifier: Optional[NotifierManager] = None,
        custom_resolver: Optional[CustomResolver] = None,
        apply_sleep=asyncio.sleep
    ):
        """
        初始化订阅控制器

        参数:
            subscription: 订阅配置
            channel_config: 订阅引用的通道
            mappings: 已校验的表映射（订阅选择的表）
            registry: 数据存储注册表
            store: 断点存储
            notifier: 告警通知
            custom_resolver: custom 冲突策略的解析函数（默认按 customResolver 配置加载）
            apply_sleep: 重试等待函数（测试中替换）
        """
        self.subscription = subscription
        self.name = subscription.name
        self.channel_config = channel_config
        self.mappings = mappings
        self.registry = registry
        self.store = store
        self.notifier = notifier
        self._apply_sleep = apply_sleep
        if custom_resolver is None and subscription.options.custom_resolver:
            custom_resolver = load_resolver(subscription.options.custom_resolver)
        self.custom_resolver = custom_resolver
        self.batch_size = (
            subscription.apply_settings.apply_batch_size
            or channel_config.performance.apply_batch_size
        )

        self._status = self._restore_status()
        self._lock = asyncio.Lock()
        self._channel: Optional[Channel] = None
        self._engine: Optional[ApplyEngine] = None
        self._apply_task: Optional[asyncio.Task] = None
        self._pipeline_error: Optional[BaseException] = None
        self._restart_pending = False
        self._snapshot_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._unsubscribe = registry.subscribe(self._on_registry_event)

    def _restore_status(self) -> SubscriptionStatus:
        """
        恢复上次持久化的状态

        上个进程中运行或暂停的订阅已经没有管道，恢复为 Stopped；
        Failed 保持不变，直到人工 reset。
        """
        status = self.store.load_status(self.name)
        if status is None:
            return SubscriptionStatus(name=self.name)
        if status.state in (S.SNAPSHOTTING, S.STREAMING, S.PAUSED):
            status.state = S.STOPPED
        return status

    @property
    def state(self) -> SubscriptionState:
        return self._status.state

    @property
    def source_datastore(self) -> str:
        return self.channel_config.source_datastore

    @property
    def target_datastore(self) -> str:
        return self.channel_config.target_datastore

    @property
    def engine(self) -> Optional[ApplyEngine]:
        return self._engine

    def status(self) -> SubscriptionStatus:
        """
        当前状态（不阻塞，暂停和失败时返回最后已知值）

        返回:
            状态快照，包含 state、各表断点、延迟和错误
        """
        return self._status.model_copy(deep=True)

    def _transition(self, trigger: str, target: SubscriptionState) -> None:
        if target not in allowed_targets(self._status.state, trigger):
            raise InvalidTransitionError(self.name, self._status.state.value, trigger)
        previous = self._status.state
        self._status.state = target
        self._status.updated_at = datetime.now(timezone.utc)
        self._persist()
        logger.info(
            "subscription_transition",
            subscription=self.name,
            trigger=trigger,
            from_state=previous.value,
            to_state=target.value,
        )

    def _check(self, trigger: str) -> None:
        if not allowed_targets(self._status.state, trigger):
            raise InvalidTransitionError(self.name, self._status.state.value, trigger)

    def _persist(self) -> None:
        self.store.save_status(self._status)

    # ========================================================================
    # 生命周期
    # ========================================================================

    async def start(self) -> SubscriptionStatus:
        """
        启动订阅

        需要快照的表先完成快照（Snapshotting），之后进入 Streaming。
        initialSnapshot=false 时只记录当前位置，不复制现有数据。
        快照在锁外运行，期间 stop() 可以取消快照。

        异常:
            InvalidTransitionError: 当前状态不允许启动
            ConfigError: 订阅未启用
        """
        async with self._lock:
            self._check("start")
            if not self.subscription.options.enabled:
                raise ConfigError(f"订阅 {self.name} 未启用 (enabled: false)")
            self._pipeline_error = None
            if self.subscription.apply_settings.log_level:
                set_log_level(self.subscription.apply_settings.log_level)

            with bound_context(subscription=self.name):
                try:
                    snapshot = await self._begin_start()
                except Exception as e:
                    await self._enter_failed(e)
                    return self.status()
            if snapshot is None:
                return self.status()

        try:
            await asyncio.wait({snapshot})
        except asyncio.CancelledError:
            snapshot.cancel()
            raise

        async with self._lock:
            if self._snapshot_task is snapshot:
                self._snapshot_task = None
            if snapshot.cancelled() or self._status.state != S.SNAPSHOTTING:
                # 快照期间已被 stop()
                return self.status()
            with bound_context(subscription=self.name):
                try:
                    snapshot.result()
                    self._refresh_checkpoints()
                    self._transition("complete", S.STREAMING)
                    await self._start_pipeline()
                except Exception as e:
                    await self._enter_failed(e)
            return self.status()

    async def _begin_start(self) -> Optional[asyncio.Task]:
        """
        需要复制数据时转入 Snapshotting 并返回快照任务；
        否则记录位置、转入 Streaming 并启动管道，返回 None
        """
        source = self.registry.resolve(self.source_datastore)
        target = self.registry.resolve(self.target_datastore)
        snapshot = InitialSnapshot(self.name, source, target, self.store, self.batch_size)
        pending = snapshot.pending_tables(self.mappings)

        if pending and self.subscription.options.initial_snapshot:
            self._transition("start", S.SNAPSHOTTING)
            self._snapshot_task = asyncio.create_task(
                snapshot.run(pending, copy_rows=True), name=f"snapshot:{self.name}"
            )
            return self._snapshot_task

        if pending:
            await snapshot.run(pending, copy_rows=False)
            self._refresh_checkpoints()
        self._transition("start", S.STREAMING)
        await self._start_pipeline()
        return None

    async def _cancel_snapshot(self) -> None:
        """取消进行中的快照，未完成的表不记录断点"""
        task, self._snapshot_task = self._snapshot_task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait({task})
        logger.info("snapshot_cancelled", subscription=self.name)

    async def pause(self) -> SubscriptionStatus:
        """暂停：当前批次提交后停止捕获和应用，断点保留"""
        async with self._lock:
            self._check("pause")
            await self._teardown()
            if self._pipeline_error is not None:
                await self._enter_failed(self._pipeline_error)
            else:
                self._transition("pause", S.PAUSED)
            return self.status()

    async def resume(self) -> SubscriptionStatus:
        """恢复：从已确认的断点重建管道"""
        async with self._lock:
            self._check("resume")
            self._pipeline_error = None
            self._transition("resume", S.STREAMING)
            with bound_context(subscription=self.name):
                try:
                    await self._start_pipeline()
                except Exception as e:
                    await self._enter_failed(e)
            return self.status()

    async def stop(self) -> SubscriptionStatus:
        """
        优雅停止

        立即取消捕获任务，应用引擎提交当前批次后退出；
        超过 shutdown_timeout_seconds 仍未完成则中止并记录未排空的批次。
        """
        async with self._lock:
            self._check("stop")
            await self._cancel_snapshot()
            await self._teardown()
            if self._pipeline_error is not None:
                await self._enter_failed(self._pipeline_error)
            else:
                self._transition("stop", S.STOPPED)
            return self.status()

    async def reset(self, clear_checkpoints: bool = False) -> SubscriptionStatus:
        """
        人工干预：Failed -> Stopped

        参数:
            clear_checkpoints: 清除断点（下次启动重新快照）。
                日志缺口导致的失败总是清除断点。
        """
        async with self._lock:
            self._check("reset")
            error = self._status.error
            if clear_checkpoints or (error is not None and error.kind == LogGapError.kind):
                self.store.clear_subscription(self.name)
                self._status.last_checkpoint = {}
            self._status.error = None
            self._transition("reset", S.STOPPED)
            return self.status()

    async def close(self) -> None:
        """释放控制器（不改变持久化状态）"""
        self._unsubscribe()
        await self._cancel_snapshot()
        await self._teardown()
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

    # ========================================================================
    # 管道
    # ========================================================================

    def _refresh_checkpoints(self) -> None:
        for table, checkpoint in self.store.load_checkpoints(self.name).items():
            self._status.last_checkpoint[table] = checkpoint.sequence_number

    def build_apply_engine(self) -> ApplyEngine:
        """创建应用引擎（死信重放也使用它）"""
        source = self.registry.resolve(self.source_datastore)
        target = self.registry.resolve(self.target_datastore)
        capture = CaptureEngine(source, self.store)
        return ApplyEngine(
            self.subscription,
            self.mappings,
            target,
            capture,
            self._status,
            batch_size=self.batch_size,
            custom_resolver=self.custom_resolver,
            notifier=self.notifier,
            latency_tolerance=self.channel_config.performance.latency_tolerance_seconds,
            sleep=self._apply_sleep,
        )

    async def _start_pipeline(self) -> None:
        engine = self.build_apply_engine()
        await engine.prepare()
        capture = engine.capture
        checkpoints = {
            m.source_ref: capture.checkpoint_for(self.name, m.source_ref) for m in self.mappings
        }
        channel = Channel(
            self.channel_config,
            self.name,
            self.mappings,
            capture,
            on_failure=self._on_pipeline_failure,
        )
        self._engine, self._channel = engine, channel
        await channel.activate(checkpoints)
        self._apply_task = asyncio.create_task(self._run_apply(engine, channel), name=f"apply:{self.name}")
        logger.info(
            "pipeline_started",
            subscription=self.name,
            capture_mode=capture.mode.value,
            checkpoints={ref.qualified: seq for ref, seq in checkpoints.items()},
        )

    async def _run_apply(self, engine: ApplyEngine, channel: Channel) -> None:
        with bound_context(subscription=self.name):
            try:
                await engine.run(channel)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("apply_task_failed", error=str(e), kind=error_kind(e))
                self._on_pipeline_failure(e)

    def _on_pipeline_failure(self, error: BaseException) -> None:
        """捕获或应用任务的致命错误：记录并在后台转入 Failed"""
        if self._restart_pending:
            # 旧管道的连接已被替换，重建后从断点继续
            logger.info("pipeline_error_during_restart", subscription=self.name, error=str(error))
            return
        if self._pipeline_error is None:
            self._pipeline_error = error
        task = asyncio.create_task(self._fail(error), name=f"fail:{self.name}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _fail(self, error: BaseException) -> None:
        async with self._lock:
            if self._status.state in (S.FAILED, S.STOPPED, S.PAUSED):
                # stop()/pause() 已经处理过该错误
                return
            with bound_context(subscription=self.name):
                await self._enter_failed(error)

    async def _enter_failed(self, error: BaseException) -> None:
        """转入 Failed，记录错误类型和断点并通知"""
        await self._teardown()
        kind = error_kind(error)
        self._refresh_checkpoints()
        self._status.record_error(kind, str(error))
        self._transition("fail", S.FAILED)
        logger.error(
            "subscription_failed",
            subscription=self.name,
            kind=kind,
            error=str(error),
            checkpoint=self._status.last_checkpoint,
        )
        if self.notifier is not None:
            await self.notifier.subscription_failed(self.name, kind, str(error))

    async def _teardown(self) -> None:
        """拆除管道：取消捕获，等待应用端排空当前批次"""
        engine, channel, task = self._engine, self._channel, self._apply_task
        self._engine = self._channel = self._apply_task = None
        if engine is not None:
            engine.request_stop()
        if channel is not None:
            await channel.deactivate()
        if task is None or task is asyncio.current_task():
            return

        timeout = self.subscription.shutdown_timeout_seconds
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            batch = engine.current_batch if engine is not None else None
            logger.error(
                "batch_undrained",
                subscription=self.name,
                timeout=timeout,
                batch_id=batch.batch_id if batch else None,
                events=[
                    (e.table.qualified, e.source_sequence_number) for e in batch.events
                ] if batch else [],
            )
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ========================================================================
    # 数据存储热更新
    # ========================================================================

    def _on_registry_event(self, event: RegistryEvent) -> None:
        if event.name not in (self.source_datastore, self.target_datastore):
            return
        if event.action == RegistryAction.REGISTERED:
            return
        if self._status.state != S.STREAMING:
            return
        logger.info(
            "datastore_changed_restarting",
            subscription=self.name,
            datastore=event.name,
            action=event.action.value,
        )
        self._restart_pending = True
        task = asyncio.create_task(self._restart(), name=f"restart:{self.name}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _restart(self) -> None:
        async with self._lock:
            try:
                if self._status.state != S.STREAMING:
                    return
                with bound_context(subscription=self.name):
                    await self._teardown()
                    self._restart_pending = False
                    try:
                        await self._start_pipeline()
                    except Exception as e:
                        await self._enter_failed(e)
            finally:
                self._restart_pending = False

    async def replay_dead_letters(self) -> int:
        """
        重放死信（订阅不在运行时使用）

        异常:
            InvalidTransitionError: 订阅正在运行
        """
        if self._status.state.is_active:
            raise InvalidTransitionError(self.name, self._status.state.value, "replay")
        engine = self.build_apply_engine()
        await engine.prepare()
        replayed = await engine.replay_dead_letters()
        self._persist()
        return replayed
