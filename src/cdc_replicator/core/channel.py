"""
复制通道 - 把各表的捕获流汇入应用端的有界队列
"""

import asyncio
from contextlib import aclosing
from typing import Callable, Dict, List, Optional

from cdc_replicator.core.capture import CaptureEngine
from cdc_replicator.models.event import ChangeEvent
from cdc_replicator.models.mapping import TableRef, ValidatedMapping
from cdc_replicator.models.sync_config import ChannelConfig
from cdc_replicator.utils.logging import bound_context, get_logger

logger = get_logger(__name__)

FailureCallback = Callable[[BaseException], None]


class Channel:
    """
    复制通道

    每个启用捕获的表一个捕获任务，事件写入同一个有界队列。
    队列满时捕获任务挂起，不会无限缓冲；同一表内的顺序保持不变，
    不同表之间的交错顺序不作保证。通道本身不做任何转换。
    """

    def __init__(
        self,
        config: ChannelConfig,
        subscription_id: str,
        mappings: List[ValidatedMapping],
        capture: CaptureEngine,
        on_failure: Optional[FailureCallback] = None
    ):
        self.config = config
        self.name = config.name
        self.subscription_id = subscription_id
        self.mappings: Dict[TableRef, ValidatedMapping] = {m.source_ref: m for m in mappings}
        self.capture = capture
        self._on_failure = on_failure
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(
            maxsize=config.performance.queue_capacity
        )
        self._tasks: Dict[TableRef, asyncio.Task] = {}

    @property
    def active(self) -> bool:
        return bool(self._tasks)

    async def activate(self, checkpoints: Optional[Dict[TableRef, int]] = None) -> None:
        """启动捕获任务（重复调用无副作用）"""
        if self.active:
            return
        checkpoints = checkpoints or {}
        for ref, mapping in self.mappings.items():
            if not mapping.capture_enabled:
                logger.info("table_capture_disabled", channel=self.name, table=ref.qualified)
                continue
            checkpoint = checkpoints.get(ref, 0)
            self._tasks[ref] = asyncio.create_task(
                self._pump(mapping, checkpoint),
                name=f"capture:{self.subscription_id}:{ref.qualified}",
            )
        logger.info(
            "channel_activated",
            channel=self.name,
            subscription=self.subscription_id,
            tables=[ref.qualified for ref in self._tasks],
        )

    async def _pump(self, mapping: ValidatedMapping, checkpoint: int) -> None:
        ref = mapping.source_ref
        with bound_context(subscription=self.subscription_id, table=ref.qualified):
            stream = self.capture.start_capture(self.subscription_id, mapping, checkpoint)
            try:
                async with aclosing(stream):
                    async for event in stream:
                        await self.queue.put(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("capture_task_failed", error=str(e), exc_info=e)
                if self._on_failure is not None:
                    self._on_failure(e)
                else:
                    raise

    async def deactivate(self) -> int:
        """
        停止捕获任务并清空队列（重复调用无副作用）

        队列中尚未确认的事件被丢弃，重启后从断点重新捕获。

        返回:
            丢弃的事件数
        """
        if not self._tasks:
            return self._drain_queue()
        tasks = list(self._tasks.values())
        self._tasks = {}
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        discarded = self._drain_queue()
        logger.info(
            "channel_deactivated",
            channel=self.name,
            subscription=self.subscription_id,
            discarded=discarded,
        )
        return discarded

    def _drain_queue(self) -> int:
        discarded = 0
        while True:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                return discarded
            discarded += 1

    async def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """取出下一个事件，超时返回 None"""
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            if timeout is not None and timeout <= 0:
                return None
        try:
            if timeout is None:
                return await self.queue.get()
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
