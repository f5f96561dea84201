"""
捕获引擎 - 从源数据存储产生按表有序的变更事件流

两种捕获方式:
    - LogCapture: 从变更日志断点处持续读取，日志被截断时抛出 LogGapError
    - PollingCapture: 定期将源表与影子镜像比对，至少一次语义

事件流是惰性、无界、可从任意断点重启的异步迭代器。
断点只在应用端确认（acknowledge）之后推进。
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from cdc_replicator.core.journal import decode_image, encode_image
from cdc_replicator.core.registry import DatastoreHandle
from cdc_replicator.errors import LogGapError
from cdc_replicator.models.datastore import CaptureMode, CaptureSettings
from cdc_replicator.models.event import ChangeEvent, OperationType
from cdc_replicator.models.mapping import TableRef, ValidatedMapping
from cdc_replicator.storage.checkpoint import CheckpointStore, ShadowChange, shadow_key
from cdc_replicator.utils.logging import get_logger

logger = get_logger(__name__)


def normalize_image(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """把行值规整为 JSON 可表示的形式（与影子镜像的存储形式一致）"""
    return decode_image(encode_image(row))


class LogCapture:
    """
    基于变更日志的捕获

    从断点之后逐批读取日志。每批先读日志、再读轮转状态，
    若轮转位置越过断点，说明读取的结果可能缺少事件，直接失败。
    """

    def __init__(
        self,
        subscription_id: str,
        mapping: ValidatedMapping,
        handle: DatastoreHandle,
        settings: CaptureSettings
    ):
        self.subscription_id = subscription_id
        self.mapping = mapping
        self.handle = handle
        self.settings = settings

    async def stream(self, checkpoint: int) -> AsyncIterator[ChangeEvent]:
        ref = self.mapping.source_ref
        cursor = checkpoint
        datastore = await self.handle.acquire()

        logger.info(
            "log_capture_started",
            subscription=self.subscription_id,
            table=ref.qualified,
            checkpoint=checkpoint,
        )

        while True:
            async with datastore.session() as session:
                entries = await session.read_journal(ref, cursor, self.settings.fetch_size)
                state = await session.journal_state(ref)

            if state.purged_through > cursor:
                logger.error(
                    "log_gap_detected",
                    subscription=self.subscription_id,
                    table=ref.qualified,
                    checkpoint=cursor,
                    purged_through=state.purged_through,
                )
                raise LogGapError(ref.qualified, cursor, state.purged_through)

            for entry in entries:
                cursor = entry.seq
                yield ChangeEvent(
                    subscription_id=self.subscription_id,
                    table=ref,
                    operation=entry.operation,
                    before_image=entry.before_image,
                    after_image=entry.after_image,
                    source_transaction_id=entry.txid,
                    source_sequence_number=entry.seq,
                    capture_timestamp=entry.captured_at,
                )

            if len(entries) < self.settings.fetch_size:
                await asyncio.sleep(self.settings.poll_interval_seconds)


class PollingCapture:
    """
    基于轮询比对的捕获

    影子镜像保存上次确认时的源表内容。每轮读取整张表与当前视图比对，
    差异生成事件并立即更新内存视图；持久化的影子镜像只在确认后推进。
    重启时视图回到已确认的影子镜像，未确认的差异会被重新生成。
    """

    def __init__(
        self,
        subscription_id: str,
        mapping: ValidatedMapping,
        handle: DatastoreHandle,
        settings: CaptureSettings,
        store: CheckpointStore
    ):
        self.subscription_id = subscription_id
        self.mapping = mapping
        self.handle = handle
        self.settings = settings
        self.store = store
        self._view: Dict[str, Dict[str, Any]] = {}
        self._pending: Dict[int, ShadowChange] = {}

    def _key(self, row: Dict[str, Any]) -> str:
        return shadow_key(row.get(c) for c in self.mapping.source_key)

    def diff(
        self,
        rows: List[Dict[str, Any]]
    ) -> List[Tuple[OperationType, str, Optional[Dict[str, Any]], Optional[Dict[str, Any]]]]:
        """
        比对当前视图和源表

        返回:
            [(操作, 行键, 变更前, 变更后)]，删除在前、更新其次、插入最后
        """
        current: Dict[str, Tuple[Dict[str, Any], Dict[str, Any]]] = {}
        for row in rows:
            current[self._key(row)] = (row, normalize_image(row) or {})

        deletes, updates, inserts = [], [], []
        for key in sorted(self._view):
            if key not in current:
                deletes.append((OperationType.DELETE, key, self._view[key], None))
        for key in sorted(current):
            raw, normalized = current[key]
            previous = self._view.get(key)
            if previous is None:
                inserts.append((OperationType.INSERT, key, None, raw))
            elif previous != normalized:
                updates.append((OperationType.UPDATE, key, previous, raw))
        return deletes + updates + inserts

    async def stream(self, checkpoint: int) -> AsyncIterator[ChangeEvent]:
        ref = self.mapping.source_ref
        self._view = self.store.load_shadow(self.subscription_id, ref.qualified)
        self._pending = {}
        sequence = checkpoint
        datastore = await self.handle.acquire()

        logger.info(
            "polling_capture_started",
            subscription=self.subscription_id,
            table=ref.qualified,
            checkpoint=checkpoint,
            shadow_rows=len(self._view),
        )

        while True:
            async with datastore.session() as session:
                rows = await session.fetch_rows(ref, order_by=self.mapping.source_key)

            captured_at = datetime.now(timezone.utc)
            for operation, key, before, after in self.diff(rows):
                sequence += 1
                normalized = normalize_image(after)
                self._pending[sequence] = (key, normalized)
                if normalized is None:
                    self._view.pop(key, None)
                else:
                    self._view[key] = normalized
                yield ChangeEvent(
                    subscription_id=self.subscription_id,
                    table=ref,
                    operation=operation,
                    before_image=before,
                    after_image=after,
                    source_sequence_number=sequence,
                    capture_timestamp=captured_at,
                )

            await asyncio.sleep(self.settings.poll_interval_seconds)

    def take_acknowledged(self, sequence_number: int) -> List[ShadowChange]:
        """取出序列号不超过 sequence_number 的影子镜像变更（按序）"""
        acknowledged = sorted(s for s in self._pending if s <= sequence_number)
        return [self._pending.pop(s) for s in acknowledged]


CaptureSource = Union[LogCapture, PollingCapture]


class CaptureEngine:
    """
    捕获引擎

    为一个源数据存储上的各订阅表创建捕获流，并负责确认后推进断点。
    断点是捕获端和应用端之间唯一的共享可变状态，只由应用端通过 acknowledge() 推进。

    示例:
        ```python
        engine = CaptureEngine(registry.resolve("iidr-source"), store)
        async for event in engine.start_capture("customers_subscription", mapping, checkpoint=0):
            ...
            engine.acknowledge("customers_subscription", event.table, event.source_sequence_number)
        ```
    """

    def __init__(self, handle: DatastoreHandle, store: CheckpointStore):
        self.handle = handle
        self.store = store
        self.settings = handle.descriptor.cdc_settings
        self.mode = handle.capture_mode()
        self._sources: Dict[Tuple[str, TableRef], CaptureSource] = {}

    def start_capture(
        self,
        subscription_id: str,
        mapping: ValidatedMapping,
        checkpoint: int
    ) -> AsyncIterator[ChangeEvent]:
        """
        从断点开始捕获单表变更

        参数:
            subscription_id: 订阅名称
            mapping: 已校验的表映射
            checkpoint: 已确认的最大序列号

        返回:
            ChangeEvent 异步迭代器
        """
        source: CaptureSource
        if self.mode == CaptureMode.LOG:
            source = LogCapture(subscription_id, mapping, self.handle, self.settings)
        else:
            source = PollingCapture(subscription_id, mapping, self.handle, self.settings, self.store)
        self._sources[(subscription_id, mapping.source_ref)] = source
        return source.stream(checkpoint)

    def checkpoint_for(self, subscription_id: str, table: TableRef) -> int:
        checkpoint = self.store.load_checkpoint(subscription_id, table.qualified)
        return checkpoint.sequence_number if checkpoint else 0

    def acknowledge(
        self,
        subscription_id: str,
        table: TableRef,
        sequence_number: int,
        capture_timestamp: Optional[datetime] = None
    ) -> None:
        """应用端确认：事件已提交或已进入死信，推进断点"""
        source = self._sources.get((subscription_id, table))
        changes: Optional[List[ShadowChange]] = None
        if isinstance(source, PollingCapture):
            changes = source.take_acknowledged(sequence_number)
        self.store.commit_progress(
            subscription_id,
            table.qualified,
            sequence_number,
            capture_timestamp,
            changes,
        )
        logger.debug(
            "checkpoint_advanced",
            subscription=subscription_id,
            table=table.qualified,
            sequence_number=sequence_number,
        )
