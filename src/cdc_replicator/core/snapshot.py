"""
初始快照 - 把源表现有数据复制到目标表，并记录增量捕获的起点
"""

import asyncio
from typing import Dict, Iterable, List

from cdc_replicator.core.capture import normalize_image
from cdc_replicator.core.mapping import RowMapper
from cdc_replicator.core.registry import DatastoreHandle
from cdc_replicator.models.datastore import CaptureMode
from cdc_replicator.models.mapping import ValidatedMapping
from cdc_replicator.storage.checkpoint import CheckpointStore, shadow_key
from cdc_replicator.utils.logging import get_logger

logger = get_logger(__name__)


class InitialSnapshot:
    """
    初始快照执行器

    快照读取与日志位置在同一个一致性读事务中取得，
    快照完成后断点设为该位置，增量捕获从这里继续，既无缺口也无重复。
    目标端按键"不存在才插入"，中断后重做快照不会产生重复行。
    """

    def __init__(
        self,
        subscription_id: str,
        source: DatastoreHandle,
        target: DatastoreHandle,
        store: CheckpointStore,
        batch_size: int = 500
    ):
        """
        初始化快照执行器

        参数:
            subscription_id: 订阅名称
            source: 源数据存储
            target: 目标数据存储
            store: 断点存储
            batch_size: 每个目标事务写入的行数
        """
        self.subscription_id = subscription_id
        self.source = source
        self.target = target
        self.store = store
        self.batch_size = batch_size
        self.mode = source.capture_mode()

    def pending_tables(self, mappings: Iterable[ValidatedMapping]) -> List[ValidatedMapping]:
        """返回尚未完成快照（或起点标记）的表"""
        checkpoints = self.store.load_checkpoints(self.subscription_id)
        pending = []
        for mapping in mappings:
            if not mapping.capture_enabled:
                continue
            checkpoint = checkpoints.get(mapping.source_ref.qualified)
            if checkpoint is None or not checkpoint.snapshot_completed:
                pending.append(mapping)
        return pending

    async def run(self, mappings: Iterable[ValidatedMapping], copy_rows: bool = True) -> Dict[str, int]:
        """
        对尚未完成的表执行快照

        参数:
            mappings: 订阅的表映射
            copy_rows: False 时只记录当前位置，不复制现有数据

        返回:
            {表名: 复制行数}
        """
        copied: Dict[str, int] = {}
        for mapping in self.pending_tables(mappings):
            wanted = copy_rows and mapping.initial_snapshot and mapping.apply_enabled
            copied[mapping.source_ref.qualified] = await self.snapshot_table(mapping, wanted)
        return copied

    async def snapshot_table(self, mapping: ValidatedMapping, copy_rows: bool = True) -> int:
        """
        快照单表

        参数:
            mapping: 表映射
            copy_rows: 是否把现有数据写入目标

        返回:
            写入目标的行数
        """
        ref = mapping.source_ref
        datastore = await self.source.acquire()
        result = await datastore.snapshot(ref, order_by=mapping.source_key)
        journal_seq = result.journal_seq or 0

        logger.info(
            "snapshot_started",
            subscription=self.subscription_id,
            table=ref.qualified,
            rows=len(result.rows),
            journal_seq=journal_seq,
            copy_rows=copy_rows,
        )

        inserted = 0
        if copy_rows:
            inserted = await self._copy(mapping, result.rows)

        if self.mode == CaptureMode.POLLING:
            # 轮询模式以快照时刻的镜像为比对基线
            shadow = {
                shadow_key(row.get(c) for c in mapping.source_key): normalize_image(row) or {}
                for row in result.rows
            }
            self.store.mark_snapshot_completed(self.subscription_id, ref.qualified, 0, shadow)
        else:
            self.store.mark_snapshot_completed(self.subscription_id, ref.qualified, journal_seq)

        logger.info(
            "snapshot_completed",
            subscription=self.subscription_id,
            table=ref.qualified,
            inserted=inserted,
            skipped=len(result.rows) - inserted if copy_rows else 0,
        )
        return inserted

    async def _copy(self, mapping: ValidatedMapping, rows: List[dict]) -> int:
        """分批写入目标，每批一个事务"""
        mapper = RowMapper(mapping)
        target_ref = mapping.target_ref
        datastore = await self.target.acquire()
        inserted = 0

        for start in range(0, len(rows), self.batch_size):
            chunk = mapper.transform_batch(rows[start:start + self.batch_size])
            async with datastore.transaction() as session:
                for row in chunk:
                    if await session.insert_if_absent(target_ref, row, mapping.target_key):
                        inserted += 1
            logger.debug(
                "snapshot_batch_written",
                subscription=self.subscription_id,
                table=target_ref.qualified,
                progress=min(start + self.batch_size, len(rows)),
                total=len(rows),
            )
            # 流控：短暂让出，避免压垮目标库
            if len(chunk) == self.batch_size:
                await asyncio.sleep(0.001)

        return inserted
