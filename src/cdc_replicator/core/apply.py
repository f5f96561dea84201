"""
应用引擎 - 批量、事务性地把变更事件应用到目标数据存储

批次按 apply_batch_size 或 apply_batch_timeout_seconds（先到者）封口。
断点只在批次提交或事件进入死信之后推进，
序列号不大于断点的事件视为重放直接丢弃。
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from cdc_replicator.core.capture import CaptureEngine
from cdc_replicator.core.channel import Channel
from cdc_replicator.core.conflict import (
    ConflictResolver,
    CustomResolver,
    Outcome,
    classify,
)
from cdc_replicator.core.mapping import RowMapper
from cdc_replicator.core.registry import DatastoreHandle
from cdc_replicator.datastores.base import DatastoreSession
from cdc_replicator.errors import ApplyConflictError, ApplyFailure, ReplicationError
from cdc_replicator.models.event import ApplyBatch, ChangeEvent, DeadLetterRecord, OperationType
from cdc_replicator.models.mapping import ConflictResolution, TableRef, ValidatedMapping
from cdc_replicator.models.position import SubscriptionStatus
from cdc_replicator.models.sync_config import OnError, SubscriptionConfig
from cdc_replicator.utils.logging import get_logger
from cdc_replicator.utils.notifier import NotifierManager

logger = get_logger(__name__)

# 空闲时检查停止信号的间隔（秒）
_IDLE_WAIT = 0.2


class _EventFailed(Exception):
    """批次中某个事件应用失败"""

    def __init__(self, event: ChangeEvent, cause: BaseException):
        super().__init__(str(cause))
        self.event = event
        self.cause = cause


@dataclass
class _BatchCounts:
    """单次尝试的计数，提交成功后才计入指标"""
    applied: int = 0
    noop: int = 0
    conflicts: int = 0
    filtered: int = 0


class ApplyEngine:
    """
    应用引擎

    - transactional_apply 且 apply_mode=transaction 且目标支持事务: 整批一个事务，原子提交
    - 否则每行一个事务
    - 同一目标行的事件按序列号顺序应用（队列内同表事件本身有序）
    - 失败按 retries 重试，耗尽后按 on_error 进入死信、跳过或停止订阅
    """

    def __init__(
        self,
        subscription: SubscriptionConfig,
        mappings: Iterable[ValidatedMapping],
        target: DatastoreHandle,
        capture: CaptureEngine,
        status: SubscriptionStatus,
        batch_size: int,
        custom_resolver: Optional[CustomResolver] = None,
        notifier: Optional[NotifierManager] = None,
        latency_tolerance: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.subscription = subscription
        self.name = subscription.name
        self.settings = subscription.apply_settings
        self.retries = self.settings.retries
        self.target = target
        self.capture = capture
        self.status = status
        self.batch_size = batch_size
        self.notifier = notifier
        self.latency_tolerance = latency_tolerance
        self.metrics_enabled = self.settings.metrics_enabled
        self._sleep = sleep
        self.transactional = subscription.transactional and target.supports_transactional_apply

        self.mappings: Dict[TableRef, ValidatedMapping] = {m.source_ref: m for m in mappings}
        self._mappers = {ref: RowMapper(m) for ref, m in self.mappings.items()}
        self._resolvers = {
            ref: ConflictResolver(
                m.conflict_resolution,
                custom_resolver if m.conflict_resolution == ConflictResolution.CUSTOM else None,
            )
            for ref, m in self.mappings.items()
        }
        self._checkpoints: Dict[TableRef, int] = {}
        self._stop = asyncio.Event()
        self._current_batch: Optional[ApplyBatch] = None
        self._started_at = time.monotonic()
        self._last_activity = time.monotonic()

    @property
    def idle_seconds(self) -> float:
        """距离上次收到事件的秒数"""
        return time.monotonic() - self._last_activity

    @property
    def current_batch(self) -> Optional[ApplyBatch]:
        """正在应用的批次（停止超时时用于记录未排空的事件）"""
        return self._current_batch

    async def prepare(self) -> None:
        """连接目标、加载断点、确保死信表存在"""
        datastore = await self.target.acquire()
        for ref in self.mappings:
            self._checkpoints[ref] = self.capture.checkpoint_for(self.name, ref)
        if self.settings.dead_letter.enabled:
            dlq_ref = self.settings.dead_letter.ref
            async with datastore.session() as session:
                await session.ensure_dead_letter_table(dlq_ref)
                if self.metrics_enabled:
                    # 死信计数包含之前进程写入的记录
                    self.status.metrics.dead_lettered = await session.count_dead_letters(
                        dlq_ref, self.name
                    )
        self._stop.clear()
        self._started_at = self._last_activity = time.monotonic()
        logger.info(
            "apply_engine_ready",
            subscription=self.name,
            transactional=self.transactional,
            batch_size=self.batch_size,
            on_error=self.settings.on_error.value,
        )

    def request_stop(self) -> None:
        """请求停止：当前批次应用完成后退出"""
        self._stop.set()

    # ========================================================================
    # 消费循环
    # ========================================================================

    async def run(self, channel: Channel) -> None:
        """消费通道队列直到 request_stop()"""
        while not self._stop.is_set():
            batch = await self.collect_batch(channel)
            if not batch.is_empty():
                await self.apply_batch(batch)

    async def collect_batch(self, channel: Channel) -> ApplyBatch:
        """
        收集一个批次

        第一个事件到达后开始计时，达到批次大小或超时即封口。
        队列为空时挂起等待，定期检查停止信号。
        """
        batch = ApplyBatch()
        loop = asyncio.get_running_loop()
        deadline: Optional[float] = None

        while len(batch) < self.batch_size and not self._stop.is_set():
            if deadline is None:
                timeout = _IDLE_WAIT
            else:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                timeout = min(remaining, _IDLE_WAIT)

            event = await channel.get(timeout=timeout)
            if event is None:
                continue
            self._last_activity = time.monotonic()
            if deadline is None:
                deadline = loop.time() + self.settings.apply_batch_timeout_seconds
            batch.append(event)

        return batch

    async def apply_batch(self, batch: ApplyBatch) -> None:
        """
        应用一个批次

        异常:
            ApplyFailure: 重试耗尽且 on_error=stop，或批次提交本身失败
        """
        self._current_batch = batch
        try:
            events = self._deduplicate(batch.events)
            if not events:
                return
            if self.transactional:
                await self._apply_transactional(events)
            else:
                for event in events:
                    await self._apply_row(event)
            logger.debug(
                "batch_applied",
                subscription=self.name,
                batch_id=batch.batch_id,
                events=len(events),
            )
        finally:
            self._current_batch = None

    def _deduplicate(self, events: List[ChangeEvent]) -> List[ChangeEvent]:
        """丢弃序列号不大于断点（或批次内已出现的更大序列号）的事件"""
        highest = dict(self._checkpoints)
        result = []
        for event in events:
            if event.table not in self.mappings:
                raise ApplyFailure(
                    f"表 {event.table.qualified} 不在通道映射中",
                    sequence_number=event.source_sequence_number,
                    table=event.table.qualified,
                )
            sequence = event.source_sequence_number
            if sequence <= highest.get(event.table, 0):
                logger.debug(
                    "event_deduplicated",
                    subscription=self.name,
                    table=event.table.qualified,
                    sequence_number=sequence,
                )
                continue
            highest[event.table] = sequence
            result.append(event)
        return result

    # ========================================================================
    # 事务与重试
    # ========================================================================

    async def _apply_transactional(self, events: List[ChangeEvent]) -> None:
        """
        整批事务应用

        某个事件重试耗尽时，把它单独进入死信或跳过，其余事件重新整批应用。
        """
        remaining = list(events)
        while remaining:
            failure = await self._attempt(remaining)
            if failure is None:
                break
            failed_event, error, first_failed_at = failure
            if failed_event is None:
                raise ApplyFailure(
                    f"批次提交失败，已重试 {self.retries.max_attempts} 次: {error}",
                    attempts=self.retries.max_attempts,
                ) from error
            await self._exhausted(failed_event, error, first_failed_at)
            remaining = [e for e in remaining if e is not failed_event]

        self._acknowledge(events)
        if self.metrics_enabled:
            self.status.metrics.batches_committed += 1

    async def _apply_row(self, event: ChangeEvent) -> None:
        """逐行事务应用"""
        failure = await self._attempt([event])
        if failure is not None:
            _, error, first_failed_at = failure
            await self._exhausted(event, error, first_failed_at)
        self._acknowledge([event])

    async def _attempt(
        self,
        events: List[ChangeEvent]
    ) -> Optional[Tuple[Optional[ChangeEvent], BaseException, datetime]]:
        """
        在一个事务中应用事件，失败按重试策略重试

        返回:
            None 表示提交成功；否则 (失败事件或 None, 最后一次异常, 首次失败时间)
        """
        first_failed_at: Optional[datetime] = None
        failed_event: Optional[ChangeEvent] = None
        error: BaseException = ApplyFailure("未执行")

        for attempt in range(1, self.retries.max_attempts + 1):
            counts = _BatchCounts()
            try:
                datastore = await self.target.acquire()
                async with datastore.transaction() as session:
                    for event in events:
                        await self._apply_in_session(session, event, counts)
            except _EventFailed as e:
                failed_event, error = e.event, e.cause
            except Exception as e:
                failed_event, error = None, e
            else:
                self._merge(counts)
                return None

            if first_failed_at is None:
                first_failed_at = datetime.now(timezone.utc)
            logger.warning(
                "apply_attempt_failed",
                subscription=self.name,
                attempt=attempt,
                max_attempts=self.retries.max_attempts,
                table=failed_event.table.qualified if failed_event else None,
                sequence_number=failed_event.source_sequence_number if failed_event else None,
                error=str(error),
            )
            if attempt < self.retries.max_attempts:
                await self._sleep(self.retries.delay_for(attempt))

        if first_failed_at is None:
            raise ReplicationError(
                f"订阅 {self.name} 没有执行任何应用尝试",
                max_attempts=self.retries.max_attempts,
            )
        return failed_event, error, first_failed_at

    async def _exhausted(
        self,
        event: ChangeEvent,
        error: BaseException,
        first_failed_at: datetime
    ) -> None:
        """重试耗尽后按 on_error 处理"""
        attempts = self.retries.max_attempts
        on_error = self.settings.on_error

        if on_error == OnError.ROUTE_TO_DLQ:
            await self._dead_letter(event, error, attempts, first_failed_at)
        elif on_error == OnError.SKIP:
            if self.metrics_enabled:
                self.status.metrics.events_skipped += 1
            logger.error(
                "event_skipped_data_loss",
                subscription=self.name,
                table=event.table.qualified,
                sequence_number=event.source_sequence_number,
                operation=event.operation.value,
                attempts=attempts,
                error=str(error),
            )
        else:
            raise ApplyFailure(
                f"事件重试 {attempts} 次后仍失败: {error}",
                sequence_number=event.source_sequence_number,
                table=event.table.qualified,
                attempts=attempts,
            ) from error

    async def _dead_letter(
        self,
        event: ChangeEvent,
        error: BaseException,
        attempts: int,
        first_failed_at: datetime
    ) -> None:
        record = DeadLetterRecord(
            original_event=event,
            failure_reason=f"{type(error).__name__}: {error}",
            attempt_count=attempts,
            first_failed_at=first_failed_at,
        )
        try:
            datastore = await self.target.acquire()
            async with datastore.transaction() as session:
                inserted = await session.insert_dead_letter(self.settings.dead_letter.ref, record)
        except Exception as e:
            raise ApplyFailure(
                f"写入死信表失败: {e}",
                sequence_number=event.source_sequence_number,
                table=event.table.qualified,
                attempts=attempts,
            ) from e

        if inserted and self.metrics_enabled:
            self.status.metrics.dead_lettered += 1
        logger.error(
            "event_dead_lettered",
            subscription=self.name,
            table=event.table.qualified,
            sequence_number=event.source_sequence_number,
            attempts=attempts,
            reason=record.failure_reason,
            duplicate=not inserted,
        )
        if self.notifier is not None and inserted:
            await self.notifier.event_dead_lettered(
                self.name,
                event.table.qualified,
                event.source_sequence_number,
                record.failure_reason,
            )

    # ========================================================================
    # 单事件应用
    # ========================================================================

    async def _apply_in_session(
        self,
        session: DatastoreSession,
        event: ChangeEvent,
        counts: _BatchCounts
    ) -> None:
        mapping = self.mappings[event.table]
        if not mapping.apply_enabled:
            counts.filtered += 1
            return
        try:
            await self._apply_event(session, event, mapping, counts)
        except Exception as e:
            raise _EventFailed(event, e) from e

    async def _apply_event(
        self,
        session: DatastoreSession,
        event: ChangeEvent,
        mapping: ValidatedMapping,
        counts: _BatchCounts
    ) -> None:
        """
        应用单个事件

        先读取目标行判断是否冲突:
            - 目标已是事件之后的状态: 重放，跳过
            - 目标与上次源端写入一致: 正常应用
            - 否则为冲突，按冲突策略处理
        """
        mapper = self._mappers[event.table]
        ref = mapping.target_ref
        key_columns = mapping.target_key

        before = mapper.to_target(event.before_image)
        after = mapper.to_target(event.after_image)
        locator = event.before_image if event.before_image is not None else event.after_image
        key = mapper.target_key(locator or {})

        target_row = await session.fetch_row(ref, key_columns, key)
        if target_row is None and event.operation == OperationType.UPDATE and after is not None:
            # 修改主键的更新：重放时目标行已经位于新键
            new_key = mapper.target_key(event.after_image or {})
            if list(new_key) != list(key):
                moved = await session.fetch_row(ref, key_columns, new_key)
                if moved is not None:
                    target_row, key = moved, new_key
        outcome = classify(
            event.operation,
            before,
            after,
            mapper.project_target(target_row),
            mapping.target_columns,
        )

        if outcome == Outcome.NOOP:
            counts.noop += 1
            return

        row = after
        delete = event.operation == OperationType.DELETE
        if outcome == Outcome.CONFLICT:
            counts.conflicts += 1
            conflict = ApplyConflictError(
                ref.qualified, key, event.source_sequence_number, target_row
            )
            decision = self._resolvers[event.table].resolve(conflict, event, after)
            logger.warning(
                "apply_conflict",
                subscription=self.name,
                table=ref.qualified,
                key=list(key),
                sequence_number=event.source_sequence_number,
                policy=mapping.conflict_resolution.value,
                applied=decision.apply,
            )
            if not decision.apply:
                return
            if decision.row is not None:
                row, delete = decision.row, False

        if delete:
            await session.delete_row(ref, key_columns, key)
        elif target_row is None:
            await session.insert_row(ref, row or {})
        else:
            await session.update_row(ref, row or {}, key_columns, key)
        counts.applied += 1

    # ========================================================================
    # 断点与指标
    # ========================================================================

    def _merge(self, counts: _BatchCounts) -> None:
        if not self.metrics_enabled:
            return
        metrics = self.status.metrics
        metrics.events_applied += counts.applied
        metrics.conflicts += counts.conflicts
        metrics.events_filtered += counts.filtered
        elapsed = time.monotonic() - self._started_at
        if elapsed > 0:
            metrics.throughput_per_second = round(metrics.events_applied / elapsed, 3)

    def _acknowledge(self, events: List[ChangeEvent]) -> None:
        """按表推进断点到本批次最大序列号"""
        latest: Dict[TableRef, ChangeEvent] = {}
        for event in events:
            current = latest.get(event.table)
            if current is None or event.source_sequence_number > current.source_sequence_number:
                latest[event.table] = event

        for table, event in latest.items():
            self.capture.acknowledge(
                self.name, table, event.source_sequence_number, event.capture_timestamp
            )
            self._checkpoints[table] = event.source_sequence_number
            self.status.last_checkpoint[table.qualified] = event.source_sequence_number

        if latest:
            newest = max(e.capture_timestamp for e in latest.values())
            if newest.tzinfo is None:
                newest = newest.replace(tzinfo=timezone.utc)
            lag = (datetime.now(timezone.utc) - newest).total_seconds()
            self.status.lag_seconds = round(max(lag, 0.0), 3)
            self.status.updated_at = datetime.now(timezone.utc)
            if self.latency_tolerance is not None and lag > self.latency_tolerance:
                logger.warning(
                    "replication_lag_exceeded",
                    subscription=self.name,
                    lag_seconds=self.status.lag_seconds,
                    tolerance_seconds=self.latency_tolerance,
                )

    # ========================================================================
    # 死信重放
    # ========================================================================

    async def replay_dead_letters(self) -> int:
        """
        按表和序列号顺序重放未重放的死信

        每条死信与其 replayed_at 标记在同一个目标事务中提交。
        断点不受影响（死信事件入队时断点已经越过它们）。

        返回:
            重放条数

        异常:
            ApplyFailure: 某条死信重放失败（之前的已提交，之后的不再处理）
        """
        datastore = await self.target.acquire()
        dlq_ref = self.settings.dead_letter.ref
        async with datastore.session() as session:
            await session.ensure_dead_letter_table(dlq_ref)
            records = await session.list_dead_letters(dlq_ref, self.name)

        replayed = 0
        for record in records:
            event = record.original_event
            mapping = self.mappings.get(event.table)
            if mapping is None:
                raise ApplyFailure(
                    f"死信事件所属表 {event.table.qualified} 不在通道映射中",
                    sequence_number=event.source_sequence_number,
                    table=event.table.qualified,
                )
            counts = _BatchCounts()
            try:
                async with datastore.transaction() as session:
                    if mapping.apply_enabled:
                        await self._apply_event(session, event, mapping, counts)
                    if record.id is None:
                        raise ReplicationError("死信记录缺少 id，无法标记为已重放")
                    await session.mark_dead_letter_replayed(dlq_ref, record.id)
            except Exception as e:
                logger.error(
                    "dead_letter_replay_failed",
                    subscription=self.name,
                    table=event.table.qualified,
                    sequence_number=event.source_sequence_number,
                    error=str(e),
                )
                raise ApplyFailure(
                    f"死信重放失败: {e}",
                    sequence_number=event.source_sequence_number,
                    table=event.table.qualified,
                ) from e

            self._merge(counts)
            replayed += 1
            logger.info(
                "dead_letter_replayed",
                subscription=self.name,
                table=event.table.qualified,
                sequence_number=event.source_sequence_number,
            )
        return replayed
