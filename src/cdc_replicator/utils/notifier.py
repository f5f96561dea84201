"""
告警通知模块 - 订阅失败和事件进入死信时通知运维
"""

import asyncio
import sys
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from cdc_replicator.models.sync_config import NotificationSettings
from cdc_replicator.utils.logging import get_logger

logger = get_logger(__name__)


class Notifier(ABC):
    """通知器抽象基类"""

    @abstractmethod
    async def notify(self, level: str, title: str, message: str, **fields: Any) -> None:
        """
        发送通知

        参数:
            level: 级别 (info/warning/error)
            title: 标题
            message: 消息内容
            fields: 附加字段（订阅名、表、序列号等）
        """
        raise NotImplementedError


class ConsoleNotifier(Notifier):
    """控制台通知器 - 输出到 stderr"""

    _COLORS = {
        "info": "\033[36m",      # 青色
        "warning": "\033[33m",   # 黄色
        "error": "\033[31m",     # 红色
    }

    def __init__(self, use_colors: Optional[bool] = None):
        self.use_colors = sys.stderr.isatty() if use_colors is None else use_colors

    async def notify(self, level: str, title: str, message: str, **fields: Any) -> None:
        header = f"[{level.upper()}] {title}"
        if self.use_colors:
            header = f"{self._COLORS.get(level, '')}{header}\033[0m"
        print(header, file=sys.stderr)
        print(f"  {message}", file=sys.stderr)
        for key, value in fields.items():
            print(f"  {key}: {value}", file=sys.stderr)


class WebhookNotifier(Notifier):
    """Webhook 通知器 - HTTP 回调"""

    def __init__(
        self,
        webhook_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10.0
    ):
        self.webhook_url = webhook_url
        self.headers = headers or {}
        self.timeout = timeout

    async def notify(self, level: str, title: str, message: str, **fields: Any) -> None:
        """POST JSON 到 webhook，失败只记录日志"""
        payload = {
            "level": level,
            "title": title,
            "message": message,
            "source": "cdc-replicator",
            "fields": {k: str(v) for k, v in fields.items()},
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers=self.headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status >= 400:
                        logger.warning(
                            "webhook_notification_failed",
                            status=response.status,
                            url=self.webhook_url,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("webhook_notification_error", url=self.webhook_url, error=str(e))


class NotifierManager:
    """通知管理器 - 管理多个通知渠道"""

    def __init__(self, notifiers: Optional[List[Notifier]] = None):
        self._notifiers: List[Notifier] = list(notifiers or [])

    def add_notifier(self, notifier: Notifier) -> None:
        self._notifiers.append(notifier)

    def __len__(self) -> int:
        return len(self._notifiers)

    async def notify(self, level: str, title: str, message: str, **fields: Any) -> None:
        """发送通知到所有渠道"""
        for notifier in self._notifiers:
            await notifier.notify(level, title, message, **fields)

    async def subscription_failed(self, subscription: str, kind: str, message: str) -> None:
        await self.notify(
            "error",
            f"订阅 {subscription} 进入 Failed 状态",
            message,
            subscription=subscription,
            kind=kind,
        )

    async def event_dead_lettered(
        self,
        subscription: str,
        table: str,
        sequence_number: int,
        reason: str
    ) -> None:
        await self.notify(
            "warning",
            f"订阅 {subscription} 的事件进入死信表",
            reason,
            subscription=subscription,
            table=table,
            sequence_number=sequence_number,
        )


def build_notifier(settings: NotificationSettings) -> NotifierManager:
    """
    按配置创建通知管理器

    参数:
        settings: 告警通知配置
    """
    manager = NotifierManager()
    if settings.console:
        manager.add_notifier(ConsoleNotifier())
    if settings.webhook_url:
        manager.add_notifier(WebhookNotifier(settings.webhook_url))
    return manager
