"""
日志配置模块 - 使用 structlog 提供结构化日志
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import EventDict, WrappedLogger


def _format_exception(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """把异常对象压缩成一行 "类型: 信息"，traceback 只在 exc_info=True 时输出"""
    exc_info = event_dict.pop("exc_info", None)
    if exc_info:
        if isinstance(exc_info, BaseException):
            event_dict["exception"] = f"{type(exc_info).__name__}: {exc_info}"
        elif exc_info is True:
            import traceback

            event_dict["exception"] = traceback.format_exc()
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "console",
) -> None:
    """
    配置结构化日志

    参数:
        log_level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
        log_format: console（开发环境，彩色输出）或 json（生产环境，供日志采集）
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        _format_exception,
    ]

    if str(log_format).lower().endswith("json"):
        processors = shared + [
            structlog.stdlib.add_logger_name,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors = shared + [
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                sort_keys=False,
                pad_level=False,
            ),
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """
    获取结构化日志记录器

    示例:
        >>> from cdc_replicator.utils.logging import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("batch_committed", subscription="customers", events=500)
        2026-01-01T10:30:00Z [info] batch_committed subscription=customers events=500
    """
    return structlog.get_logger(name)


def set_log_level(level: str) -> None:
    """动态设置日志级别（订阅的 logLevel 设置）"""
    logging.getLogger().setLevel(getattr(logging, level.upper()))


@contextmanager
def bound_context(**kwargs: Any) -> Iterator[None]:
    """
    在代码块内为所有日志绑定上下文字段

    示例:
        >>> with bound_context(subscription="customers_subscription"):
        ...     logger.info("capture_started")  # 自动带上 subscription 字段
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
