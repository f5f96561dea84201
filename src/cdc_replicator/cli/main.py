"""
CLI 命令行入口 - 使用 Click 框架

退出码: 0 成功, 1 用法或配置错误, 2 运行失败
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click

from cdc_replicator import __version__
from cdc_replicator.config import ConfigError, load_config, save_config_template
from cdc_replicator.core.controller import allowed_targets
from cdc_replicator.core.runner import ReplicationService
from cdc_replicator.errors import InvalidTransitionError, ReplicationError
from cdc_replicator.models.position import SubscriptionState, SubscriptionStatus
from cdc_replicator.models.sync_config import ReplicationConfig
from cdc_replicator.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FAILURE = 2

DEFAULT_CONFIG = "config.yaml"

T = TypeVar("T")


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(),
    envvar="CDC_REPLICATOR_CONFIG",
    default=DEFAULT_CONFIG,
    show_default=True,
    help="配置文件或配置目录路径",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="日志级别（默认使用配置中的 log_level）",
)
@click.version_option(version=__version__, prog_name="cdc-replicator")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: Optional[str]) -> None:
    """
    CDC 复制引擎 CLI

    从源数据存储捕获行级变更并应用到目标数据存储。
    """
    configure_logging(log_level=log_level or "INFO")

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["log_level"] = log_level


def _load(ctx: click.Context) -> ReplicationConfig:
    """加载配置，失败时以用法错误退出"""
    path = ctx.obj["config_path"]
    try:
        config = load_config(path)
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(EXIT_USAGE)
    configure_logging(
        log_level=ctx.obj["log_level"] or config.log_level,
        log_format=config.log_format.value,
    )
    return config


def _run(config: ReplicationConfig, action: Callable[[ReplicationService], Awaitable[T]]) -> T:
    """创建服务执行操作，运行失败以退出码 2 退出"""

    async def runner() -> T:
        service = ReplicationService(config)
        try:
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except ConfigError as e:
        click.echo(f"✗ 配置错误: {e}", err=True)
        sys.exit(EXIT_USAGE)
    except ReplicationError as e:
        click.echo(f"✗ [{e.kind}] {e.message}", err=True)
        sys.exit(EXIT_FAILURE)


def _print_status(status: SubscriptionStatus) -> None:
    click.echo(f"订阅: {status.name}")
    click.echo(f"  状态: {status.state.value}")
    lag = f"{status.lag_seconds:.3f}s" if status.lag_seconds is not None else "-"
    click.echo(f"  延迟: {lag}")
    if status.last_checkpoint:
        click.echo("  断点:")
        for table, sequence in sorted(status.last_checkpoint.items()):
            click.echo(f"    {table}: {sequence}")
    metrics = status.metrics
    click.echo(
        f"  已应用: {metrics.events_applied} | 冲突: {metrics.conflicts} | "
        f"死信: {metrics.dead_lettered} | 跳过: {metrics.events_skipped} | "
        f"吞吐: {metrics.throughput_per_second:.2f}/s"
    )
    if status.error is not None:
        click.echo(f"  错误: [{status.error.kind}] {status.error.message}")
        if status.error.checkpoint:
            click.echo(f"  出错断点: {status.error.checkpoint}")


# ============================================================================
# 配置命令
# ============================================================================

@cli.command()
@click.argument("output_path", type=click.Path(), default=DEFAULT_CONFIG)
def init(output_path: str) -> None:
    """
    生成配置文件模板

    示例:
        cdc-replicator init config.yaml
    """
    path = Path(output_path)

    if path.exists():
        click.confirm(f"文件 {output_path} 已存在，是否覆盖？", abort=True)

    save_config_template(output_path)
    click.echo(f"✓ 配置模板已生成: {output_path}")


@cli.command()
@click.argument("config_path", type=click.Path(), required=False)
@click.option("--check-mappings", is_flag=True, help="连接数据存储校验表映射")
@click.pass_context
def validate(ctx: click.Context, config_path: Optional[str], check_mappings: bool) -> None:
    """
    验证配置文件

    示例:
        cdc-replicator validate config.yaml
        cdc-replicator -c config.yaml validate --check-mappings
    """
    if config_path:
        ctx.obj["config_path"] = config_path
    config = _load(ctx)

    click.echo("✓ 配置验证通过")
    click.echo(f"  数据存储: {len(config.datastores)}")
    click.echo(f"  通道: {len(config.channels)}")
    click.echo(f"  订阅: {len(config.subscriptions)}")

    if not check_mappings:
        return

    results = _run(config, lambda service: service.validate())
    failed = False
    for name, problem in results.items():
        if problem is None:
            click.echo(f"  ✓ {name}")
        else:
            failed = True
            click.echo(f"  ✗ {name}: {problem}", err=True)
    if failed:
        sys.exit(EXIT_FAILURE)


# ============================================================================
# 订阅命令
# ============================================================================

@cli.group()
def subscription() -> None:
    """订阅生命周期管理"""


@subscription.command()
@click.argument("name")
@click.option("--until-caught-up", is_flag=True, help="追平源端后自动停止")
@click.pass_context
def start(ctx: click.Context, name: str, until_caught_up: bool) -> None:
    """
    在前台启动订阅（Ctrl+C 优雅停止）

    示例:
        cdc-replicator subscription start customers_subscription
    """
    config = _load(ctx)
    status = _run(
        config,
        lambda service: service.run_subscription(name, until_caught_up=until_caught_up),
    )
    _print_status(status)
    if status.state == SubscriptionState.FAILED:
        sys.exit(EXIT_FAILURE)


def _request(ctx: click.Context, name: str, action: str) -> None:
    """向运行中的订阅发送控制请求"""
    config = _load(ctx)

    async def send(service: ReplicationService) -> SubscriptionStatus:
        status = service.status(name)
        if not allowed_targets(status.state, action):
            raise InvalidTransitionError(name, status.state.value, action)
        if status.state.is_active or status.state == SubscriptionState.PAUSED:
            service.request_control(name, action)
        return status

    status = _run(config, send)
    if status.state.is_active or status.state == SubscriptionState.PAUSED:
        click.echo(f"✓ 已向订阅 {name} 发送 {action} 请求")
    else:
        click.echo(f"订阅 {name} 未在运行 ({status.state.value})")


@subscription.command()
@click.argument("name")
@click.pass_context
def stop(ctx: click.Context, name: str) -> None:
    """停止运行中的订阅（提交当前批次后退出）"""
    _request(ctx, name, "stop")


@subscription.command()
@click.argument("name")
@click.pass_context
def pause(ctx: click.Context, name: str) -> None:
    """暂停运行中的订阅"""
    _request(ctx, name, "pause")


@subscription.command()
@click.argument("name")
@click.pass_context
def resume(ctx: click.Context, name: str) -> None:
    """恢复已暂停的订阅"""
    _request(ctx, name, "resume")


@subscription.command()
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="以 JSON 输出")
@click.pass_context
def status(ctx: click.Context, name: str, as_json: bool) -> None:
    """
    查看订阅状态

    示例:
        cdc-replicator subscription status customers_subscription --json
    """
    config = _load(ctx)

    async def read(service: ReplicationService) -> SubscriptionStatus:
        return service.status(name)

    current = _run(config, read)
    if as_json:
        click.echo(current.model_dump_json(indent=2))
    else:
        _print_status(current)


@subscription.command()
@click.argument("name")
@click.option("--clear-checkpoints", is_flag=True, help="清除断点，下次启动重新快照")
@click.pass_context
def reset(ctx: click.Context, name: str, clear_checkpoints: bool) -> None:
    """
    人工恢复 Failed 订阅（Failed -> Stopped）

    示例:
        cdc-replicator subscription reset customers_subscription --clear-checkpoints
    """
    config = _load(ctx)
    current = _run(config, lambda service: service.reset(name, clear_checkpoints))
    click.echo(f"✓ 订阅 {name} 已重置为 {current.state.value}")


@subscription.group()
def deadletter() -> None:
    """死信管理"""


@deadletter.command("list")
@click.argument("name")
@click.option("--all", "include_replayed", is_flag=True, help="包含已重放的死信")
@click.pass_context
def list_dead_letters(ctx: click.Context, name: str, include_replayed: bool) -> None:
    """列出订阅的死信"""
    config = _load(ctx)
    records = _run(config, lambda service: service.list_dead_letters(name, include_replayed))
    if not records:
        click.echo("没有死信")
        return
    for record in records:
        payload: dict[str, Any] = {
            "id": record.id,
            "table": record.table.qualified,
            "sequence_number": record.source_sequence_number,
            "operation": record.original_event.operation.value,
            "attempt_count": record.attempt_count,
            "first_failed_at": record.first_failed_at.isoformat(),
            "replayed_at": record.replayed_at.isoformat() if record.replayed_at else None,
            "failure_reason": record.failure_reason,
        }
        click.echo(json.dumps(payload, ensure_ascii=False))


@deadletter.command("replay")
@click.argument("name")
@click.pass_context
def replay_dead_letters(ctx: click.Context, name: str) -> None:
    """按序列号顺序重放死信（订阅需处于停止状态）"""
    config = _load(ctx)
    replayed = _run(config, lambda service: service.replay_dead_letters(name))
    click.echo(f"✓ 已重放 {replayed} 条死信")


def main() -> None:
    """console script 入口：用法错误以退出码 1 退出"""
    try:
        code = cli.main(standalone_mode=False)
    except click.exceptions.UsageError as e:
        e.show()
        sys.exit(EXIT_USAGE)
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(EXIT_USAGE)
    except click.exceptions.ClickException as e:
        e.show()
        sys.exit(EXIT_FAILURE)
    sys.exit(code if isinstance(code, int) else EXIT_OK)


if __name__ == "__main__":
    main()
