"""
配置加载模块 - 支持 YAML 文件/目录和环境变量
"""

from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from cdc_replicator.models.sync_config import ReplicationConfig, expand_env_vars


class ConfigError(Exception):
    """配置错误"""
    pass


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"读取配置文件失败: {e}") from e

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML 解析失败 ({path.name}): {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"配置文件必须是一个对象: {path}")
    return raw


def merge_documents(documents: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    合并多个配置文档

    列表字段（datastores、channels 等）按文件顺序拼接，
    对象字段浅合并，标量字段在多个文件中出现时取值必须一致。
    """
    merged: Dict[str, Any] = {}
    for document in documents:
        for key, value in document.items():
            if key not in merged:
                merged[key] = value
            elif isinstance(merged[key], list) and isinstance(value, list):
                merged[key] = merged[key] + value
            elif isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = {**merged[key], **value}
            elif merged[key] != value:
                raise ConfigError(f"配置项 {key} 在多个文件中取值冲突")
    return merged


def _validate(raw_config: Dict[str, Any]) -> ReplicationConfig:
    try:
        expanded_config = expand_env_vars(raw_config)
    except ValueError as e:
        raise ConfigError(str(e)) from e

    try:
        return ReplicationConfig(**expanded_config)
    except ValidationError as e:
        raise ConfigError(f"配置验证失败: {e}") from e


def load_config(path: str | Path) -> ReplicationConfig:
    """
    加载 YAML 配置

    path 可以是单个文件，也可以是目录（按文件名顺序合并其中的 *.yml / *.yaml）。

    支持环境变量替换，格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}

    参数:
        path: 配置文件或目录路径

    返回:
        ReplicationConfig: 验证后的配置对象

    异常:
        ConfigError: 配置不存在、格式错误或验证失败

    示例:
        ```python
        config = load_config("configs/")
        channel = config.get_channel("customers_channel")
        ```
    """
    config_path = Path(path)

    if not config_path.exists():
        raise ConfigError(f"配置文件不存在: {config_path}")

    if config_path.is_dir():
        files = sorted(
            p for p in config_path.iterdir()
            if p.is_file() and p.suffix in (".yml", ".yaml")
        )
        if not files:
            raise ConfigError(f"配置目录中没有 YAML 文件: {config_path}")
        raw_config = merge_documents([_read_yaml(p) for p in files])
    else:
        raw_config = _read_yaml(config_path)

    return _validate(raw_config)


def load_config_from_string(content: str) -> ReplicationConfig:
    """
    从字符串加载配置（用于测试）

    参数:
        content: YAML 配置字符串
    """
    raw_config = yaml.safe_load(content)
    if not isinstance(raw_config, dict):
        raise ConfigError("配置必须是一个对象")
    return _validate(raw_config)


def generate_config_template() -> str:
    """
    生成配置模板

    返回:
        str: YAML 配置模板
    """
    return '''# cdc-replicator 复制配置

# 数据存储（密码只通过 password_secret 引用环境变量，不允许内联）
datastores:
  - name: "iidr-source"
    kind: relational
    type: sqlite
    connection:
      type: sqlite
      db_path: "${CDC_SOURCE_DB:-./source.db}"
    cdc_enabled: true
    cdc_settings:
      mode: auto                 # auto | log | polling
      poll_interval_seconds: 1
    connection_test_query: "SELECT 1"

  - name: "iidr-target"
    kind: relational
    type: mysql
    connection:
      type: mysql
      host: "${IIDR_TARGET_HOST:-target-db}"
      port: ${IIDR_TARGET_PORT:-3306}
      database: sampledb
      user: "${IIDR_TARGET_USER:-target_user}"
      password_secret: IIDR_TARGET_DB_PASSWORD
    cdc_enabled: false

# 表结构定义（可选，缺省时从数据库读取）
table_definitions:
  - datastore: "iidr-target"
    schema_name: sampledb
    table_name: customers
    primary_key: [id]
    columns:
      - {name: id, type: INT, nullable: false}
      - {name: name, type: VARCHAR, length: 100, nullable: false}
      - {name: email, type: VARCHAR, length: 150}
      - {name: created_at, type: TIMESTAMP}

# 复制通道
channels:
  - name: customers_channel
    description: "Replicate customers table from source to target"
    source_datastore: "iidr-source"
    target_datastore: "iidr-target"
    tables:
      - source: {table: customers}
        target: {schema: sampledb, table: customers}
        column_mappings:
          - {source_column: id, target_column: id}
          - {source_column: name, target_column: name}
          - {source_column: email, target_column: email}
          - {source_column: created_at, target_column: created_at}
        options:
          capture: true
          apply: true
          initial_snapshot: true
          conflict_resolution: source-wins
    performance:
      apply_batch_size: 500
      latency_tolerance_seconds: 5
      queue_capacity: 1000

# 订阅
subscriptions:
  - name: customers_subscription
    channel: customers_channel
    options:
      initial_snapshot: true
      apply_mode: transaction      # transaction | row
      conflict_resolution: source-wins
      enabled: true
    apply_settings:
      apply_batch_size: 500
      apply_batch_timeout_seconds: 5
      transactional_apply: true
      retries:
        max_attempts: 5
        backoff_seconds: 10
      on_error: route-to-dlq       # stop | skip | route-to-dlq
      dead_letter:
        enabled: true
        table_name: iidr_dead_letter
        schema_name: sampledb
      metrics_enabled: true
      log_level: info

# 全局配置
checkpoint_db: "checkpoints.db"
log_level: "INFO"                  # DEBUG, INFO, WARNING, ERROR
log_format: console                # console | json
notifications:
  console: true
  # webhook_url: "https://hooks.example.com/cdc"
'''


def save_config_template(path: str | Path) -> None:
    """
    保存配置模板到文件

    参数:
        path: 输出文件路径
    """
    config_path = Path(path)
    config_path.write_text(generate_config_template(), encoding="utf-8")
