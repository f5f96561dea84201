"""
配置加载单元测试 (unittest)
"""

import os
import unittest
from pathlib import Path
from unittest.mock import patch

from conftest import create_temp_dir, create_test_config_yaml, remove_temp_dir

from cdc_replicator.config import (
    ConfigError,
    generate_config_template,
    load_config,
    load_config_from_string,
    merge_documents,
    save_config_template,
)
from cdc_replicator.models.datastore import DatastoreType
from cdc_replicator.models.sync_config import OnError


class TestLoadConfig(unittest.TestCase):
    """配置文件加载测试"""

    def setUp(self):
        self.temp_dir = create_temp_dir()

    def tearDown(self):
        remove_temp_dir(self.temp_dir)

    def _write(self, name: str, content: str) -> Path:
        path = self.temp_dir / name
        path.write_text(content, encoding="utf-8")
        return path

    def test_load_single_file(self):
        path = self._write("config.yaml", create_test_config_yaml(
            self.temp_dir / "src.db", self.temp_dir / "dst.db", self.temp_dir / "cp.db"
        ))
        config = load_config(path)

        self.assertEqual([d.name for d in config.datastores], ["src", "dst"])
        self.assertEqual(config.datastores[0].type, DatastoreType.SQLITE)
        self.assertEqual(config.subscriptions[0].channel, "customers_channel")

    def test_load_directory_merges_files(self):
        """测试目录中的多个文件按文件名顺序合并"""
        self._write("01-datastores.yaml", f"""
datastores:
  - name: src
    type: sqlite
    db_path: "{self.temp_dir / 'src.db'}"
""")
        self._write("02-datastores.yml", f"""
datastores:
  - name: dst
    type: sqlite
    db_path: "{self.temp_dir / 'dst.db'}"
    cdc_enabled: false
""")
        self._write("03-channels.yaml", """
channels:
  - name: customers_channel
    source_datastore: src
    target_datastore: dst
    tables:
      - source: {table: customers}
""")
        self._write("notes.txt", "ignored")

        config = load_config(self.temp_dir)
        self.assertEqual([d.name for d in config.datastores], ["src", "dst"])
        self.assertEqual(len(config.channels), 1)

    def test_missing_file(self):
        with self.assertRaises(ConfigError) as cm:
            load_config(self.temp_dir / "missing.yaml")
        self.assertIn("不存在", str(cm.exception))

    def test_invalid_yaml(self):
        path = self._write("bad.yaml", "datastores: [unclosed")
        with self.assertRaises(ConfigError):
            load_config(path)

    def test_validation_error(self):
        """测试引用未定义的数据存储"""
        path = self._write("config.yaml", """
datastores:
  - {name: src, type: sqlite, db_path: a.db}
channels:
  - name: c
    source_datastore: src
    target_datastore: nowhere
    tables:
      - source: {table: customers}
""")
        with self.assertRaises(ConfigError) as cm:
            load_config(path)
        self.assertIn("配置验证失败", str(cm.exception))


class TestEnvironmentVariables(unittest.TestCase):
    """环境变量展开测试"""

    def test_env_var_with_default(self):
        config = load_config_from_string("""
datastores:
  - name: src
    type: sqlite
    db_path: "${CDC_TEST_UNSET_PATH:-/tmp/default.db}"
""")
        self.assertEqual(config.datastores[0].connection.db_path, "/tmp/default.db")

    def test_env_var_set(self):
        with patch.dict(os.environ, {"CDC_TEST_DB_PATH": "/data/source.db"}):
            config = load_config_from_string("""
datastores:
  - {name: src, type: sqlite, db_path: "${CDC_TEST_DB_PATH}"}
""")
        self.assertEqual(config.datastores[0].connection.db_path, "/data/source.db")

    def test_env_var_missing(self):
        with self.assertRaises(ConfigError) as cm:
            load_config_from_string("""
datastores:
  - {name: src, type: sqlite, db_path: "${CDC_TEST_SURELY_MISSING}"}
""")
        self.assertIn("CDC_TEST_SURELY_MISSING", str(cm.exception))


class TestMergeDocuments(unittest.TestCase):

    def test_lists_concatenated(self):
        merged = merge_documents([{"channels": [1]}, {"channels": [2]}])
        self.assertEqual(merged["channels"], [1, 2])

    def test_scalar_conflict(self):
        """测试标量在多个文件中取值冲突"""
        with self.assertRaises(ConfigError):
            merge_documents([{"log_level": "INFO"}, {"log_level": "DEBUG"}])

    def test_same_scalar_allowed(self):
        merged = merge_documents([{"log_level": "INFO"}, {"log_level": "INFO"}])
        self.assertEqual(merged["log_level"], "INFO")


class TestConfigTemplate(unittest.TestCase):
    """配置模板测试"""

    def test_template_is_valid(self):
        """测试生成的模板可以直接通过验证"""
        config = load_config_from_string(generate_config_template())

        self.assertEqual(config.get_datastore("iidr-target").type, DatastoreType.MYSQL)
        subscription = config.get_subscription("customers_subscription")
        self.assertEqual(subscription.apply_settings.on_error, OnError.ROUTE_TO_DLQ)
        self.assertEqual(subscription.apply_settings.dead_letter.ref.qualified, "sampledb.iidr_dead_letter")
        self.assertEqual(len(config.table_definitions), 1)

    def test_save_template(self):
        temp_dir = create_temp_dir()
        try:
            path = temp_dir / "config.yaml"
            save_config_template(path)
            self.assertTrue(path.exists())
            self.assertEqual(len(load_config(path).subscriptions), 1)
        finally:
            remove_temp_dir(temp_dir)


if __name__ == "__main__":
    unittest.main()
