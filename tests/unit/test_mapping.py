"""
表映射校验单元测试 (unittest)
"""

import unittest

from cdc_replicator.core.mapping import RowMapper, validate_mapping
from cdc_replicator.errors import SchemaMismatchError
from cdc_replicator.models.mapping import (
    ConflictResolution,
    TableMapping,
    TableSchema,
    TypeFamily,
    families_compatible,
    type_family,
)


def _schema(table="customers", primary_key=("id",), unique_keys=(), **column_types):
    columns = column_types or {"id": "INTEGER", "name": "TEXT", "email": "TEXT"}
    return TableSchema(
        table_name=table,
        primary_key=list(primary_key),
        unique_keys=[list(k) for k in unique_keys],
        columns=[
            {"name": name, "type": kind.rstrip("!"), "nullable": not kind.endswith("!")}
            for name, kind in columns.items()
        ],
    )


def _mapping(**kwargs):
    values = {"source": {"table": "customers"}}
    values.update(kwargs)
    return TableMapping.model_validate(values)


class TestTypeFamilies(unittest.TestCase):

    def test_type_family(self):
        self.assertEqual(type_family("varchar(100)"), TypeFamily.TEXT)
        self.assertEqual(type_family("BIGINT UNSIGNED"), TypeFamily.INTEGER)
        self.assertEqual(type_family("tinyint(1)"), TypeFamily.BOOLEAN)
        self.assertEqual(type_family("DATETIME"), TypeFamily.TEMPORAL)
        self.assertEqual(type_family(""), TypeFamily.OTHER)

    def test_compatibility(self):
        self.assertTrue(families_compatible(TypeFamily.INTEGER, TypeFamily.DECIMAL))
        self.assertTrue(families_compatible(TypeFamily.INTEGER, TypeFamily.TEXT))
        self.assertFalse(families_compatible(TypeFamily.TEXT, TypeFamily.INTEGER))
        self.assertFalse(families_compatible(TypeFamily.BINARY, TypeFamily.TEXT))
        self.assertTrue(families_compatible(TypeFamily.OTHER, TypeFamily.BINARY))


class TestValidateMapping(unittest.TestCase):
    """映射校验测试"""

    def test_identity_mapping(self):
        """测试未配置列映射时按源表全部列同名映射"""
        validated = validate_mapping(_mapping(), _schema(), _schema())

        self.assertEqual(validated.source_columns, ["id", "name", "email"])
        self.assertEqual(validated.target_columns, ["id", "name", "email"])
        self.assertEqual(validated.source_key, ("id",))
        self.assertEqual(validated.target_key, ("id",))
        self.assertEqual(validated.conflict_resolution, ConflictResolution.SOURCE_WINS)

    def test_renamed_columns(self):
        target = _schema(customer_id="INT", full_name="VARCHAR", mail="VARCHAR", primary_key=("customer_id",))
        mapping = _mapping(column_mappings=[
            {"source_column": "id", "target_column": "customer_id"},
            {"source_column": "name", "target_column": "full_name"},
            {"source_column": "email", "target_column": "mail"},
        ])
        validated = validate_mapping(mapping, _schema(), target)
        self.assertEqual(validated.target_key, ("customer_id",))

    def test_missing_target_column(self):
        mapping = _mapping(column_mappings=[
            {"source_column": "id"},
            {"source_column": "name", "target_column": "nickname"},
        ])
        with self.assertRaises(SchemaMismatchError) as cm:
            validate_mapping(mapping, _schema(), _schema())
        self.assertTrue(any("nickname" in p for p in cm.exception.problems))

    def test_incompatible_types(self):
        """测试文本列不能写入整数列"""
        target = _schema(id="INTEGER", name="INTEGER", email="TEXT")
        with self.assertRaises(SchemaMismatchError) as cm:
            validate_mapping(_mapping(), _schema(), target)
        self.assertEqual(cm.exception.kind, "schema_mismatch")

    def test_required_target_column_unmapped(self):
        """测试目标不可为空且无默认值的列必须被映射"""
        target = _schema(id="INTEGER", name="TEXT", email="TEXT", region="TEXT!")
        with self.assertRaises(SchemaMismatchError) as cm:
            validate_mapping(_mapping(), _schema(), target)
        self.assertTrue(any("region" in p for p in cm.exception.problems))

    def test_source_without_key(self):
        with self.assertRaises(SchemaMismatchError):
            validate_mapping(_mapping(), _schema(primary_key=()), _schema())

    def test_target_key_not_unique(self):
        """测试启用应用时源主键必须对应目标唯一约束"""
        target = _schema(primary_key=())
        with self.assertRaises(SchemaMismatchError):
            validate_mapping(_mapping(), _schema(), target)

    def test_target_key_not_unique_capture_only(self):
        """只捕获不应用的表允许目标没有唯一约束"""
        target = _schema(primary_key=())
        mapping = _mapping(options={"apply": False})
        validated = validate_mapping(mapping, _schema(), target)
        self.assertFalse(validated.apply_enabled)

    def test_unique_key_used_when_no_primary_key(self):
        source = _schema(primary_key=(), unique_keys=[("email",)])
        target = _schema(primary_key=(), unique_keys=[("email",)])
        validated = validate_mapping(_mapping(), source, target)
        self.assertEqual(validated.source_key, ("email",))

    def test_subscription_column_subset(self):
        """测试订阅列子集，行键列始终保留"""
        validated = validate_mapping(_mapping(), _schema(), _schema(), columns=["name"])
        self.assertEqual(validated.source_columns, ["id", "name"])

    def test_table_level_conflict_overrides(self):
        mapping = _mapping(options={"conflict_resolution": "target-wins"})
        validated = validate_mapping(
            mapping, _schema(), _schema(), default_conflict=ConflictResolution.SOURCE_WINS
        )
        self.assertEqual(validated.conflict_resolution, ConflictResolution.TARGET_WINS)


class TestRowMapper(unittest.TestCase):
    """行转换测试"""

    def setUp(self):
        target = _schema(customer_id="INT", full_name="VARCHAR", primary_key=("customer_id",))
        mapping = _mapping(column_mappings=[
            {"source_column": "id", "target_column": "customer_id"},
            {"source_column": "name", "target_column": "full_name"},
        ])
        self.mapper = RowMapper(validate_mapping(mapping, _schema(), target))

    def test_to_target(self):
        """未映射的源列被丢弃"""
        row = self.mapper.to_target({"id": 1, "name": "Alice", "email": "a@x.com"})
        self.assertEqual(row, {"customer_id": 1, "full_name": "Alice"})

    def test_to_target_none(self):
        self.assertIsNone(self.mapper.to_target(None))

    def test_keys(self):
        self.assertEqual(self.mapper.target_key({"id": 3, "name": "C"}), (3,))

    def test_project_target(self):
        projected = self.mapper.project_target({"customer_id": 1, "full_name": "A", "extra": 1})
        self.assertEqual(projected, {"customer_id": 1, "full_name": "A"})


if __name__ == "__main__":
    unittest.main()
