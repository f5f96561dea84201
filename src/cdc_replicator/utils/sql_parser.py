"""
SQL 解析工具 - 提取操作类型、表名和 WHERE 条件
"""

import re
from typing import Optional, Tuple

import sqlparse
from sqlparse.sql import Function, Identifier, Token, Where
from sqlparse.tokens import Keyword, Name


def parse_operation(sql: str) -> Optional[str]:
    """
    解析 SQL 语句的操作类型

    示例:
        >>> parse_operation("INSERT INTO users VALUES (1, 'test')")
        'INSERT'
        >>> parse_operation("SELECT * FROM users")
        None
    """
    sql_upper = sql.strip().upper()

    if sql_upper.startswith("INSERT"):
        return "INSERT"
    elif sql_upper.startswith("UPDATE"):
        return "UPDATE"
    elif sql_upper.startswith("DELETE"):
        return "DELETE"

    return None


def extract_table_name(sql: str) -> Optional[str]:
    """
    从 SQL 语句中提取表名

    支持:
        - INSERT [OR ...] INTO table_name ...
        - UPDATE table_name SET ...
        - DELETE FROM table_name ...

    示例:
        >>> extract_table_name("INSERT INTO users VALUES (1)")
        'users'
        >>> extract_table_name("UPDATE orders SET status='done'")
        'orders'
    """
    operation = parse_operation(sql)
    if operation is None:
        return None

    try:
        parsed = sqlparse.parse(sql)
        if not parsed:
            return None

        tokens = [t for t in parsed[0].tokens if not t.is_whitespace]

        if operation == "INSERT":
            name = _extract_from_insert(tokens)
        elif operation == "UPDATE":
            name = _extract_from_update(tokens)
        else:
            name = _extract_from_delete(tokens)
    except Exception:
        name = None

    # sqlparse 无法识别时回退到正则解析
    return name or _extract_with_regex(sql, operation)


def _strip_quotes(name: str) -> str:
    return name.strip().strip('"\'`[]')


def _extract_from_insert(tokens: list[Token]) -> Optional[str]:
    """从 INSERT 语句提取表名"""
    found_into = False
    for token in tokens:
        if not found_into:
            if token.value.upper() == "INTO":
                found_into = True
            continue

        # sqlparse 可能将 "users (id)" 解析为 Function 类型
        if isinstance(token, (Identifier, Function)):
            raw = str(token)
            if "(" in raw:
                raw = raw.split("(")[0]
            return _strip_quotes(raw)
        return _strip_quotes(str(token.value))
    return None


def _extract_from_update(tokens: list[Token]) -> Optional[str]:
    """从 UPDATE 语句提取表名"""
    found_update = False
    for token in tokens:
        if not found_update:
            if token.value.upper() == "UPDATE":
                found_update = True
            continue

        if isinstance(token, Identifier):
            name = token.get_real_name()
            return str(name) if name else None
        return _strip_quotes(str(token.value))
    return None


def _extract_from_delete(tokens: list[Token]) -> Optional[str]:
    """从 DELETE 语句提取表名"""
    found_from = False
    for token in tokens:
        if not found_from:
            if token.ttype is Keyword and token.value.upper() == "FROM":
                found_from = True
            continue

        if isinstance(token, Identifier):
            name = token.get_real_name()
            return str(name) if name else None
        elif token.ttype in (Name, Keyword):
            return _strip_quotes(str(token.value))
        break

    return None


def _extract_with_regex(sql: str, operation: str) -> Optional[str]:
    """使用正则表达式回退提取表名"""
    sql_clean = re.sub(r"/\*.*?\*/", "", sql, flags=re.DOTALL)

    if operation == "INSERT":
        match = re.search(
            r"INSERT\s+(?:OR\s+\w+\s+)?INTO\s+[`\"\']?(\w+)[`\"\']?",
            sql_clean,
            re.IGNORECASE
        )
    elif operation == "UPDATE":
        match = re.search(
            r"UPDATE\s+(?:OR\s+\w+\s+)?[`\"\']?(\w+)[`\"\']?",
            sql_clean,
            re.IGNORECASE
        )
    elif operation == "DELETE":
        match = re.search(
            r"DELETE\s+(?:FROM\s+)?[`\"\']?(\w+)[`\"\']?",
            sql_clean,
            re.IGNORECASE
        )
    else:
        return None

    return match.group(1) if match else None


def parse_sql(sql: str) -> Tuple[Optional[str], Optional[str]]:
    """
    解析 SQL 语句，返回 (operation, table_name)

    示例:
        >>> parse_sql("INSERT INTO users (name) VALUES ('test')")
        ('INSERT', 'users')
        >>> parse_sql("SELECT * FROM users")
        (None, None)
    """
    operation = parse_operation(sql)
    if operation is None:
        return None, None

    return operation, extract_table_name(sql)


def split_where(sql: str) -> Tuple[Optional[str], int]:
    """
    提取 WHERE 条件及其之前的占位符个数

    UPDATE 语句中 SET 子句的参数位于 WHERE 参数之前，
    用位置参数重新执行 WHERE 条件时需要跳过这些参数。

    返回:
        (WHERE 条件文本或 None, WHERE 之前的占位符个数)

    示例:
        >>> split_where("UPDATE users SET name = ? WHERE id = ?")
        ('id = ?', 1)
        >>> split_where("DELETE FROM users")
        (None, 0)
    """
    parsed = sqlparse.parse(sql)
    if not parsed:
        return None, 0

    preceding = 0
    for token in parsed[0].tokens:
        if isinstance(token, Where):
            clause = "".join(str(t) for t in token.tokens[1:])
            return clause.strip().rstrip(";").strip() or None, preceding
        preceding += sum(
            1 for t in token.flatten() if t.ttype in Name.Placeholder
        )
    return None, preceding
