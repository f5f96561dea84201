import sqlite3

from cdc_replicator import JournalingConnection

if __name__ == '__main__':
    # 使用变更日志连接包装器
    conn = JournalingConnection(sqlite3.connect("source.db"), enabled_tables=["customers"])

    with conn:
        conn.execute(
            "INSERT INTO customers (name, email) VALUES (?, ?)",
            ("客户101", "customer101@example.com")
        )
        conn.execute(
            "UPDATE customers SET email = ? WHERE name = ?",
            ("vip0@example.com", "客户0")
        )
    conn.close()

    print("✓ 变更已写入变更日志，consumer 将在下一次轮询时应用到 MySQL")
