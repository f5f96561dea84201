import asyncio
import sqlite3

from cdc_replicator import JournalingConnection, ReplicationService, load_config


def create_sqlite_data():
    conn = sqlite3.connect("source.db")
    conn.execute("DROP TABLE IF EXISTS customers")
    conn.execute("""
                 CREATE TABLE customers
                 (
                     id    INTEGER PRIMARY KEY AUTOINCREMENT,
                     name  TEXT NOT NULL,
                     email TEXT UNIQUE
                 )
                 """)

    # 通过日志连接写入，变更同时记入变更日志
    journal = JournalingConnection(conn, enabled_tables=["customers"])
    for i in range(100):
        journal.execute(
            "INSERT INTO customers (name, email) VALUES (?, ?)",
            (f"客户{i}", f"customer{i}@example.com")
        )
    journal.commit()
    journal.close()
    print("✓ 测试数据库创建完成: source.db (100 条客户数据)")


async def main():
    # 准备测试数据
    create_sqlite_data()

    # 加载配置
    config = load_config("replication.yaml")
    service = ReplicationService(config)

    try:
        # 初始快照后持续复制，Ctrl+C 停止
        status = await service.run_subscription("customers_subscription")
        print(f"状态: {status.state.value}")
        print(f"断点: {status.last_checkpoint}")
        print(f"已应用: {status.metrics.events_applied}")
    finally:
        await service.close()


if __name__ == '__main__':
    asyncio.run(main())
