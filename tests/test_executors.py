from __future__ import annotations

from conftest import build_schema
from graphorm.config import DatabaseSettings
from graphorm.executors import SqlAlchemyExecutor, create_sa_engine


def test_executor_reports_rows_counts_and_insert_ids() -> None:
    engine = create_sa_engine(DatabaseSettings(url="sqlite://"))
    with engine.connect() as conn:
        executor = SqlAlchemyExecutor(conn)
        executor.execute("CREATE TABLE t (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT)", [])

        inserted = executor.execute("INSERT INTO t (name) VALUES (?)", ["a"])
        assert inserted.insert_id == 1
        assert inserted.affected_rows == 1

        selected = executor.execute("SELECT id, name FROM t WHERE name = ?", ["a"])
        assert selected.rows == [{"id": 1, "name": "a"}]
        assert selected.insert_id is None

        updated = executor.execute("UPDATE t SET name = ?", ["b"])
        assert updated.affected_rows == 1
        assert executor.connection is conn
    engine.dispose()


def test_junction_tables_need_not_be_registered() -> None:
    schema = build_schema()
    assert schema.has_table("table1")
    assert not schema.has_table("table1_table2")
