from __future__ import annotations

import asyncio
from typing import Any, Iterator, List, Sequence

import pytest
from sqlalchemy import create_engine

from graphorm import Orm, Schema
from graphorm.executors import SqlAlchemyExecutor


# ---------------------------------------------------------------------------
# Entity classes (property mode)
# ---------------------------------------------------------------------------


class Entity:
    def __init__(self, **kwargs: Any) -> None:
        self.__dict__.update(kwargs)

    def __repr__(self) -> str:
        # relationship slots are left out so cyclic graphs stay printable
        scalars = {k: v for k, v in vars(self).items() if not isinstance(v, (Entity, list))}
        return f"{type(self).__name__}({scalars!r})"


class Object1(Entity):
    pass


class Object2(Entity):
    pass


class Object3(Entity):
    pass


class Object4(Entity):
    pass


class Object5(Entity):
    pass


class Object6(Entity):
    pass


class ManyObject(Entity):
    pass


def build_schema() -> Schema:
    schema = Schema()
    schema.add_table("table1", {
        "columns": {
            "id": {"property": "id", "primary_key": True, "generated": True},
            "column1": "property1",
            "column2": "property2",
            "table2_id": "object2Id",
        },
        "relationships": {
            "object2": {
                "kind": "many-to-one",
                "this_column": "table2_id",
                "other_table": "table2",
                "other_column": "id",
            },
            "many": {
                "kind": "one-to-many",
                "this_column": "id",
                "other_table": "table_many",
                "other_column": "table1_id",
            },
            "object4s": {
                "kind": "one-to-many",
                "this_column": "id",
                "other_table": "table4",
                "other_column": "table1_id",
            },
            "object2s": {
                "kind": "many-to-many",
                "this_column": "id",
                "other_table": "table2",
                "other_column": "id",
                "junction_table": "table1_table2",
                "junction_this_column": "table1_id",
                "junction_other_column": "table2_id",
            },
        },
        "new_instance": Object1,
    })
    schema.add_table("table2", {
        "columns": {"id": "id", "column1": "property1"},
        "primary_key": "id",
        "id_generated": True,
        "new_instance": Object2,
    })
    schema.add_table("table3", {
        "columns": {"id": "id", "column1": "property1", "table3_id": "object3Id"},
        "primary_key": "id",
        "id_generated": True,
        "relationships": {
            "object3": {
                "kind": "one-to-one",
                "this_column": "table3_id",
                "other_table": "table3",
                "other_column": "id",
            },
        },
        "new_instance": Object3,
    })
    schema.add_table("table4", {
        "columns": {"table1_id": "table1Id", "column1": "property1", "column2": "property2"},
        "primary_key": ["table1_id", "column1"],
        "relationships": {
            "object1": {
                "kind": "many-to-one",
                "this_column": "table1_id",
                "other_table": "table1",
                "other_column": "id",
            },
        },
        "new_instance": Object4,
    })
    schema.add_table("table5", {
        "columns": {"id": "id", "column1": "property1", "table6_id": "object6Id"},
        "primary_key": "id",
        "id_generated": True,
        "relationships": {
            "object6": {
                "kind": "one-to-one",
                "this_column": "table6_id",
                "other_table": "table6",
                "other_column": "id",
                "other_relationship": "object5",
            },
        },
        "new_instance": Object5,
    })
    schema.add_table("table6", {
        "columns": {"id": "id", "column1": "property1", "table5_id": "object5Id"},
        "primary_key": "id",
        "id_generated": True,
        "relationships": {
            "object5": {
                "kind": "one-to-one",
                "this_column": "table5_id",
                "other_table": "table5",
                "other_column": "id",
                "other_relationship": "object6",
            },
        },
        "new_instance": Object6,
    })
    schema.add_table("table_many", {
        "columns": {"id": "id", "column1": "property1", "table1_id": "object1Id"},
        "primary_key": "id",
        "id_generated": True,
        "relationships": {
            "object1": {
                "kind": "many-to-one",
                "this_column": "table1_id",
                "other_table": "table1",
                "other_column": "id",
            },
        },
        "new_instance": ManyObject,
    })
    schema.check()
    return schema


def long_names(length: int) -> tuple[str, str]:
    """Two distinct table names of exactly `length` characters sharing a long prefix."""
    prefix = "very_long_table_name_"
    return (
        (prefix + "parent_").ljust(length, "p"),
        (prefix + "child_").ljust(length, "c"),
    )


def build_long_schema(length: int) -> Schema:
    parent, child = long_names(length)
    schema = Schema()
    schema.add_table(parent, {
        "columns": {"id": "id", "label": "label", "child_reference_id": "childReferenceId"},
        "primary_key": "id",
        "id_generated": True,
        "relationships": {
            "child_reference": {
                "kind": "many-to-one",
                "this_column": "child_reference_id",
                "other_table": child,
                "other_column": "id",
            },
            "children": {
                "kind": "one-to-many",
                "this_column": "id",
                "other_table": child,
                "other_column": "parent_reference_id",
            },
        },
    })
    schema.add_table(child, {
        "columns": {"id": "id", "label": "label", "parent_reference_id": "parentReferenceId"},
        "primary_key": "id",
        "id_generated": True,
    })
    schema.check()
    return schema


DDL = [
    "CREATE TABLE table1 (id INTEGER PRIMARY KEY AUTOINCREMENT, column1 TEXT, column2 INTEGER, table2_id INTEGER)",
    "CREATE TABLE table2 (id INTEGER PRIMARY KEY AUTOINCREMENT, column1 TEXT)",
    "CREATE TABLE table3 (id INTEGER PRIMARY KEY AUTOINCREMENT, column1 TEXT, table3_id INTEGER)",
    "CREATE TABLE table4 (table1_id INTEGER NOT NULL, column1 TEXT NOT NULL, column2 TEXT, "
    "PRIMARY KEY (table1_id, column1))",
    "CREATE TABLE table5 (id INTEGER PRIMARY KEY AUTOINCREMENT, column1 TEXT, table6_id INTEGER)",
    "CREATE TABLE table6 (id INTEGER PRIMARY KEY AUTOINCREMENT, column1 TEXT, table5_id INTEGER)",
    "CREATE TABLE table_many (id INTEGER PRIMARY KEY AUTOINCREMENT, column1 TEXT, table1_id INTEGER)",
    "CREATE TABLE table1_table2 (table1_id INTEGER NOT NULL, table2_id INTEGER NOT NULL, "
    "PRIMARY KEY (table1_id, table2_id))",
]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingExecutor:
    """Records every statement and replays canned results in order."""

    def __init__(self, responses: Sequence[Any] = ()) -> None:
        self.calls: List[tuple[str, list]] = []
        self.responses = list(responses)

    def execute(self, sql: str, params: Sequence[Any]) -> Any:
        self.calls.append((sql, list(params)))
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return []


class CountingExecutor:
    """Wraps a real executor and keeps the executed SQL."""

    def __init__(self, inner: SqlAlchemyExecutor) -> None:
        self.inner = inner
        self.statements: List[str] = []

    def execute(self, sql: str, params: Sequence[Any]) -> Any:
        self.statements.append(sql)
        return self.inner.execute(sql, params)

    def mutations(self) -> List[str]:
        return [s for s in self.statements if not s.lstrip().upper().startswith("SELECT")]


def run(coro: Any) -> Any:
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def schema() -> Schema:
    return build_schema()


@pytest.fixture
def connection() -> Iterator[Any]:
    engine = create_engine("sqlite://")
    with engine.connect() as conn:
        for ddl in DDL:
            conn.exec_driver_sql(ddl)
        yield conn
    engine.dispose()


@pytest.fixture
def executor(connection: Any) -> CountingExecutor:
    return CountingExecutor(SqlAlchemyExecutor(connection))


@pytest.fixture
def orm(schema: Schema) -> Orm:
    return Orm(schema, "sqlite")
