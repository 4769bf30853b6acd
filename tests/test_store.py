from __future__ import annotations

import pytest

from conftest import (
    ManyObject,
    Object1,
    Object2,
    Object3,
    Object4,
    Object5,
    Object6,
    RecordingExecutor,
    run,
)
from graphorm import DriverError, InvariantError, Orm, QueryResult


def fetch(connection, sql: str) -> list[tuple]:
    return [tuple(row) for row in connection.exec_driver_sql(sql).fetchall()]


# ---------------------------------------------------------------------------
# Insert / update
# ---------------------------------------------------------------------------


def test_insert_records_create_with_full_row(orm, executor) -> None:
    obj = Object1(property1="a", property2=1)

    changes = run(orm.store(executor, Object1, obj))

    assert len(changes) == 1
    change = changes[0]
    assert change.entity == "Object1"
    assert change.operation == "create"
    assert dict(change.row) == {"id": 1, "property1": "a", "property2": 1, "object2Id": None}
    assert change.changed_fields is None
    assert obj.id == 1
    # columns the database filled in are copied back onto the node
    assert obj.object2Id is None


def test_row_mode_insert(orm, executor) -> None:
    row = {"column1": "a"}

    changes = run(orm.store(executor, "table1", row, row_mode=True))

    assert [(c.entity, c.operation) for c in changes] == [("table1", "insert")]
    assert dict(changes[0].row) == {"id": 1, "column1": "a", "column2": None, "table2_id": None}
    assert row["id"] == 1


def test_empty_node_uses_default_values_insert(orm, executor) -> None:
    obj = Object2()

    changes = run(orm.store(executor, Object2, obj))

    assert executor.mutations() == ["INSERT INTO table2 DEFAULT VALUES"]
    assert dict(changes[0].row) == {"id": 1, "property1": None}


def test_update_records_only_changed_fields(orm, executor, connection) -> None:
    obj = Object1(property1="a", property2=1)
    run(orm.store(executor, Object1, obj))

    obj.property2 = 5
    changes = run(orm.store(executor, Object1, obj))

    assert len(changes) == 1
    assert changes[0].operation == "update"
    assert dict(changes[0].row) == {"id": 1, "property2": 5}
    assert changes[0].changed_fields == ("property2",)
    assert changes[0].to_dict()["changedFields"] == ["property2"]
    assert fetch(connection, "SELECT column1, column2 FROM table1") == [("a", 5)]


def test_unchanged_node_issues_no_writes(orm, executor) -> None:
    obj = Object1(property1="a", property2=1)
    run(orm.store(executor, Object1, obj))

    executor.statements.clear()
    assert run(orm.store(executor, Object1, obj)) == []
    assert executor.mutations() == []


def test_update_of_generated_key_without_row_fails(orm, executor) -> None:
    with pytest.raises(InvariantError):
        run(orm.store(executor, Object1, Object1(id=99, property1="ghost")))


def test_composite_key_must_be_set(orm, executor) -> None:
    with pytest.raises(InvariantError, match="missing primary key"):
        run(orm.store(executor, Object4, Object4(property2="x")))
    assert executor.statements == []


def test_composite_key_insert_then_update(orm, executor) -> None:
    first = run(orm.store(executor, Object4, Object4(table1Id=1, property1="k", property2="v")))
    second = run(orm.store(executor, Object4, Object4(table1Id=1, property1="k", property2="w")))

    assert [c.operation for c in first] == ["create"]
    assert [c.operation for c in second] == ["update"]
    assert dict(second[0].row) == {"table1Id": 1, "property1": "k", "property2": "w"}
    assert second[0].changed_fields == ("property2",)


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------


def test_many_to_one_target_is_stored_first(orm, executor, connection) -> None:
    target = Object2(property1="b")
    obj = Object1(property1="a", object2=target)

    changes = run(orm.store(executor, Object1, obj))

    assert [c.entity for c in changes] == ["Object2", "Object1"]
    assert obj.object2Id == target.id
    assert changes[1].row["object2Id"] == target.id
    assert fetch(connection, "SELECT table2_id FROM table1") == [(target.id,)]


def test_shared_target_is_stored_once(orm, executor) -> None:
    target = Object2(property1="shared")
    parent = Object1(property1="p", object2=target, object2s=[target])

    changes = run(orm.store(executor, Object1, parent))

    assert [c.entity for c in changes] == ["Object2", "Object1", "table1_table2"]


def test_none_relationship_leaves_foreign_key_alone(orm, executor, connection) -> None:
    obj = Object1(property1="a", object2=Object2(property1="b"))
    run(orm.store(executor, Object1, obj))

    obj.object2 = None
    executor.statements.clear()
    assert run(orm.store(executor, Object1, obj)) == []
    assert fetch(connection, "SELECT table2_id FROM table1") == [(1,)]


def test_one_to_many_children_get_parent_key(orm, executor) -> None:
    children = [ManyObject(property1="x"), ManyObject(property1="y")]
    parent = Object1(property1="p", many=children)

    changes = run(orm.store(executor, Object1, parent))

    assert [c.entity for c in changes] == ["Object1", "ManyObject", "ManyObject"]
    assert all(child.object1Id == parent.id for child in children)
    assert all(c.row["object1Id"] == parent.id for c in changes[1:])


def test_child_moved_to_another_parent(orm, executor) -> None:
    child = ManyObject(property1="x")
    first = Object1(property1="first", many=[child])
    run(orm.store(executor, Object1, first))

    second = Object1(property1="second", many=[child])
    changes = run(orm.store(executor, Object1, second))

    assert [(c.entity, c.operation) for c in changes] == [("Object1", "create"), ("ManyObject", "update")]
    assert changes[1].changed_fields == ("object1Id",)
    assert child.object1Id == second.id


def test_many_to_many_link_is_recorded_once(orm, executor, connection) -> None:
    other = Object2(property1="b")
    obj = Object1(property1="a", object2s=[other])

    changes = run(orm.store(executor, Object1, obj))

    assert [(c.entity, c.operation) for c in changes] == [
        ("Object1", "create"),
        ("Object2", "create"),
        ("table1_table2", "create"),
    ]
    assert dict(changes[2].row) == {"table1_id": obj.id, "table2_id": other.id}

    assert run(orm.store(executor, Object1, obj)) == []
    assert fetch(connection, "SELECT table1_id, table2_id FROM table1_table2") == [(obj.id, other.id)]


def test_list_relationship_requires_a_list(orm, executor) -> None:
    with pytest.raises(InvariantError):
        run(orm.store(executor, Object1, Object1(property1="a", many=ManyObject(property1="x"))))


# ---------------------------------------------------------------------------
# Cycles
# ---------------------------------------------------------------------------


def test_self_reference_is_back_patched(orm, executor, connection) -> None:
    node = Object3(property1="self")
    node.object3 = node

    changes = run(orm.store(executor, Object3, node))

    assert [c.operation for c in changes] == ["create", "update"]
    assert dict(changes[1].row) == {"id": node.id, "object3Id": node.id}
    assert changes[1].changed_fields == ("object3Id",)
    mutations = executor.mutations()
    assert len(mutations) == 2
    assert mutations[0].startswith("INSERT")
    assert mutations[1].startswith("UPDATE")
    assert fetch(connection, "SELECT id, table3_id FROM table3") == [(node.id, node.id)]


def test_one_to_one_pair_references_each_other(orm, executor, connection) -> None:
    five = Object5(property1="five")
    six = Object6(property1="six")
    five.object6 = six
    six.object5 = five

    changes = run(orm.store(executor, Object5, five))

    assert [(c.entity, c.operation) for c in changes] == [
        ("Object6", "create"),
        ("Object5", "create"),
        ("Object6", "update"),
    ]
    assert changes[1].row["object6Id"] == six.id
    assert dict(changes[2].row) == {"id": six.id, "object5Id": five.id}
    assert fetch(connection, "SELECT table6_id FROM table5") == [(six.id,)]
    assert fetch(connection, "SELECT table5_id FROM table6") == [(five.id,)]


def test_one_to_one_reference_from_one_side_sets_partner_key(orm, executor, connection) -> None:
    five = Object5(property1="five", object6=Object6(property1="six"))

    run(orm.store(executor, Object5, five))

    six = five.object6
    assert six.object5Id == five.id
    assert fetch(connection, "SELECT table5_id FROM table6") == [(five.id,)]


# ---------------------------------------------------------------------------
# Executor interaction
# ---------------------------------------------------------------------------


def test_postgres_reads_generated_key_via_returning(schema) -> None:
    executor = RecordingExecutor([[{"id": 7}], [{"id": 7, "column1": "x"}]])
    obj = Object2(property1="x")

    changes = run(Orm(schema, "postgres").store(executor, Object2, obj))

    sql, params = executor.calls[0]
    assert sql.startswith("INSERT INTO table2 (column1) VALUES ($1) RETURNING")
    assert params == ["x"]
    assert obj.id == 7
    assert dict(changes[0].row) == {"id": 7, "property1": "x"}


def test_mysql_reads_generated_key_from_insert_id(schema) -> None:
    executor = RecordingExecutor([
        QueryResult(affected_rows=1, insert_id=3),
        [{"id": 3, "column1": "x"}],
    ])
    obj = Object2(property1="x")

    run(Orm(schema, "mysql").store(executor, Object2, obj))

    assert "RETURNING" not in executor.calls[0][0]
    assert executor.calls[1][1] == [3]
    assert obj.id == 3


def test_missing_generated_key_is_a_driver_error(schema) -> None:
    executor = RecordingExecutor([QueryResult(affected_rows=1)])
    with pytest.raises(DriverError, match="no generated key"):
        run(Orm(schema, "mysql").store(executor, Object2, Object2(property1="x")))


def test_driver_failure_keeps_earlier_writes(schema) -> None:
    executor = RecordingExecutor([
        QueryResult(affected_rows=1, insert_id=7),
        [{"id": 7, "column1": "b"}],
        RuntimeError("deadlock"),
    ])
    target = Object2(property1="b")

    with pytest.raises(DriverError) as info:
        run(Orm(schema, "mysql").store(executor, Object1, Object1(property1="a", object2=target)))

    assert info.value.table == "table1"
    assert info.value.operation == "insert"
    assert target.id == 7
    assert len(executor.calls) == 3


def test_unexpected_affected_rows_is_an_invariant_error(schema) -> None:
    executor = RecordingExecutor([QueryResult(affected_rows=0, insert_id=1)])
    with pytest.raises(InvariantError):
        run(Orm(schema, "mysql").store(executor, Object2, Object2(property1="x")))


def test_update_reads_back_database_values(schema) -> None:
    executor = RecordingExecutor([
        [{"id": 3, "column1": "old"}],
        QueryResult(affected_rows=1),
        [{"id": 3, "column1": "NEW"}],
    ])
    obj = Object2(id=3, property1="new")

    changes = run(Orm(schema, "mysql").store(executor, Object2, obj))

    assert dict(changes[0].row) == {"id": 3, "property1": "new"}
    assert executor.calls[1][0].startswith("UPDATE table2 SET column1=?")
    # a trigger rewrote the value
    assert obj.property1 == "NEW"
    assert len(executor.calls) == 3
