from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, MutableMapping
from typing import Any, Optional

from .errors import InvariantError
from .schema import Column, Table


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class EntityAccessor(ABC):
    """
    Uniform view on graph nodes.

    Load and Store never touch nodes directly; they go through an accessor
    that knows whether fields are keyed by column or by property name.
    Relationship slots are always keyed by relationship name.
    """

    row_mode: bool = False
    create_operation: str = "create"

    @abstractmethod
    def key(self, column: Column) -> str:
        ...

    @abstractmethod
    def column_for_key(self, table: Table, key: str) -> Optional[Column]:
        ...

    @abstractmethod
    def get(self, node: Any, key: str) -> Any:
        """Return the value stored under `key`, or MISSING."""

    @abstractmethod
    def set(self, node: Any, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def new_entity(self, table: Table) -> Any:
        ...

    @abstractmethod
    def entity_name(self, table: Table) -> str:
        ...

    def get_column(self, node: Any, column: Column) -> Any:
        return self.get(node, self.key(column))

    def set_column(self, node: Any, column: Column, value: Any) -> None:
        self.set(node, self.key(column), value)

    def snapshot(self, table: Table, row: Mapping[str, Any]) -> dict[str, Any]:
        """Translate a column-keyed row into this accessor's keys."""
        return {self.key(table.columns[name]): value for name, value in row.items() if name in table.columns}

    def primary_key(self, table: Table, node: Any) -> Optional[dict[str, Any]]:
        """Column-keyed primary key values, or None if any part is unset."""
        if not table.primary_key:
            return None
        values: dict[str, Any] = {}
        for column in table.primary_key:
            value = self.get_column(node, column)
            if value is MISSING or value is None:
                return None
            values[column.name] = value
        return values


class RowAccessor(EntityAccessor):
    """Column-keyed dictionaries."""

    row_mode = True
    create_operation = "insert"

    def key(self, column: Column) -> str:
        return column.name

    def column_for_key(self, table: Table, key: str) -> Optional[Column]:
        return table.columns.get(key)

    def get(self, node: Any, key: str) -> Any:
        if not isinstance(node, Mapping):
            raise InvariantError(f"row-mode node must be a mapping, got {type(node).__name__}")
        return node.get(key, MISSING)

    def set(self, node: Any, key: str, value: Any) -> None:
        node[key] = value

    def new_entity(self, table: Table) -> Any:
        return {}

    def entity_name(self, table: Table) -> str:
        return table.name


class PropertyAccessor(EntityAccessor):
    """Property-keyed objects; plain mappings are accessed by item."""

    def key(self, column: Column) -> str:
        return column.property

    def column_for_key(self, table: Table, key: str) -> Optional[Column]:
        return table.column_for_property(key)

    def get(self, node: Any, key: str) -> Any:
        if isinstance(node, Mapping):
            return node.get(key, MISSING)
        return getattr(node, key, MISSING)

    def set(self, node: Any, key: str, value: Any) -> None:
        if isinstance(node, MutableMapping):
            node[key] = value
        else:
            setattr(node, key, value)

    def new_entity(self, table: Table) -> Any:
        if table.new_instance is None:
            return {}
        return table.new_instance()

    def entity_name(self, table: Table) -> str:
        return table.entity_name


ROW_ACCESSOR = RowAccessor()
PROPERTY_ACCESSOR = PropertyAccessor()


def get_accessor(row_mode: bool) -> EntityAccessor:
    return ROW_ACCESSOR if row_mode else PROPERTY_ACCESSOR
