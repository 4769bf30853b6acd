from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from functools import cached_property
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Union

import sqlalchemy as sa
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import InvariantError, UnknownTableError

logger = logging.getLogger(__name__)


class RelationshipKind(str, enum.Enum):
    MANY_TO_ONE = "many-to-one"
    ONE_TO_ONE = "one-to-one"
    ONE_TO_MANY = "one-to-many"
    MANY_TO_MANY = "many-to-many"

    @property
    def to_many(self) -> bool:
        return self in (RelationshipKind.ONE_TO_MANY, RelationshipKind.MANY_TO_MANY)


# ---------------------------------------------------------------------------
# Definition models (input validation)
# ---------------------------------------------------------------------------


class ColumnSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    property: str
    primary_key: bool = False
    generated: bool = False


class RelationshipSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: RelationshipKind
    this_column: str
    other_table: str
    other_column: str
    other_relationship: Optional[str] = Field(
        default=None,
        description="Name of the reverse one-to-one relationship on the other table.",
    )
    junction_table: Optional[str] = None
    junction_this_column: Optional[str] = None
    junction_other_column: Optional[str] = None


class TableSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    columns: Dict[str, Union[str, ColumnSpec]]
    primary_key: Union[str, list[str], None] = None
    id_generated: bool = False
    relationships: Dict[str, RelationshipSpec] = Field(default_factory=dict)
    new_instance: Optional[Callable[[], Any]] = None


# ---------------------------------------------------------------------------
# Runtime model
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Column:
    name: str
    property: str
    primary_key: bool = False
    generated: bool = False


class Relationship:
    """
    Named link from one table to another.

    `other_table` is resolved lazily through the schema so that tables may
    reference each other before both are registered.
    """

    def __init__(self, schema: "Schema", table_name: str, name: str, spec: RelationshipSpec) -> None:
        self._schema = schema
        self.table_name = table_name
        self.name = name
        self.kind = spec.kind
        self.this_column = spec.this_column
        self.other_table_name = spec.other_table
        self.other_column = spec.other_column
        self.other_relationship_name = spec.other_relationship
        self.junction_table = spec.junction_table
        self.junction_this_column = spec.junction_this_column
        self.junction_other_column = spec.junction_other_column

    def __repr__(self) -> str:
        return (
            f"Relationship({self.table_name}.{self.name}: {self.kind.value} "
            f"-> {self.other_table_name}.{self.other_column})"
        )

    @property
    def table(self) -> "Table":
        return self._schema.get_table(self.table_name)

    @property
    def other_table(self) -> "Table":
        return self._schema.get_table(self.other_table_name)

    @property
    def holds_foreign_key(self) -> bool:
        """
        True when this side stores the foreign key in `this_column`.

        Many-to-one always does; a one-to-one does when it points at the
        other table's primary key.
        """
        if self.kind is RelationshipKind.MANY_TO_ONE:
            return True
        if self.kind is RelationshipKind.ONE_TO_ONE:
            other = self.other_table.columns.get(self.other_column)
            return other is not None and other.primary_key
        return False

    @property
    def other_relationship(self) -> Optional["Relationship"]:
        if self.other_relationship_name is None:
            return None
        other = self.other_table
        try:
            return other.relationships[self.other_relationship_name]
        except KeyError:
            raise InvariantError(
                f"{self!r} names unknown reverse relationship "
                f"{self.other_table_name}.{self.other_relationship_name}"
            ) from None

    @cached_property
    def junction_sa(self) -> sa.TableClause:
        if self.kind is not RelationshipKind.MANY_TO_MANY:
            raise InvariantError(f"{self!r} has no junction table")
        return sa.table(
            self.junction_table,
            sa.column(self.junction_this_column),
            sa.column(self.junction_other_column),
        )

    def check(self) -> None:
        """Resolve the other side and verify the referenced columns exist."""
        other = self.other_table
        if self.other_column not in other.columns:
            raise InvariantError(
                f"{self!r} references unknown column {other.name}.{self.other_column}"
            )
        if self.other_relationship_name is not None:
            reverse = self.other_relationship
            if reverse.kind is not RelationshipKind.ONE_TO_ONE or self.kind is not RelationshipKind.ONE_TO_ONE:
                raise InvariantError(
                    f"{self!r}: only one-to-one relationships may name a reverse relationship"
                )


class Table:
    def __init__(self, schema: "Schema", name: str, spec: TableSpec) -> None:
        self.name = name
        self.new_instance = spec.new_instance

        pk_names: set[str] = set()
        if isinstance(spec.primary_key, str):
            pk_names.add(spec.primary_key)
        elif spec.primary_key:
            pk_names.update(spec.primary_key)

        columns: Dict[str, Column] = {}
        for column_name, value in spec.columns.items():
            if isinstance(value, str):
                value = ColumnSpec(property=value)
            primary_key = value.primary_key or column_name in pk_names
            generated = value.generated or (spec.id_generated and primary_key)
            columns[column_name] = Column(column_name, value.property, primary_key, generated)

        unknown_pk = pk_names - columns.keys()
        if unknown_pk:
            raise InvariantError(f"table {name!r}: primary key column(s) {sorted(unknown_pk)} not in columns")

        by_property: Dict[str, Column] = {}
        for column in columns.values():
            if column.property in by_property:
                raise InvariantError(
                    f"table {name!r}: property {column.property!r} is mapped by more than one column"
                )
            by_property[column.property] = column

        self.columns: Mapping[str, Column] = MappingProxyType(columns)
        self.properties: Mapping[str, Column] = MappingProxyType(by_property)
        self.primary_key: tuple[Column, ...] = tuple(c for c in columns.values() if c.primary_key)

        generated_columns = [c for c in columns.values() if c.generated]
        if generated_columns and (len(self.primary_key) != 1 or not generated_columns[0].primary_key):
            raise InvariantError(
                f"table {name!r}: only a single-column primary key can be database-generated"
            )
        self.generated: Optional[Column] = generated_columns[0] if generated_columns else None

        relationships: Dict[str, Relationship] = {}
        for rel_name, rel_spec in spec.relationships.items():
            if rel_name in columns or rel_name in by_property:
                raise InvariantError(f"table {name!r}: relationship {rel_name!r} shadows a column")
            if rel_spec.this_column not in columns:
                raise InvariantError(
                    f"table {name!r}: relationship {rel_name!r} uses unknown column {rel_spec.this_column!r}"
                )
            if rel_spec.kind is RelationshipKind.MANY_TO_MANY and not (
                rel_spec.junction_table and rel_spec.junction_this_column and rel_spec.junction_other_column
            ):
                raise InvariantError(
                    f"table {name!r}: many-to-many relationship {rel_name!r} needs a junction table and both junction columns"
                )
            relationships[rel_name] = Relationship(schema, name, rel_name, rel_spec)
        self.relationships: Mapping[str, Relationship] = MappingProxyType(relationships)

    def __repr__(self) -> str:
        return f"Table({self.name!r})"

    @property
    def entity_name(self) -> str:
        """Class name of produced instances, or the table name for dict/absent factories."""
        factory = self.new_instance
        if isinstance(factory, type) and not issubclass(factory, dict):
            return factory.__name__
        return self.name

    @cached_property
    def sa_table(self) -> sa.TableClause:
        return sa.table(self.name, *(sa.column(name) for name in self.columns))

    def column_for_property(self, prop: str) -> Optional[Column]:
        return self.properties.get(prop)


class Schema:
    """
    Registry of table definitions.

    Tables are registered once with `add_table` and then treated as read-only
    configuration shared by every engine call.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Table] = {}
        self._by_type: Dict[type, Table] = {}

    def add_table(self, name: str, definition: Mapping[str, Any] | TableSpec) -> Table:
        if name in self._tables:
            raise InvariantError(f"table {name!r} is already registered")
        try:
            spec = definition if isinstance(definition, TableSpec) else TableSpec.model_validate(definition)
        except PydanticValidationError as exc:
            raise InvariantError(f"invalid definition for table {name!r}: {exc}") from exc

        table = Table(self, name, spec)
        self._tables[name] = table
        if isinstance(spec.new_instance, type):
            self._by_type.setdefault(spec.new_instance, table)
        logger.debug("Registered table %s (%d columns, %d relationships)",
                     name, len(table.columns), len(table.relationships))
        return table

    def get_table(self, name_or_type: Union[str, type, Table]) -> Table:
        if isinstance(name_or_type, Table):
            return name_or_type
        if isinstance(name_or_type, str):
            table = self._tables.get(name_or_type)
        else:
            table = self._by_type.get(name_or_type)
        if table is None:
            raise UnknownTableError(f"unknown table or entity type: {name_or_type!r}")
        return table

    def has_table(self, name: str) -> bool:
        return name in self._tables

    @property
    def tables(self) -> Mapping[str, Table]:
        return MappingProxyType(self._tables)

    def check(self) -> None:
        """Eagerly resolve every relationship."""
        for table in self._tables.values():
            for rel in table.relationships.values():
                rel.check()
