"""
Criteria parsing.

A raw criteria value is either

- an object mapping property (or, in row mode, column) names and
  relationship names to constraints, plus reserved ``@`` keys, or
- an array alternating criteria objects with the tokens ``"AND"``/``"OR"``.

It is parsed once into the variant ``Conditions | Group`` so the compiler
never has to look at raw keys again.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any, Optional, Sequence, Union

from .accessor import EntityAccessor, get_accessor
from .errors import ValidationError
from .schema import Column, Relationship, Table

CONNECTORS = ("AND", "OR")

OPERATORS = frozenset({
    "=", "==", "!=", "<>", "<", "<=", ">", ">=",
    "LIKE", "NOT LIKE", "ILIKE",
    "IN", "NOT IN",
    "IS", "IS NOT",
})

RESERVED_KEYS = frozenset({"@load", "@loadSeparately", "@orderBy", "@limit", "@offset", "@not"})


# ---------------------------------------------------------------------------
# Variant types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Comparison:
    operator: str
    value: Any
    negate: bool = False


@dataclass(frozen=True, slots=True)
class ComparisonChain:
    """Parenthesized comparisons on one column, folded left to right."""
    items: tuple[tuple[Optional[str], Comparison], ...]


Constraint = Union[Comparison, ComparisonChain]


@dataclass(frozen=True, slots=True)
class OrderBy:
    column: Column
    direction: str = "ASC"


@dataclass(frozen=True, slots=True)
class RelationshipFilter:
    relationship: Relationship
    criteria: Optional["Criteria"] = None
    load: bool = False
    load_separately: bool = False
    is_null: bool = False

    @property
    def name(self) -> str:
        return self.relationship.name


@dataclass(frozen=True, slots=True)
class Conditions:
    table: Table
    fields: tuple[tuple[Column, Constraint], ...] = ()
    relationships: tuple[RelationshipFilter, ...] = ()
    order_by: tuple[OrderBy, ...] = ()
    limit: Optional[int] = None
    offset: Optional[int] = None
    negate: bool = False


@dataclass(frozen=True, slots=True)
class Group:
    table: Table
    items: tuple[tuple[Optional[str], "Criteria"], ...]


Criteria = Union[Conditions, Group]


def iter_conditions(criteria: Criteria):
    """Yield the Conditions of a criteria value in document order."""
    if isinstance(criteria, Conditions):
        yield criteria
    else:
        for _connector, item in criteria.items:
            yield from iter_conditions(item)


def first_paging(criteria: Criteria) -> tuple[Optional[int], Optional[int]]:
    """`@limit` and `@offset` each take their first occurrence."""
    limit = offset = None
    for conditions in iter_conditions(criteria):
        if limit is None:
            limit = conditions.limit
        if offset is None:
            offset = conditions.offset
    return limit, offset


def and_criteria(criteria: Criteria, extra: Conditions) -> Criteria:
    """Narrow `criteria` by the fields of `extra`."""
    if isinstance(criteria, Conditions) and not criteria.negate:
        return replace(criteria, fields=criteria.fields + extra.fields)
    return Group(criteria.table, ((None, criteria), ("AND", extra)))


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, accessor: EntityAccessor, strict: bool) -> None:
        self.accessor = accessor
        self.strict = strict

    def _reject(self, message: str) -> None:
        if self.strict:
            raise ValidationError(message)

    def parse(self, table: Table, raw: Any, nested: bool = False) -> Criteria:
        if raw is None:
            return Conditions(table)
        if isinstance(raw, Mapping):
            return self.conditions(table, raw, nested)
        if isinstance(raw, (list, tuple)):
            return self.group(table, raw, nested)
        raise ValidationError(f"criteria for {table.name!r} must be an object or an array, got {type(raw).__name__}")

    def group(self, table: Table, raw: Sequence[Any], nested: bool) -> Criteria:
        items: list[tuple[Optional[str], Criteria]] = []
        connector: Optional[str] = None
        for element in raw:
            if isinstance(element, str):
                token = element.strip().upper()
                if token not in CONNECTORS:
                    raise ValidationError(f"unknown logical connector {element!r}")
                connector = token
                continue
            criteria = self.parse(table, element, nested)
            if items:
                items.append((connector or "OR", criteria))
            else:
                items.append((None, criteria))
            connector = None
        return Group(table, tuple(items))

    def conditions(self, table: Table, raw: Mapping[str, Any], nested: bool) -> Conditions:
        fields: list[tuple[Column, Constraint]] = []
        relationships: list[RelationshipFilter] = []
        order_by: tuple[OrderBy, ...] = ()
        limit = offset = None
        negate = False

        for key, value in raw.items():
            if not isinstance(key, str):
                raise ValidationError(f"criteria keys must be strings, got {key!r}")
            if key.startswith("@"):
                if key == "@orderBy":
                    order_by = self.order_by(table, value)
                elif key == "@limit":
                    limit = self.paging(key, value)
                elif key == "@offset":
                    offset = self.paging(key, value)
                elif key == "@not":
                    negate = bool(value)
                elif key in ("@load", "@loadSeparately"):
                    if not nested:
                        self._reject(f"{key} is only valid below a relationship")
                else:
                    self._reject(f"unknown reserved key {key!r} in criteria for {table.name!r}")
                continue

            relationship = table.relationships.get(key)
            if relationship is not None:
                relationships.append(self.relationship(relationship, value))
                continue

            column = self.accessor.column_for_key(table, key)
            if column is None:
                self._reject(f"unknown property {key!r} on {table.name!r}")
                continue
            constraint = self.constraint(column, value)
            if constraint is not None:
                fields.append((column, constraint))

        return Conditions(
            table=table,
            fields=tuple(fields),
            relationships=tuple(relationships),
            order_by=order_by,
            limit=limit,
            offset=offset,
            negate=negate,
        )

    def relationship(self, relationship: Relationship, value: Any) -> RelationshipFilter:
        if value is None:
            return RelationshipFilter(relationship, is_null=True)
        other = relationship.other_table
        if isinstance(value, Mapping):
            return RelationshipFilter(
                relationship,
                criteria=self.conditions(other, value, nested=True),
                load=bool(value.get("@load", False)),
                load_separately=bool(value.get("@loadSeparately", False)),
            )
        if isinstance(value, (list, tuple)):
            elements = [e for e in value if isinstance(e, Mapping)]
            return RelationshipFilter(
                relationship,
                criteria=self.group(other, value, nested=True),
                load=any(e.get("@load", False) for e in elements),
                load_separately=any(e.get("@loadSeparately", False) for e in elements),
            )
        raise ValidationError(
            f"criteria for relationship {relationship.name!r} must be an object, an array or null"
        )

    def constraint(self, column: Column, value: Any) -> Optional[Constraint]:
        if isinstance(value, Mapping):
            return self.comparison(column, value)
        if isinstance(value, (list, tuple)):
            if any(isinstance(e, Mapping) for e in value):
                return self.chain(column, value)
            return Comparison("IN", tuple(value))
        return Comparison("=", value)

    def comparison(self, column: Column, raw: Mapping[str, Any]) -> Optional[Comparison]:
        unknown = set(raw) - {"@operator", "@value", "@not"}
        if unknown:
            raise ValidationError(f"unsupported keys {sorted(unknown)} in comparison on {column.name!r}")
        if "@value" not in raw:
            return None
        operator = " ".join(str(raw.get("@operator", "=")).upper().split())
        if operator not in OPERATORS:
            raise ValidationError(f"unsupported operator {raw.get('@operator')!r} on {column.name!r}")
        value = raw["@value"]
        if operator in ("IN", "NOT IN"):
            if not isinstance(value, (list, tuple, set, frozenset)):
                raise ValidationError(f"{operator} on {column.name!r} needs an array value")
            value = tuple(value)
        return Comparison(operator, value, bool(raw.get("@not", False)))

    def chain(self, column: Column, raw: Sequence[Any]) -> Optional[ComparisonChain]:
        items: list[tuple[Optional[str], Comparison]] = []
        connector: Optional[str] = None
        for element in raw:
            if isinstance(element, str) and element.strip().upper() in CONNECTORS:
                connector = element.strip().upper()
                continue
            if not isinstance(element, Mapping):
                raise ValidationError(f"comparison chains on {column.name!r} may only hold comparisons and AND/OR")
            comparison = self.comparison(column, element)
            if comparison is None:
                continue
            items.append((connector or "OR", comparison) if items else (None, comparison))
            connector = None
        return ComparisonChain(tuple(items)) if items else None

    def order_by(self, table: Table, value: Any) -> tuple[OrderBy, ...]:
        entries = value if isinstance(value, (list, tuple)) else [value]
        result: list[OrderBy] = []
        for entry in entries:
            if isinstance(entry, str):
                key, direction = entry, "ASC"
            elif isinstance(entry, Mapping):
                key = entry.get("field")
                direction = str(entry.get("direction", "ASC")).upper()
            else:
                raise ValidationError(f"invalid @orderBy entry {entry!r}")
            if direction not in ("ASC", "DESC"):
                raise ValidationError(f"invalid @orderBy direction {direction!r}")
            column = self.accessor.column_for_key(table, key) if isinstance(key, str) else None
            if column is None:
                self._reject(f"unknown @orderBy field {key!r} on {table.name!r}")
                continue
            result.append(OrderBy(column, direction))
        return tuple(result)

    @staticmethod
    def paging(key: str, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{key} must be a non-negative integer, got {value!r}")
        return value


def parse_criteria(
    table: Table,
    raw: Any,
    *,
    row_mode: bool = False,
    strict: bool = True,
) -> Criteria:
    return _Parser(get_accessor(row_mode), strict).parse(table, raw)
