from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.sql.expression import ColumnElement, FromClause, Select

from .criteria import (
    Comparison,
    ComparisonChain,
    Conditions,
    Constraint,
    Criteria,
    OrderBy,
    RelationshipFilter,
    first_paging,
    iter_conditions,
)
from .dialect import Dialect
from .errors import InvariantError
from .schema import Relationship, RelationshipKind, Table

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Plan types
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class JoinNode:
    """One table occurrence in a load query: the root or an `@load`ed relationship."""
    table: Table
    path: str
    alias: str
    relationship: Optional[Relationship] = None
    parent: Optional["JoinNode"] = None
    children: Dict[str, "JoinNode"] = field(default_factory=dict)
    separate: Dict[str, RelationshipFilter] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    from_clause: Any = None

    def walk(self) -> Iterator["JoinNode"]:
        yield self
        for child in self.children.values():
            yield from child.walk()

    @property
    def fans_out(self) -> bool:
        """True if any joined relationship below can repeat this node's rows."""
        return any(
            child.relationship.kind.to_many or child.fans_out
            for child in self.children.values()
        )


@dataclass
class LoadPlan:
    root: JoinNode
    statement: Select


# ---------------------------------------------------------------------------
# Clause building
# ---------------------------------------------------------------------------


def has_predicates(criteria: Optional[Criteria]) -> bool:
    if criteria is None:
        return False
    for conditions in iter_conditions(criteria):
        if conditions.fields:
            return True
        for rf in conditions.relationships:
            if rf.is_null:
                return True
            if rf.load_separately and not rf.load:
                continue
            if has_predicates(rf.criteria):
                return True
    return False


def _comparison(col: ColumnElement, comparison: Comparison) -> ColumnElement:
    op, value = comparison.operator, comparison.value
    if op in ("=", "=="):
        clause = col.is_(None) if value is None else col == value
    elif op in ("!=", "<>"):
        clause = col.is_not(None) if value is None else col != value
    elif op == "<":
        clause = col < value
    elif op == "<=":
        clause = col <= value
    elif op == ">":
        clause = col > value
    elif op == ">=":
        clause = col >= value
    elif op == "LIKE":
        clause = col.like(value)
    elif op == "NOT LIKE":
        clause = col.not_like(value)
    elif op == "ILIKE":
        clause = col.ilike(value)
    elif op == "IN":
        clause = col.in_(list(value)) if value else sa.false()
    elif op == "NOT IN":
        clause = col.not_in(list(value)) if value else sa.true()
    elif op == "IS":
        clause = col.is_(value)
    elif op == "IS NOT":
        clause = col.is_not(value)
    else:
        raise InvariantError(f"unsupported operator {op!r}")
    return sa.not_(clause) if comparison.negate else clause


def constraint_clause(col: ColumnElement, constraint: Constraint) -> ColumnElement:
    if isinstance(constraint, ComparisonChain):
        result: Optional[ColumnElement] = None
        for connector, comparison in constraint.items:
            clause = _comparison(col, comparison)
            if result is None:
                result = clause
            elif connector == "AND":
                result = sa.and_(result, clause)
            else:
                result = sa.or_(result, clause)
        return result.self_group() if result is not None else sa.true()
    return _comparison(col, constraint)


def _fold(connector: Optional[str], left: Optional[ColumnElement], right: Optional[ColumnElement]):
    if right is None:
        return left
    if left is None:
        return right
    if connector == "AND":
        return sa.and_(left, right)
    return sa.or_(left, right)


class _ClauseBuilder:
    """
    Turns parsed criteria into a WHERE expression.

    In joined mode, constraints below an `@load`ed relationship apply to that
    relationship's join alias. Otherwise every relationship constraint is
    expressed as a correlated EXISTS on the root row.
    """

    def __init__(
        self,
        compiler: "CriteriaCompiler",
        *,
        joined: bool,
        froms: Optional[Dict[JoinNode, FromClause]] = None,
    ) -> None:
        self.compiler = compiler
        self.joined = joined
        self.froms = froms or {}

    def from_for(self, node: JoinNode) -> FromClause:
        return self.froms.get(node, node.from_clause)

    def build(self, criteria: Optional[Criteria], node: JoinNode) -> Optional[ColumnElement]:
        if criteria is None:
            return None
        if isinstance(criteria, Conditions):
            return self.conditions(criteria, node)
        result: Optional[ColumnElement] = None
        for connector, item in criteria.items:
            result = _fold(connector, result, self.build(item, node))
        return result

    def conditions(self, conditions: Conditions, node: JoinNode) -> Optional[ColumnElement]:
        source = self.from_for(node)
        parts: list[ColumnElement] = [
            constraint_clause(source.c[column.name], constraint)
            for column, constraint in conditions.fields
        ]
        for rf in conditions.relationships:
            clause = self.relationship(rf, node)
            if clause is not None:
                parts.append(clause)
        if not parts:
            return None
        clause = parts[0] if len(parts) == 1 else sa.and_(*parts)
        return sa.not_(clause) if conditions.negate else clause

    def relationship(self, rf: RelationshipFilter, node: JoinNode) -> Optional[ColumnElement]:
        rel = rf.relationship
        if rf.is_null:
            if rel.holds_foreign_key:
                return self.from_for(node).c[rel.this_column].is_(None)
            return sa.not_(self.exists(rel, node, None))

        if rf.load and self.joined:
            child = node.children.get(rf.name)
            if child is None:
                return None
            return self.build(rf.criteria, child)

        if rf.load_separately and not rf.load:
            return None
        if not has_predicates(rf.criteria):
            return None

        shortcut = self.foreign_key_shortcut(rel, rf.criteria, node)
        if shortcut is not None:
            return shortcut
        return self.exists(rel, node, rf.criteria)

    def foreign_key_shortcut(
        self, rel: Relationship, criteria: Optional[Criteria], node: JoinNode
    ) -> Optional[ColumnElement]:
        """Constrain the local foreign key when only the referenced key is filtered."""
        if not rel.holds_foreign_key or not isinstance(criteria, Conditions):
            return None
        if criteria.relationships or criteria.negate or not criteria.fields:
            return None
        for column, constraint in criteria.fields:
            if column.name != rel.other_column:
                return None
            if not isinstance(constraint, Comparison):
                return None
            if constraint.value is None or constraint.operator in ("IS", "IS NOT"):
                return None
        local = self.from_for(node).c[rel.this_column]
        parts = [constraint_clause(local, constraint) for _, constraint in criteria.fields]
        return parts[0] if len(parts) == 1 else sa.and_(*parts)

    def exists(self, rel: Relationship, node: JoinNode, criteria: Optional[Criteria]) -> ColumnElement:
        dialect = self.compiler.dialect
        this = self.from_for(node)
        path = f"{node.path}__{rel.name}_exists"
        other_table = rel.other_table
        other = other_table.sa_table.alias(dialect.shorten_identifier(path))
        other_node = JoinNode(other_table, path, other.name, relationship=rel, from_clause=other)

        if rel.kind is RelationshipKind.MANY_TO_MANY:
            junction = rel.junction_sa.alias(dialect.shorten_identifier(f"{path}__junction"))
            parts = [
                junction.c[rel.junction_this_column] == this.c[rel.this_column],
                other.c[rel.other_column] == junction.c[rel.junction_other_column],
            ]
        else:
            parts = [other.c[rel.other_column] == this.c[rel.this_column]]

        nested = _ClauseBuilder(self.compiler, joined=False, froms=self.froms).build(criteria, other_node)
        if nested is not None:
            parts.append(nested)
        return sa.exists().where(*parts)


# ---------------------------------------------------------------------------
# Compiler
# ---------------------------------------------------------------------------


class CriteriaCompiler:
    """
    Compiles parsed criteria against a root table into SQLAlchemy Core
    statements, using the dialect for identifier shortening.
    """

    def __init__(self, dialect: Dialect) -> None:
        self.dialect = dialect

    # -- join tree ---------------------------------------------------------

    def _root_node(self, table: Table) -> JoinNode:
        node = JoinNode(table, table.name, self.dialect.shorten_identifier(table.name))
        node.from_clause = self._root_from(table, node.alias)
        return node

    @staticmethod
    def _root_from(table: Table, alias: str) -> FromClause:
        return table.sa_table if alias == table.name else table.sa_table.alias(alias)

    def _collect(self, node: JoinNode, criteria: Optional[Criteria]) -> None:
        if criteria is None:
            return
        for conditions in iter_conditions(criteria):
            for rf in conditions.relationships:
                if rf.load:
                    child = node.children.get(rf.name)
                    if child is None:
                        path = f"{node.path}__{rf.name}"
                        child = JoinNode(
                            rf.relationship.other_table,
                            path,
                            self.dialect.shorten_identifier(path),
                            relationship=rf.relationship,
                            parent=node,
                        )
                        node.children[rf.name] = child
                    self._collect(child, rf.criteria)
                elif rf.load_separately:
                    node.separate.setdefault(rf.name, rf)

    def _assign_labels(self, root: JoinNode) -> None:
        aliases: set[str] = set()
        labels: set[str] = set()
        for node in root.walk():
            if node.alias in aliases:
                raise InvariantError(f"identifier collision for join alias {node.alias!r}")
            aliases.add(node.alias)
            for name in node.table.columns:
                label = self.dialect.shorten_identifier(f"{node.path}__{name}")
                if label in labels:
                    raise InvariantError(f"identifier collision for column label {label!r}")
                labels.add(label)
                node.labels[name] = label

    def _attach_joins(self, node: JoinNode, joined: FromClause) -> FromClause:
        this = node.from_clause
        for child in node.children.values():
            rel = child.relationship
            other = child.table.sa_table.alias(child.alias)
            child.from_clause = other
            if rel.kind is RelationshipKind.MANY_TO_MANY:
                junction = rel.junction_sa.alias(self.dialect.shorten_identifier(f"{child.path}__junction"))
                joined = joined.outerjoin(
                    junction, junction.c[rel.junction_this_column] == this.c[rel.this_column]
                )
                joined = joined.outerjoin(
                    other, other.c[rel.other_column] == junction.c[rel.junction_other_column]
                )
            else:
                joined = joined.outerjoin(other, other.c[rel.other_column] == this.c[rel.this_column])
            joined = self._attach_joins(child, joined)
        return joined

    def _order_entries(
        self, node: JoinNode, criteria: Optional[Criteria]
    ) -> list[tuple[JoinNode, OrderBy]]:
        entries: list[tuple[JoinNode, OrderBy]] = []
        if criteria is None:
            return entries
        for conditions in iter_conditions(criteria):
            entries.extend((node, ob) for ob in conditions.order_by)
            for rf in conditions.relationships:
                child = node.children.get(rf.name)
                if rf.load and child is not None:
                    entries.extend(self._order_entries(child, rf.criteria))
        return entries

    @staticmethod
    def _order_clause(source: FromClause, ob: OrderBy) -> ColumnElement:
        col = source.c[ob.column.name]
        return col.desc() if ob.direction == "DESC" else col.asc()

    # -- statements ----------------------------------------------------------

    def compile_load(self, table: Table, criteria: Criteria) -> LoadPlan:
        root = self._root_node(table)
        self._collect(root, criteria)
        self._assign_labels(root)

        limit, offset = first_paging(criteria)
        paging = limit is not None or offset is not None
        entries = self._order_entries(root, criteria)
        root_entries = [ob for node, ob in entries if node is root]
        default_order = [] if root_entries or not paging else [OrderBy(c) for c in table.primary_key]

        paged_subquery = paging and root.fans_out
        if paged_subquery:
            # restrict root keys first so paging counts root rows, not joined rows
            inner_from = root.from_clause
            inner = sa.select(*inner_from.c).select_from(inner_from)
            where = _ClauseBuilder(self, joined=False).build(criteria, root)
            if where is not None:
                inner = inner.where(where)
            inner = inner.order_by(*(self._order_clause(inner_from, ob) for ob in root_entries + default_order))
            if limit is not None:
                inner = inner.limit(limit)
            if offset is not None:
                inner = inner.offset(offset)
            root.from_clause = inner.subquery(root.alias)

        joined = self._attach_joins(root, root.from_clause)
        columns = [
            node.from_clause.c[name].label(node.labels[name])
            for node in root.walk()
            for name in node.table.columns
        ]
        stmt = sa.select(*columns).select_from(joined)

        where = _ClauseBuilder(self, joined=True).build(criteria, root)
        if where is not None:
            stmt = stmt.where(where)

        order = [self._order_clause(root.from_clause, ob) for ob in root_entries + default_order]
        order += [self._order_clause(node.from_clause, ob) for node, ob in entries if node is not root]
        if order:
            stmt = stmt.order_by(*order)

        if not paged_subquery:
            if limit is not None:
                stmt = stmt.limit(limit)
            if offset is not None:
                stmt = stmt.offset(offset)

        logger.debug(
            "Compiled load for %s: %d join(s), %d separate load(s), paged_subquery=%s",
            table.name,
            sum(1 for _ in root.walk()) - 1,
            sum(len(n.separate) for n in root.walk()),
            paged_subquery,
        )
        return LoadPlan(root=root, statement=stmt)

    def compile_count(self, table: Table, criteria: Criteria) -> Select:
        root = self._root_node(table)
        stmt = sa.select(sa.func.count().label("count")).select_from(root.from_clause)
        where = _ClauseBuilder(self, joined=False).build(criteria, root)
        return stmt.where(where) if where is not None else stmt

    def filter_clause(self, table: Table, criteria: Criteria) -> Optional[ColumnElement]:
        """WHERE clause on the bare table, for criteria-driven UPDATE/DELETE."""
        root = JoinNode(table, table.name, table.name, from_clause=table.sa_table)
        return _ClauseBuilder(self, joined=False).build(criteria, root)

    def compile_update(self, table: Table, values: Mapping[str, Any], criteria: Criteria) -> sa.Update:
        stmt = sa.update(table.sa_table).values(dict(values))
        where = self.filter_clause(table, criteria)
        return stmt.where(where) if where is not None else stmt

    def compile_delete(self, table: Table, criteria: Criteria) -> sa.Delete:
        stmt = sa.delete(table.sa_table)
        where = self.filter_clause(table, criteria)
        return stmt.where(where) if where is not None else stmt

    @staticmethod
    def compile_junction(rel: Relationship, ids: Sequence[Any]) -> Select:
        junction = rel.junction_sa
        this_col = junction.c[rel.junction_this_column]
        return sa.select(this_col, junction.c[rel.junction_other_column]).where(this_col.in_(list(ids)))
