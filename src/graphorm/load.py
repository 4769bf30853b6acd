from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from .accessor import MISSING, EntityAccessor
from .compiler import JoinNode
from .context import EngineContext
from .criteria import Comparison, Conditions, Criteria, RelationshipFilter, and_criteria
from .schema import RelationshipKind, Table

logger = logging.getLogger(__name__)


def _distinct(values: Iterable[Any]) -> list[Any]:
    seen: set[Any] = set()
    result: list[Any] = []
    for value in values:
        if value is MISSING or value is None or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


class _Assembler:
    """
    Reassembles flat joined rows into nested entities.

    Entities are keyed by (join node, parent entity, primary key), so a root
    repeated by a to-many join is materialized once and keeps the position
    where it was first seen.
    """

    def __init__(self, accessor: EntityAccessor) -> None:
        self.accessor = accessor
        self._seen: Dict[tuple, Any] = {}
        self._entities: Dict[JoinNode, list[Any]] = {}

    def entities(self, node: JoinNode) -> list[Any]:
        return self._entities.get(node, [])

    def unjoin(self, rows: Iterable[dict[str, Any]], root: JoinNode) -> list[Any]:
        for row in rows:
            self._visit(row, root, None)
        return list(self.entities(root))

    def _visit(self, row: dict[str, Any], node: JoinNode, parent: Any) -> None:
        values = {name: row.get(label) for name, label in node.labels.items()}
        # an outer join without a match, or an all-null root row
        if all(v is None for v in values.values()):
            return

        pk = node.table.primary_key
        identity: Any = tuple(values[c.name] for c in pk) if pk else tuple(values.values())
        try:
            hash(identity)
        except TypeError:
            identity = repr(identity)
        key = (id(node), id(parent) if parent is not None else None, identity)

        entity = self._seen.get(key)
        if entity is None:
            entity = self._materialize(node, values)
            self._seen[key] = entity
            self._entities.setdefault(node, []).append(entity)
            if parent is not None:
                self._attach(parent, node.relationship.name, node.relationship.kind, entity)

        for child in node.children.values():
            self._visit(row, child, entity)

    def _materialize(self, node: JoinNode, values: dict[str, Any]) -> Any:
        acc = self.accessor
        entity = acc.new_entity(node.table)
        for name, value in values.items():
            acc.set_column(entity, node.table.columns[name], value)
        slots = [c.relationship for c in node.children.values()]
        slots += [rf.relationship for rf in node.separate.values()]
        for rel in slots:
            acc.set(entity, rel.name, [] if rel.kind.to_many else None)
        return entity

    def _attach(self, parent: Any, name: str, kind: RelationshipKind, entity: Any) -> None:
        if kind.to_many:
            self.accessor.get(parent, name).append(entity)
        else:
            self.accessor.set(parent, name, entity)


class Loader:
    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx

    async def load(self, table: Table, criteria: Criteria) -> list[Any]:
        ctx = self.ctx
        plan = ctx.compiler.compile_load(table, criteria)
        result = await ctx.run(plan.statement, table=table.name, operation="load")

        assembler = _Assembler(ctx.accessor)
        entities = assembler.unjoin(result.rows, plan.root)
        logger.debug("Loaded %d %s entit(ies) from %d row(s)", len(entities), table.name, len(result.rows))

        for node in plan.root.walk():
            for rf in node.separate.values():
                await self._load_separately(node, rf, assembler.entities(node))
        return entities

    async def _load_separately(self, node: JoinNode, rf: RelationshipFilter, entities: list[Any]) -> None:
        """One secondary query for all entities of `node`, then attach by key."""
        if not entities:
            return
        ctx = self.ctx
        acc = ctx.accessor
        rel = rf.relationship
        other: Table = rel.other_table

        this_column = node.table.columns[rel.this_column]
        ids = _distinct(acc.get_column(e, this_column) for e in entities)
        if not ids:
            return

        pairs: Optional[list[tuple[Any, Any]]] = None
        if rel.kind is RelationshipKind.MANY_TO_MANY:
            stmt = ctx.compiler.compile_junction(rel, ids)
            result = await ctx.run(stmt, table=rel.junction_table, operation="load")
            pairs = [(row[rel.junction_this_column], row[rel.junction_other_column]) for row in result.rows]
            other_ids = _distinct(p[1] for p in pairs)
            if not other_ids:
                return
        else:
            other_ids = ids

        other_column = other.columns[rel.other_column]
        narrowed = and_criteria(
            rf.criteria if rf.criteria is not None else Conditions(other),
            Conditions(other, fields=((other_column, Comparison("IN", tuple(other_ids))),)),
        )
        related = await self.load(other, narrowed)

        index: dict[Any, list[Any]] = {}
        for entity in related:
            index.setdefault(acc.get_column(entity, other_column), []).append(entity)
        if pairs is not None:
            linked: dict[Any, list[Any]] = {}
            for this_id, other_id in pairs:
                linked.setdefault(this_id, []).extend(index.get(other_id, ()))
            index = linked

        for entity in entities:
            matches = index.get(acc.get_column(entity, this_column), [])
            if rel.kind.to_many:
                acc.set(entity, rel.name, list(matches))
            else:
                acc.set(entity, rel.name, matches[0] if matches else None)
