from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import sqlalchemy as sa

from .accessor import MISSING
from .changes import Change
from .context import EngineContext, expect_affected, primary_key_clause
from .dialect import QueryResult
from .errors import DriverError, InvariantError
from .schema import Column, Relationship, RelationshipKind, Table

logger = logging.getLogger(__name__)

PendingPatch = Callable[[], Awaitable[None]]


# ---------------------------------------------------------------------------
# Node arena
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ArenaEntry:
    surrogate: int
    node: Any
    table: Table
    stored: bool = False
    pending: list[PendingPatch] = field(default_factory=list)


class NodeArena:
    """
    Identity-keyed registry of the nodes visited by one store call.

    Each node gets a surrogate id on first visit. Work that needs a node's
    key before the node has been written is queued on its entry and flushed
    by `mark_stored`.
    """

    def __init__(self) -> None:
        self._entries: Dict[int, ArenaEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, node: Any) -> Optional[ArenaEntry]:
        return self._entries.get(id(node))

    def enter(self, node: Any, table: Table) -> ArenaEntry:
        if id(node) in self._entries:
            raise InvariantError(f"node {node!r} entered twice")
        entry = ArenaEntry(len(self._entries) + 1, node, table)
        self._entries[id(node)] = entry
        return entry

    @staticmethod
    def defer(entry: ArenaEntry, patch: PendingPatch) -> None:
        entry.pending.append(patch)

    @staticmethod
    async def mark_stored(entry: ArenaEntry) -> None:
        entry.stored = True
        pending, entry.pending = entry.pending, []
        for patch in pending:
            await patch()


def _as_list(rel: Relationship, value: Any) -> Sequence[Any]:
    if isinstance(value, (list, tuple)):
        return value
    raise InvariantError(f"relationship {rel.name!r} expects a list, got {type(value).__name__}")


# ---------------------------------------------------------------------------
# Store engine
# ---------------------------------------------------------------------------


class Storer:
    """
    Persists one object or row graph.

    Per node:

    1. store referenced nodes whose key this node holds (many-to-one and
       owning one-to-one), copying their keys into this node; a reference
       to a node that is still being stored is back-patched later
    2. insert or update the node itself
    3. mark it stored, which flushes queued back-patches
    4. store dependents: one-to-many children, owned one-to-one partners
       and many-to-many links
    """

    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx
        self.arena = NodeArena()
        self.changes: list[Change] = []

    async def store(self, table: Table, node: Any) -> list[Change]:
        await self._store(table, node)
        logger.info(
            "Stored %s graph: %d node(s), %d change(s)",
            table.name, len(self.arena), len(self.changes),
        )
        return self.changes

    async def _store(self, table: Table, node: Any) -> None:
        if self.arena.get(node) is not None:
            return
        entry = self.arena.enter(node, table)

        await self._store_references(entry)
        is_update, before = await self._is_update(entry)
        if is_update:
            await self._update(entry, before)
        else:
            await self._insert(entry)
        await self.arena.mark_stored(entry)
        await self._store_dependents(entry)

    # -- phase 1 -------------------------------------------------------------

    async def _store_references(self, entry: ArenaEntry) -> None:
        acc = self.ctx.accessor
        table, node = entry.table, entry.node
        for rel in table.relationships.values():
            if not rel.holds_foreign_key:
                continue
            target = acc.get(node, rel.name)
            if target is MISSING or target is None:
                continue

            other = rel.other_table
            target_entry = self.arena.get(target)
            if target_entry is None:
                await self._store(other, target)
                target_entry = self.arena.get(target)

            this_column = table.columns[rel.this_column]
            other_column = other.columns[rel.other_column]
            if target_entry.stored or self._row_exists(other, target):
                acc.set_column(node, this_column, acc.get_column(target, other_column))
            else:
                self.arena.defer(
                    target_entry,
                    partial(self._back_patch, table, node, this_column, target, other_column),
                )

    def _row_exists(self, table: Table, node: Any) -> bool:
        """An in-progress node with a generated key set already has its row."""
        gen = table.generated
        if gen is None:
            return False
        value = self.ctx.accessor.get_column(node, gen)
        return value is not MISSING and value is not None

    async def _back_patch(
        self, table: Table, node: Any, column: Column, target: Any, target_column: Column
    ) -> None:
        value = self.ctx.accessor.get_column(target, target_column)
        self.ctx.accessor.set_column(node, column, value)
        await self._patch(table, node, {column: value})

    # -- phase 2 -------------------------------------------------------------

    async def _is_update(self, entry: ArenaEntry) -> tuple[bool, Optional[dict[str, Any]]]:
        table, node = entry.table, entry.node
        if table.generated is not None:
            return self._row_exists(table, node), None
        if not table.primary_key:
            return False, None
        pk = self.ctx.accessor.primary_key(table, node)
        if pk is None:
            raise InvariantError(f"missing primary key for {table.name}: not database-generated and not set")
        before = await self.ctx.fetch_row(table, pk)
        return before is not None, before

    async def _insert(self, entry: ArenaEntry) -> None:
        ctx, acc = self.ctx, self.ctx.accessor
        table, node = entry.table, entry.node
        gen = table.generated

        values: dict[str, Any] = {}
        for column in table.columns.values():
            value = acc.get_column(node, column)
            if value is MISSING or (column.generated and value is None):
                continue
            values[column.name] = value

        returning = gen is not None and gen.name not in values and ctx.dialect.returns_generated_keys
        if values:
            stmt = sa.insert(table.sa_table).values(values)
            if returning:
                stmt = stmt.returning(table.sa_table.c[gen.name])
            result = await ctx.run(stmt, table=table.name, operation="insert")
        else:
            sql = ctx.dialect.empty_insert_sql(table.name)
            if returning:
                sql += " RETURNING " + ctx.dialect.sa_dialect.identifier_preparer.quote(gen.name)
            result = await ctx.dialect.query(ctx.executor, sql, (), table=table.name, operation="insert")
        expect_affected(result, 1, table=table.name, operation="insert")

        if gen is not None and gen.name not in values:
            key = self._generated_key(table, gen, result)
            acc.set_column(node, gen, key)
            values[gen.name] = key

        pk = acc.primary_key(table, node)
        row = await ctx.fetch_row(table, pk) if pk is not None else None
        if row is None:
            row = values
        else:
            for name, value in row.items():
                column = table.columns[name]
                if acc.get_column(node, column) is MISSING:
                    acc.set_column(node, column, value)

        self.changes.append(Change.of(acc.entity_name(table), acc.snapshot(table, row), acc.create_operation))

    def _generated_key(self, table: Table, gen: Column, result: QueryResult) -> Any:
        if self.ctx.dialect.returns_generated_keys:
            if result.rows and result.rows[0].get(gen.name) is not None:
                return result.rows[0][gen.name]
        elif result.insert_id is not None:
            return result.insert_id
        raise DriverError("no generated key returned", table=table.name, operation="insert")

    async def _update(self, entry: ArenaEntry, before: Optional[dict[str, Any]]) -> None:
        acc = self.ctx.accessor
        table, node = entry.table, entry.node
        pk = acc.primary_key(table, node)
        if before is None:
            before = await self.ctx.fetch_row(table, pk)
        if before is None:
            raise InvariantError(f"cannot update {table.name} {pk}: row does not exist")

        changed: dict[Column, Any] = {}
        for column in table.columns.values():
            if column.primary_key:
                continue
            value = acc.get_column(node, column)
            if value is MISSING:
                continue
            if column.name in before and before[column.name] == value:
                continue
            changed[column] = value

        if not changed:
            logger.debug("No changes for %s %s", table.name, pk)
            return
        await self._patch(table, node, changed)

        # pick up values set by the database, e.g. triggers
        after = await self.ctx.fetch_row(table, pk)
        if after is not None:
            for name, value in after.items():
                acc.set_column(node, table.columns[name], value)

    async def _patch(self, table: Table, node: Any, values: dict[Column, Any]) -> None:
        """UPDATE the given columns of a stored node and record the Change."""
        acc = self.ctx.accessor
        pk = acc.primary_key(table, node)
        if pk is None:
            raise InvariantError(f"missing primary key for update of {table.name}")
        stmt = (
            sa.update(table.sa_table)
            .where(primary_key_clause(table, pk))
            .values({column.name: value for column, value in values.items()})
        )
        result = await self.ctx.run(stmt, table=table.name, operation="update")
        expect_affected(result, 1, table=table.name, operation="update")

        row = {acc.key(table.columns[name]): value for name, value in pk.items()}
        row.update({acc.key(column): value for column, value in values.items()})
        changed_fields = tuple(acc.key(c) for c in table.columns.values() if c in values)
        self.changes.append(Change.of(acc.entity_name(table), row, "update", changed_fields))

    # -- phase 4 -------------------------------------------------------------

    async def _store_dependents(self, entry: ArenaEntry) -> None:
        acc = self.ctx.accessor
        for rel in entry.table.relationships.values():
            value = acc.get(entry.node, rel.name)
            if value is MISSING or value is None:
                continue
            if rel.holds_foreign_key:
                if rel.other_relationship_name is not None:
                    await self._set_back_reference(entry, rel, value)
            elif rel.kind is RelationshipKind.MANY_TO_MANY:
                for other in _as_list(rel, value):
                    await self._link(entry, rel, other)
            elif rel.kind is RelationshipKind.ONE_TO_MANY:
                for child in _as_list(rel, value):
                    await self._store_child(entry, rel, child)
            else:
                await self._store_child(entry, rel, value)

    async def _set_back_reference(self, entry: ArenaEntry, rel: Relationship, partner: Any) -> None:
        acc = self.ctx.accessor
        reverse = rel.other_relationship
        partner_table = rel.other_table
        partner_entry = self.arena.get(partner)
        if partner_entry is None:
            return

        fk = partner_table.columns[reverse.this_column]
        value = acc.get_column(entry.node, entry.table.columns[reverse.other_column])
        if value is MISSING:
            value = None
        if acc.get_column(partner, fk) == value:
            return
        acc.set_column(partner, fk, value)
        if partner_entry.stored:
            await self._patch(partner_table, partner, {fk: value})

    async def _store_child(self, entry: ArenaEntry, rel: Relationship, child: Any) -> None:
        acc = self.ctx.accessor
        other = rel.other_table
        fk = other.columns[rel.other_column]
        value = acc.get_column(entry.node, entry.table.columns[rel.this_column])
        if value is MISSING:
            value = None

        child_entry = self.arena.get(child)
        if child_entry is None:
            acc.set_column(child, fk, value)
            await self._store(other, child)
        elif acc.get_column(child, fk) != value:
            acc.set_column(child, fk, value)
            if child_entry.stored:
                await self._patch(other, child, {fk: value})

    async def _link(self, entry: ArenaEntry, rel: Relationship, other: Any) -> None:
        other_entry = self.arena.get(other)
        if other_entry is None:
            await self._store(rel.other_table, other)
            other_entry = self.arena.get(other)
        link = partial(self._insert_junction, entry.table, entry.node, rel, other)
        if other_entry.stored:
            await link()
        else:
            self.arena.defer(other_entry, link)

    async def _insert_junction(self, table: Table, node: Any, rel: Relationship, other: Any) -> None:
        ctx, acc = self.ctx, self.ctx.accessor
        this_value = acc.get_column(node, table.columns[rel.this_column])
        other_value = acc.get_column(other, rel.other_table.columns[rel.other_column])
        junction = rel.junction_sa
        this_col = junction.c[rel.junction_this_column]
        other_col = junction.c[rel.junction_other_column]

        existing = await ctx.run(
            sa.select(this_col).where(this_col == this_value, other_col == other_value),
            table=rel.junction_table,
            operation="select",
        )
        if existing.rows:
            return

        row = {rel.junction_this_column: this_value, rel.junction_other_column: other_value}
        result = await ctx.run(sa.insert(junction).values(row), table=rel.junction_table, operation="insert")
        expect_affected(result, 1, table=rel.junction_table, operation="insert")

        if ctx.schema.has_table(rel.junction_table):
            junction_table = ctx.schema.get_table(rel.junction_table)
            change = Change.of(acc.entity_name(junction_table), acc.snapshot(junction_table, row), acc.create_operation)
        else:
            change = Change.of(rel.junction_table, row, acc.create_operation)
        self.changes.append(change)
