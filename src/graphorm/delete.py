from __future__ import annotations

import logging
from typing import Any

import sqlalchemy as sa

from .accessor import MISSING
from .changes import Change
from .context import EngineContext, expect_affected, primary_key_clause
from .errors import InvariantError
from .schema import Table

logger = logging.getLogger(__name__)


class Deleter:
    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx

    async def delete(self, table: Table, node: Any) -> Change:
        """
        Delete the row behind `node` by primary key.

        The row is read first so the Change carries the full last-known
        state; the in-memory node itself is left untouched.
        """
        acc = self.ctx.accessor
        pk = acc.primary_key(table, node)
        if pk is None:
            raise InvariantError("missing primary key")

        before = await self.ctx.fetch_row(table, pk)
        stmt = sa.delete(table.sa_table).where(primary_key_clause(table, pk))
        result = await self.ctx.run(stmt, table=table.name, operation="delete")
        if before is not None:
            expect_affected(result, 1, table=table.name, operation="delete")
        else:
            logger.warning("Deleting %s %s: row was not found before delete", table.name, pk)
            before = {
                column.name: value
                for column in table.columns.values()
                if (value := acc.get_column(node, column)) is not MISSING
            }

        logger.info("Deleted %s %s", table.name, pk)
        return Change.of(acc.entity_name(table), acc.snapshot(table, before), "delete")
