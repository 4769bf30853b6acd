from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.sql.elements import ClauseElement

from .accessor import EntityAccessor
from .compiler import CriteriaCompiler
from .dialect import Dialect, ExecutorLike, QueryResult
from .errors import InvariantError
from .schema import Schema, Table


@dataclass(slots=True)
class EngineContext:
    """Per-call collaborators handed to the load, store and delete engines."""
    schema: Schema
    dialect: Dialect
    compiler: CriteriaCompiler
    executor: ExecutorLike
    accessor: EntityAccessor

    async def run(self, stmt: ClauseElement, *, table: str, operation: str) -> QueryResult:
        return await self.dialect.run(self.executor, stmt, table=table, operation=operation)

    async def fetch_row(self, table: Table, pk: Mapping[str, Any]) -> Optional[dict[str, Any]]:
        """Select one full row by its column-keyed primary key."""
        t = table.sa_table
        stmt = sa.select(*t.c).where(primary_key_clause(table, pk))
        result = await self.run(stmt, table=table.name, operation="select")
        return result.rows[0] if result.rows else None


def primary_key_clause(table: Table, pk: Mapping[str, Any]):
    t = table.sa_table
    return sa.and_(*(t.c[name] == value for name, value in pk.items()))


def expect_affected(result: QueryResult, expected: int, *, table: str, operation: str) -> None:
    if result.affected_rows is not None and result.affected_rows != expected:
        raise InvariantError(
            f"{operation} on {table} affected {result.affected_rows} row(s), expected {expected}"
        )
