from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Union

from .accessor import get_accessor
from .changes import Change
from .compiler import CriteriaCompiler
from .config import EngineSettings, get_settings
from .context import EngineContext
from .criteria import Criteria, parse_criteria
from .delete import Deleter
from .dialect import Dialect, ExecutorLike, get_dialect
from .errors import ValidationError
from .load import Loader
from .schema import Schema, Table
from .store import Storer

logger = logging.getLogger(__name__)

TableRef = Union[str, type, Table]


class Orm:
    """
    Entry point binding a schema to a dialect.

    Every operation takes the query executor explicitly and holds no state
    between calls, so one instance can serve concurrent callers.

    Parameters
    ----------
    schema:
        Registered table definitions.
    dialect:
        ``"mysql"``, ``"postgres"``, ``"sqlite"`` or a configured `Dialect`.
    strict:
        Reject unknown keys in criteria instead of ignoring them.
    """

    def __init__(self, schema: Schema, dialect: Union[str, Dialect] = "mysql", *, strict: bool = True) -> None:
        self.schema = schema
        self.dialect = get_dialect(dialect)
        self.compiler = CriteriaCompiler(self.dialect)
        self.strict = strict

    @classmethod
    def from_settings(cls, schema: Schema, settings: Optional[EngineSettings] = None) -> "Orm":
        settings = settings or get_settings()
        dialect = Dialect(
            settings.dialect.name,
            max_identifier_length=settings.dialect.max_identifier_length,
            hash_length=settings.dialect.hash_length,
        )
        return cls(schema, dialect, strict=settings.criteria.strict)

    def __repr__(self) -> str:
        return f"Orm({self.dialect!r}, tables={len(self.schema.tables)}, strict={self.strict})"

    # ----------------------------------------------------------------------
    # Helpers
    # ----------------------------------------------------------------------

    def _context(self, executor: ExecutorLike, row_mode: bool) -> EngineContext:
        return EngineContext(
            schema=self.schema,
            dialect=self.dialect,
            compiler=self.compiler,
            executor=executor,
            accessor=get_accessor(row_mode),
        )

    def parse(self, table: TableRef, criteria: Any, *, row_mode: bool = False) -> Criteria:
        return parse_criteria(self.schema.get_table(table), criteria, row_mode=row_mode, strict=self.strict)

    # ----------------------------------------------------------------------
    # Operations
    # ----------------------------------------------------------------------

    async def load(
        self,
        executor: ExecutorLike,
        table: TableRef,
        criteria: Any = None,
        *,
        row_mode: bool = False,
    ) -> list[Any]:
        """Load root entities matching `criteria`, with requested relationships attached."""
        t = self.schema.get_table(table)
        parsed = self.parse(t, criteria, row_mode=row_mode)
        return await Loader(self._context(executor, row_mode)).load(t, parsed)

    async def store(
        self,
        executor: ExecutorLike,
        table: TableRef,
        node: Any,
        *,
        row_mode: bool = False,
    ) -> list[Change]:
        """Persist `node` and everything reachable from it; return the change log."""
        t = self.schema.get_table(table)
        return await Storer(self._context(executor, row_mode)).store(t, node)

    async def delete(
        self,
        executor: ExecutorLike,
        table: TableRef,
        node: Any,
        *,
        row_mode: bool = False,
    ) -> Change:
        t = self.schema.get_table(table)
        return await Deleter(self._context(executor, row_mode)).delete(t, node)

    async def count(
        self,
        executor: ExecutorLike,
        table: TableRef,
        criteria: Any = None,
        *,
        row_mode: bool = False,
    ) -> int:
        t = self.schema.get_table(table)
        stmt = self.compiler.compile_count(t, self.parse(t, criteria, row_mode=row_mode))
        result = await self.dialect.run(executor, stmt, table=t.name, operation="count")
        return int(result.rows[0]["count"]) if result.rows else 0

    async def update_where(
        self,
        executor: ExecutorLike,
        table: TableRef,
        values: Mapping[str, Any],
        criteria: Any,
        *,
        row_mode: bool = False,
    ) -> int:
        """Bulk UPDATE of every row matching `criteria`; returns the affected row count."""
        t = self.schema.get_table(table)
        if criteria is None:
            raise ValueError("update_where requires criteria; pass {} to update every row")
        accessor = get_accessor(row_mode)
        columns: dict[str, Any] = {}
        for key, value in values.items():
            column = accessor.column_for_key(t, key)
            if column is None:
                raise ValidationError(f"unknown property {key!r} on {t.name!r}")
            columns[column.name] = value
        if not columns:
            return 0

        stmt = self.compiler.compile_update(t, columns, self.parse(t, criteria, row_mode=row_mode))
        result = await self.dialect.run(executor, stmt, table=t.name, operation="update")
        logger.info("Updated %s row(s) in %s", result.affected_rows, t.name)
        return result.affected_rows or 0

    async def delete_where(
        self,
        executor: ExecutorLike,
        table: TableRef,
        criteria: Any,
        *,
        row_mode: bool = False,
    ) -> int:
        """Bulk DELETE of every row matching `criteria`; returns the affected row count."""
        t = self.schema.get_table(table)
        if criteria is None:
            raise ValueError("delete_where requires criteria; pass {} to delete every row")
        stmt = self.compiler.compile_delete(t, self.parse(t, criteria, row_mode=row_mode))
        result = await self.dialect.run(executor, stmt, table=t.name, operation="delete")
        logger.info("Deleted %s row(s) from %s", result.affected_rows, t.name)
        return result.affected_rows or 0
