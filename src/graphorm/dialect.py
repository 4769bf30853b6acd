from __future__ import annotations

import hashlib
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Sequence, Union

from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine.interfaces import BindTyping
from sqlalchemy.engine.interfaces import Dialect as SaDialect
from sqlalchemy.sql.elements import ClauseElement

from .errors import DriverError, OrmError

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = {
    "mysql": 64,
    "postgres": 63,
    "sqlite": 64,
}

_ALIASES = {
    "mysql": "mysql",
    "maria": "mysql",
    "mariadb": "mysql",
    "postgres": "postgres",
    "postgresql": "postgres",
    "sqlite": "sqlite",
}

_QUOTES = ("'", '"', "`")


@dataclass(slots=True)
class QueryResult:
    """Normalized outcome of one executed statement."""
    rows: list[dict[str, Any]] = field(default_factory=list)
    affected_rows: Optional[int] = None
    insert_id: Any = None


class QueryExecutor(Protocol):
    """
    External capability that runs dialect-specific SQL.

    `execute` may be a plain or a coroutine function. It returns either a
    `QueryResult` or a sequence of row mappings.
    """

    def execute(self, sql: str, params: Sequence[Any]) -> Any | Awaitable[Any]:
        ...


ExecutorLike = Union[QueryExecutor, Callable[[str, Sequence[Any]], Any]]


def render_placeholders(sql: str, style: str) -> str:
    """
    Rewrite positional ``?`` placeholders into the target style.

    ``style`` is ``"qmark"`` (returned unchanged) or ``"numeric_dollar"``
    (``$1``, ``$2``, ...). Question marks inside quoted literals and quoted
    identifiers are left alone.
    """
    if style == "qmark":
        return sql
    if style != "numeric_dollar":
        raise ValueError(f"unsupported placeholder style {style!r}")

    out: list[str] = []
    quote: Optional[str] = None
    counter = 0
    for ch in sql:
        if quote is not None:
            if ch == quote:
                quote = None
            out.append(ch)
        elif ch in _QUOTES:
            quote = ch
            out.append(ch)
        elif ch == "?":
            counter += 1
            out.append(f"${counter}")
        else:
            out.append(ch)
    return "".join(out)


def _normalize(result: Any) -> QueryResult:
    if isinstance(result, QueryResult):
        return result
    if result is None:
        return QueryResult()
    rows: list[dict[str, Any]] = []
    for row in result:
        if isinstance(row, Mapping):
            rows.append(dict(row))
        elif hasattr(row, "_mapping"):
            rows.append(dict(row._mapping))
        else:
            raise DriverError(f"executor returned a row of unsupported type {type(row).__name__}")
    return QueryResult(rows=rows)


class Dialect:
    """
    Target database flavour: placeholder style, identifier limits and the
    SQLAlchemy dialect used to render Core statements.
    """

    def __init__(
        self,
        name: str = "mysql",
        *,
        max_identifier_length: Optional[int] = None,
        hash_length: int = 8,
    ) -> None:
        try:
            self.name = _ALIASES[name.lower()]
        except KeyError:
            raise ValueError(f"unsupported dialect {name!r}; expected one of {sorted(_ALIASES)}") from None

        self.max_identifier_length = max_identifier_length or MAX_IDENTIFIER_LENGTH[self.name]
        if not 4 <= hash_length < self.max_identifier_length - 1:
            raise ValueError(f"hash_length={hash_length} does not fit identifier limit {self.max_identifier_length}")
        self.hash_length = hash_length

        if self.name == "mysql":
            self.sa_dialect: SaDialect = mysql.dialect(paramstyle="qmark")
        elif self.name == "postgres":
            self.sa_dialect = postgresql.dialect(paramstyle="qmark")
        else:
            self.sa_dialect = sqlite.dialect(paramstyle="qmark")
        # parameters are sent untyped; the database infers types from the columns
        self.sa_dialect.bind_typing = BindTyping.NONE

    def __repr__(self) -> str:
        return f"Dialect({self.name!r}, max_identifier_length={self.max_identifier_length})"

    @property
    def placeholder_style(self) -> str:
        return "numeric_dollar" if self.name == "postgres" else "qmark"

    @property
    def returns_generated_keys(self) -> bool:
        """True when inserts read generated keys via RETURNING."""
        return self.name == "postgres"

    # ----------------------------------------------------------------------
    # Identifiers
    # ----------------------------------------------------------------------

    def shorten_identifier(self, name: str) -> str:
        """
        Deterministically fit `name` into the identifier limit.

        Over-long names keep a readable prefix and get a sha1 suffix of the
        full name, so equal inputs always give equal outputs.
        """
        limit = self.max_identifier_length
        if len(name) <= limit:
            return name
        digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[: self.hash_length]
        return f"{name[: limit - self.hash_length - 1]}_{digest}"

    # ----------------------------------------------------------------------
    # SQL rendering
    # ----------------------------------------------------------------------

    def compile(self, stmt: ClauseElement) -> tuple[str, list[Any]]:
        """Render a Core statement into dialect SQL and ordered parameters."""
        compiled = stmt.compile(dialect=self.sa_dialect, compile_kwargs={"render_postcompile": True})
        params = compiled.params
        values = [params[name] for name in (compiled.positiontup or ())]
        return render_placeholders(compiled.string, self.placeholder_style), values

    def empty_insert_sql(self, table_name: str) -> str:
        quoted = self.sa_dialect.identifier_preparer.quote(table_name)
        if self.name == "mysql":
            return f"INSERT INTO {quoted} () VALUES ()"
        return f"INSERT INTO {quoted} DEFAULT VALUES"

    # ----------------------------------------------------------------------
    # Execution
    # ----------------------------------------------------------------------

    async def query(
        self,
        executor: ExecutorLike,
        sql: str,
        params: Sequence[Any] = (),
        *,
        table: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> QueryResult:
        """Execute dialect SQL through the external executor and normalize the result."""
        logger.debug("SQL [%s %s]: %s -- %r", operation, table, sql, list(params))
        execute = getattr(executor, "execute", executor)
        try:
            result = execute(sql, list(params))
            if inspect.isawaitable(result):
                result = await result
        except OrmError:
            raise
        except Exception as exc:
            raise DriverError(f"query failed: {exc}", table=table, operation=operation) from exc
        return _normalize(result)

    async def run(
        self,
        executor: ExecutorLike,
        stmt: ClauseElement,
        *,
        table: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> QueryResult:
        sql, params = self.compile(stmt)
        return await self.query(executor, sql, params, table=table, operation=operation)


def get_dialect(
    name: Union[str, Dialect],
    *,
    max_identifier_length: Optional[int] = None,
    hash_length: int = 8,
) -> Dialect:
    if isinstance(name, Dialect):
        return name
    return Dialect(name, max_identifier_length=max_identifier_length, hash_length=hash_length)
