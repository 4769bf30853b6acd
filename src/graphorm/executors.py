from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine

from .config import DatabaseSettings
from .dialect import QueryResult

logger = logging.getLogger(__name__)


class SqlAlchemyExecutor:
    """
    Query executor backed by a SQLAlchemy connection.

    The connection (and its transaction) belongs to the caller; this adapter
    only passes dialect SQL through `exec_driver_sql`.
    """

    def __init__(self, connection: Connection) -> None:
        self._connection = connection

    @property
    def connection(self) -> Connection:
        return self._connection

    def execute(self, sql: str, params: Sequence[Any]) -> QueryResult:
        result = self._connection.exec_driver_sql(sql, tuple(params))
        rows: list[dict[str, Any]] = []
        if result.returns_rows:
            rows = [dict(m) for m in result.mappings()]

        affected: Optional[int] = result.rowcount
        if affected is not None and affected < 0:
            affected = None

        insert_id = None
        if sql.lstrip()[:6].upper() == "INSERT":
            insert_id = result.lastrowid
        return QueryResult(rows=rows, affected_rows=affected, insert_id=insert_id)


def create_sa_engine(settings: DatabaseSettings) -> Engine:
    logger.info("Creating SQLAlchemy engine for %s", settings.url.split("@")[-1])
    return create_engine(settings.url, echo=settings.echo)
