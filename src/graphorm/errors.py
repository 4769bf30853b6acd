from __future__ import annotations

from typing import Optional


class OrmError(Exception):
    """Base class for all errors raised by graphorm."""
    pass


class ValidationError(OrmError, ValueError):
    """Criteria or values reference something the schema does not know."""
    pass


class InvariantError(OrmError):
    """A structural precondition of the schema or of a node was violated."""
    pass


class UnknownTableError(OrmError, LookupError):
    """Schema lookup for an unregistered table or entity type."""
    pass


class DriverError(OrmError):
    """
    Failure while executing a statement through the query executor.

    The original exception is always available as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        table: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        self.table = table
        self.operation = operation
        context = ", ".join(
            f"{k}={v}" for k, v in (("table", table), ("operation", operation)) if v
        )
        super().__init__(f"{message} [{context}]" if context else message)
