try:
    from ._version import version as __version__  # populated by setuptools-scm
except ModuleNotFoundError:
    __version__ = "0.0.0"

from .accessor import MISSING
from .changes import Change
from .config import EngineSettings, configure_logging, get_settings
from .criteria import parse_criteria
from .dialect import Dialect, QueryExecutor, QueryResult, get_dialect
from .errors import DriverError, InvariantError, OrmError, UnknownTableError, ValidationError
from .orm import Orm
from .schema import Relationship, RelationshipKind, Schema, Table

__all__ = [
    "__version__",
    "MISSING",
    "Change",
    "Dialect",
    "DriverError",
    "EngineSettings",
    "InvariantError",
    "Orm",
    "OrmError",
    "QueryExecutor",
    "QueryResult",
    "Relationship",
    "RelationshipKind",
    "Schema",
    "Table",
    "UnknownTableError",
    "ValidationError",
    "configure_logging",
    "get_dialect",
    "get_settings",
    "parse_criteria",
]
