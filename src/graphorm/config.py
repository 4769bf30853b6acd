from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(RuntimeError):
    """Configuration-related error."""
    pass


# ─────────────────────────────────────────────────────────────
# Section configs
# ─────────────────────────────────────────────────────────────


class LoggingSettings(BaseModel):
    level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "INFO"
    format: str = (
        "%(asctime)-20s %(name)-30s %(levelname)-8s: %(message)s"
    )


class DialectSettings(BaseModel):
    name: Literal["mysql", "postgres", "sqlite"] = Field(
        "mysql", description="Target SQL dialect for generated statements."
    )
    max_identifier_length: int | None = Field(
        default=None,
        description="Override for the identifier length limit (None = dialect default).",
    )
    hash_length: int = Field(
        8,
        description="Number of hex digits appended to shortened identifiers.",
    )


class CriteriaSettings(BaseModel):
    strict: bool = Field(
        True,
        description="Reject unknown properties, relationships and @-keys in criteria.",
    )


class DatabaseSettings(BaseModel):
    """
    Connection settings used by the optional SQLAlchemy executor adapter.

    In production, override via:
    - env var:     GRAPHORM_DATABASE__URL
    - dotenv:      .env / .env.local
    - secret file: /run/secrets/graphorm/database__url
    """
    url: str = Field(
        "sqlite://",
        description="SQLAlchemy-style database URL.",
    )
    echo: bool = False


# ─────────────────────────────────────────────────────────────
# Top-level settings
# ─────────────────────────────────────────────────────────────


class EngineSettings(BaseSettings):
    """
    Canonical configuration for a graphorm engine.

    Precedence (highest → lowest):

    1. Init kwargs (tests/overrides)
    2. Environment variables
    3. .env and .env.local
    4. Secret files in /run/secrets/graphorm
    5. Defaults in this class
    """

    model_config = SettingsConfigDict(
        env_prefix="GRAPHORM_",  # GRAPHORM_DIALECT__NAME, GRAPHORM_DATABASE__URL, ...
        env_file=(".env", ".env.local"),  # .env.local overrides .env
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        secrets_dir="/run/secrets/graphorm",
        extra="ignore",
        validate_default=True,
    )

    logging: LoggingSettings = LoggingSettings()
    dialect: DialectSettings = DialectSettings()  # type: ignore[call-arg]
    criteria: CriteriaSettings = CriteriaSettings()  # type: ignore[call-arg]
    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    def validate_consistency(self) -> None:
        """Cross-field checks that pydantic cannot express per field."""
        limit = self.dialect.max_identifier_length
        if limit is not None and limit < 16:
            raise ConfigError(
                f"max_identifier_length={limit} is too small; at least 16 is required."
            )
        hash_length = self.dialect.hash_length
        if not 4 <= hash_length <= 40:
            raise ConfigError(
                f"hash_length={hash_length} must lie between 4 and 40 (sha1 hex digits)."
            )
        if limit is not None and hash_length >= limit - 1:
            raise ConfigError(
                f"hash_length={hash_length} does not fit into identifiers of length {limit}."
            )


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> EngineSettings:
    """
    Cached accessor for process-wide settings.

    `overrides` are init kwargs → highest precedence (handy in tests).
    """
    settings = EngineSettings(**overrides)
    settings.validate_consistency()
    return settings


def configure_logging(settings: EngineSettings) -> None:
    logging.basicConfig(level=settings.logging.level, format=settings.logging.format)
    logging.getLogger("graphorm").setLevel(settings.logging.level)
