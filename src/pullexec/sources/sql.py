"""Relational sources: one row per work item, follow-up statements built from the row."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from pullexec.config import parse_csv, setting
from pullexec.errors import (
    AcknowledgeError,
    ConfigurationError,
    FetchError,
    PullexecError,
    ReportFailureError,
    SourceConnectionError,
)
from pullexec.models import QueryTemplate, ResolvedQuery, WorkItem
from pullexec.sources.base import BaseWorkSource
from pullexec.templating import MISSING, encode_record, lookup, stringify

logger = logging.getLogger(__name__)


def _parse_port(value: str) -> int:
    port = int(value)
    if not 0 < port < 65536:
        raise ValueError("port must be between 1 and 65535")
    return port


@dataclass(frozen=True, slots=True)
class SqlSettings:
    """Connection and retrieve/clear/fail statements for SQL drivers.

    Statements use the database driver's own positional paramstyle (``?`` for
    SQLite, ``%s`` for psycopg and most MySQL drivers). Parameters are
    comma-separated; ``{{payload}}`` and ``{{column}}`` placeholders in clear
    and fail parameters are replaced with values from the fetched row.
    """

    url: str = setting(env="SQL_URL", default="", help="Full SQLAlchemy database URL.")
    host: str = setting(env="SQL_HOST", default="localhost", help="Database host.")
    port: int | None = setting(env="SQL_PORT", parse=_parse_port, help="Database port.")
    user: str = setting(env="SQL_USER", default="", help="Database user.")
    password: str = setting(env="SQL_PASSWORD", default="", help="Database password.")
    database: str = setting(env="SQL_DATABASE", default="", help="Database name (file path for sqlite).")
    ssl_mode: str = setting(env="SQL_SSL_MODE", default="", help="sslmode for PostgreSQL-compatible servers.")
    retrieve_query: str = setting(
        env="SQL_RETRIEVE_QUERY",
        default="",
        required=True,
        help="Statement returning the work row.",
    )
    retrieve_params: tuple[str, ...] = setting(
        env="SQL_RETRIEVE_PARAMS",
        default=(),
        parse=parse_csv,
        help="Comma-separated retrieve parameters.",
    )
    retrieve_field: str = setting(
        env="SQL_RETRIEVE_FIELD",
        default="",
        help="Column used as payload instead of the JSON-encoded row.",
    )
    clear_query: str = setting(env="SQL_CLEAR_QUERY", default="", help="Statement run after success.")
    clear_params: tuple[str, ...] = setting(
        env="SQL_CLEAR_PARAMS",
        default=(),
        parse=parse_csv,
        help="Comma-separated clear parameters.",
    )
    fail_query: str = setting(env="SQL_FAIL_QUERY", default="", help="Statement run after failure.")
    fail_params: tuple[str, ...] = setting(
        env="SQL_FAIL_PARAMS",
        default=(),
        parse=parse_csv,
        help="Comma-separated fail parameters.",
    )


class SqlWorkSource(BaseWorkSource):
    """Retrieve one row, then run a clear or fail statement resolved against it."""

    name = "sql"
    settings_class = SqlSettings
    drivername: ClassVar[str] = ""
    default_port: ClassVar[int | None] = None

    def __init__(self, settings: SqlSettings | None = None, *, strict_templates: bool = False) -> None:
        super().__init__(settings, strict_templates=strict_templates)
        self._engine: Engine | None = None
        self._connection: Connection | None = None

    def validate_settings(self, settings: SqlSettings) -> None:
        if not settings.url and not self.drivername:
            raise ConfigurationError(f"{self.name} driver requires PULLEXEC_SQL_URL.")
        if not settings.url and not settings.database:
            raise ConfigurationError(
                f"{self.name} driver requires PULLEXEC_SQL_URL or PULLEXEC_SQL_DATABASE.",
            )

    def database_url(self) -> str | URL:
        settings: SqlSettings = self.settings
        if settings.url:
            return settings.url
        query: dict[str, str] = {}
        if settings.ssl_mode:
            query["sslmode"] = settings.ssl_mode
        return URL.create(
            self.drivername,
            username=settings.user or None,
            password=settings.password or None,
            host=settings.host or None,
            port=settings.port or self.default_port,
            database=settings.database,
            query=query,
        )

    def _open(self, settings: SqlSettings) -> None:
        try:
            self._engine = create_engine(self.database_url(), poolclass=NullPool)
            self._connection = self._engine.connect()
        except (SQLAlchemyError, ImportError) as error:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None
            raise SourceConnectionError(f"Cannot connect to {self.name} database: {error}") from error

    def _close(self) -> None:
        try:
            if self._connection is not None:
                self._connection.close()
        finally:
            self._connection = None
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None

    def fetch(self) -> WorkItem | None:
        settings: SqlSettings = self.settings
        statement = ResolvedQuery(text=settings.retrieve_query, params=settings.retrieve_params)
        try:
            record = self._fetch_row(statement)
        except SQLAlchemyError as error:
            self._rollback()
            raise FetchError(f"Retrieve query failed: {error}") from error
        if record is None:
            logger.debug("Retrieve query returned no rows")
            return None

        if settings.retrieve_field:
            value = lookup(record, settings.retrieve_field)
            if value is MISSING:
                raise FetchError(f"Retrieve field {settings.retrieve_field!r} is not in the row")
            payload = stringify(value).encode("utf-8")
            if not payload:
                logger.debug("Retrieve field %s is empty", settings.retrieve_field)
                return None
        else:
            payload = encode_record(record)
        return WorkItem(payload=payload, record=record)

    def acknowledge(self, item: WorkItem) -> None:
        settings: SqlSettings = self.settings
        template = QueryTemplate(text=settings.clear_query, params=settings.clear_params)
        self._run_follow_up(template, item, error_class=AcknowledgeError)

    def report_failure(self, item: WorkItem) -> None:
        settings: SqlSettings = self.settings
        template = QueryTemplate(text=settings.fail_query, params=settings.fail_params)
        self._run_follow_up(template, item, error_class=ReportFailureError)

    def _fetch_row(self, statement: ResolvedQuery) -> dict[str, Any] | None:
        connection = self._require_connection()
        result = self._execute(connection, statement)
        row: Mapping[str, Any] | None = None
        if result.returns_rows:
            row = result.mappings().first()
        connection.commit()
        if row is None:
            return None
        return dict(row)

    def _run_follow_up(
        self,
        template: QueryTemplate,
        item: WorkItem,
        *,
        error_class: type[PullexecError],
    ) -> None:
        if template.is_empty:
            return
        statement = template.resolve(item, strict=self.strict_templates)
        connection = self._require_connection()
        try:
            result = self._execute(connection, statement)
            connection.commit()
        except SQLAlchemyError as error:
            self._rollback()
            raise error_class(f"Statement failed: {error}") from error
        logger.info("Follow-up statement affected %s row(s)", result.rowcount)

    def _execute(self, connection: Connection, statement: ResolvedQuery):
        if statement.params:
            return connection.exec_driver_sql(statement.text, statement.params)
        return connection.exec_driver_sql(statement.text)

    def _require_connection(self) -> Connection:
        if self._connection is None:
            raise SourceConnectionError(f"{self.name} source is not connected.")
        return self._connection

    def _rollback(self) -> None:
        if self._connection is None:
            return
        try:
            self._connection.rollback()
        except SQLAlchemyError:
            logger.warning("Rollback failed", exc_info=True)


class PostgresWorkSource(SqlWorkSource):
    name = "postgres"
    drivername = "postgresql+psycopg"
    default_port = 5432


class CockroachWorkSource(SqlWorkSource):
    name = "cockroach"
    drivername = "postgresql+psycopg"
    default_port = 26257


class MysqlWorkSource(SqlWorkSource):
    name = "mysql"
    drivername = "mysql+pymysql"
    default_port = 3306


class MssqlWorkSource(SqlWorkSource):
    name = "mssql"
    drivername = "mssql+pyodbc"
    default_port = 1433


class SqliteWorkSource(SqlWorkSource):
    name = "sqlite"
    drivername = "sqlite"

    def database_url(self) -> str | URL:
        settings: SqlSettings = self.settings
        if settings.url:
            return settings.url
        return URL.create("sqlite", database=settings.database)
