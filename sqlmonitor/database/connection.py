"""
Database connection management for SQL Server
"""

import asyncio
from typing import Optional, List, Dict, Any
from urllib.parse import quote_plus

import pyodbc
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.pool import NullPool

from sqlmonitor.core.config import DatabaseSettings
from sqlmonitor.core.constants import ODBC_DRIVER_PREFERENCES
from sqlmonitor.core.logger import get_logger
from sqlmonitor.core.exceptions import (
    ConnectionError,
    ConnectionTimeoutError,
    AuthenticationError,
    QueryExecutionError,
    QueryTimeoutError,
    PermissionDeniedError,
)
from sqlmonitor.database.base import QueryExecutor

logger = get_logger('database.connection')

MASTER_DATABASE = "master"


def get_available_odbc_drivers() -> List[str]:
    """Get list of available SQL Server ODBC drivers"""
    try:
        drivers = pyodbc.drivers()
    except pyodbc.Error as e:
        logger.error(f"Failed to get ODBC drivers: {e}")
        return []
    return [d for d in drivers if 'SQL Server' in d]


def get_best_odbc_driver() -> Optional[str]:
    """Get the best available ODBC driver"""
    available = get_available_odbc_drivers()

    for preferred in ODBC_DRIVER_PREFERENCES:
        if preferred in available:
            return preferred

    return available[0] if available else None


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig)
    return str(exc)


class DatabaseConnection:
    """
    Short-lived connection to one database of the monitored server

    The engine uses NullPool so nothing outlives the `with` block.

    Example:
        >>> with DatabaseConnection(settings.database, "Sales") as conn:
        ...     rows = conn.execute_query("SELECT 1 AS one")
    """

    def __init__(self, settings: DatabaseSettings, database: str = MASTER_DATABASE):
        self.settings = settings
        self.database = database
        self._engine: Optional[Engine] = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    def build_connection_string(self, driver: Optional[str] = None) -> str:
        """Build the ODBC connection string (includes the password)"""
        driver = driver or self.settings.driver or get_best_odbc_driver()
        if not driver:
            raise ConnectionError(
                "No SQL Server ODBC driver found",
                server=self.settings.server,
                database=self.database,
            )

        server = self.settings.server
        if "\\" in server and self.settings.port == 1433:
            server_value = server
        else:
            server_value = f"{server},{self.settings.port}"

        parts = [
            f"DRIVER={{{driver}}}",
            f"SERVER={server_value}",
            f"DATABASE={self.database}",
            f"APP={{{self.settings.application_name}}}",
            f"Connect Timeout={self.settings.connection_timeout}",
        ]

        if self.settings.trusted_connection:
            parts.append("Trusted_Connection=yes")
        else:
            if not self.settings.username:
                raise AuthenticationError("No username configured for SQL authentication")
            parts.append(f"UID={self.settings.username}")
            password = self.settings.password.replace("}", "}}")
            parts.append(f"PWD={{{password}}}")

        parts.append(f"Encrypt={'yes' if self.settings.encrypt else 'no'}")
        if self.settings.trust_server_certificate:
            parts.append("TrustServerCertificate=yes")

        return ";".join(parts)

    def connect(self) -> None:
        """
        Create the engine and verify the server answers

        Raises:
            ConnectionError: If connection fails
            AuthenticationError: If authentication fails
        """
        if self.is_connected:
            return

        connection_string = self.build_connection_string()
        engine = create_engine(
            f"mssql+pyodbc:///?odbc_connect={quote_plus(connection_string)}",
            poolclass=NullPool,
            echo=self.settings.echo_sql,
        )

        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            engine.dispose()
            error_msg = _error_text(e)
            if "Login failed" in error_msg:
                raise AuthenticationError(
                    f"Authentication failed: {error_msg}",
                    {"server": self.settings.server, "database": self.database},
                ) from e
            if "timeout" in error_msg.lower():
                raise ConnectionTimeoutError(
                    f"Connection timed out: {error_msg}",
                    server=self.settings.server,
                    database=self.database,
                ) from e
            raise ConnectionError(
                f"Connection failed: {error_msg}",
                server=self.settings.server,
                database=self.database,
            ) from e

        self._engine = engine
        logger.debug(f"Connected to {self.settings.server}/{self.database}")

    def disconnect(self) -> None:
        if self._engine:
            self._engine.dispose()
            self._engine = None

    def _raise_query_error(self, exc: SQLAlchemyError, query: str) -> None:
        error_msg = _error_text(exc)
        lowered = error_msg.lower()
        if "timeout" in lowered:
            raise QueryTimeoutError(
                f"Query timed out after {self.settings.query_timeout}s", query=query
            ) from exc
        if "permission" in lowered or "denied" in lowered:
            raise PermissionDeniedError(f"Permission denied: {error_msg}", query=query) from exc
        raise QueryExecutionError(f"Query failed: {error_msg}", query=query) from exc

    def execute_query(
        self,
        query: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Execute a SQL query and return results

        Returns:
            List of dictionaries with column names as keys

        Raises:
            QueryExecutionError: If query fails
            QueryTimeoutError: If query times out
        """
        if not self.is_connected:
            raise QueryExecutionError("Not connected to database", query=query)

        try:
            with self._engine.connect() as conn:
                conn.execute(text(f"SET LOCK_TIMEOUT {self.settings.query_timeout * 1000}"))
                result = conn.execute(text(query), params or {})
                if result.returns_rows:
                    columns = list(result.keys())
                    return [dict(zip(columns, row)) for row in result.fetchall()]
                return []
        except SQLAlchemyError as e:
            self._raise_query_error(e, query)

    def execute_non_query(
        self,
        statement: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Execute a statement (DDL or maintenance) and return affected rows"""
        if not self.is_connected:
            raise QueryExecutionError("Not connected to database", query=statement)

        try:
            with self._engine.connect() as conn:
                result = conn.execute(text(statement), params or {})
                conn.commit()
                return result.rowcount
        except SQLAlchemyError as e:
            self._raise_query_error(e, statement)

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False


class SqlServerExecutor(QueryExecutor):
    """
    QueryExecutor backed by SQLAlchemy + pyodbc

    Blocking driver calls run in worker threads; one connection per call.
    """

    def __init__(self, settings: DatabaseSettings):
        self.settings = settings

    def _fetch_all_sync(self, database: str, query: str,
                        params: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        with DatabaseConnection(self.settings, database) as conn:
            return conn.execute_query(query, params)

    def _execute_sync(self, database: str, statement: str,
                      params: Optional[Dict[str, Any]]) -> int:
        with DatabaseConnection(self.settings, database) as conn:
            return conn.execute_non_query(statement, params)

    async def fetch_all(
        self,
        database: str,
        query: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._fetch_all_sync, database, query, params)

    async def execute(
        self,
        database: str,
        statement: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> int:
        return await asyncio.to_thread(self._execute_sync, database, statement, params)
